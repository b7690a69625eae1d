import uuid

from sqlalchemy.orm import Session

from signage.db import SessionLocal, init_db
from signage.models.device import Device, new_connection_token
from signage.services.auth import token_verifier


def seed(tenant_id: str | None = None, user_id: str | None = None) -> dict:
    init_db()
    tenant_id = tenant_id or str(uuid.uuid4())
    user_id = user_id or str(uuid.uuid4())
    db: Session = SessionLocal()
    try:
        devices = []
        for index, (location, orientation) in enumerate(
            [("Lobby", "landscape"), ("Reception", "portrait")], start=1
        ):
            device = Device(
                tenant_id=tenant_id,
                device_id=f"seed-{tenant_id[:8]}-{index:02d}",
                name=f"{location} Screen",
                orientation=orientation,
                location_name=location,
                tags=[location.lower()],
                status="offline",
                connection_token=new_connection_token(),
                device_info={},
            )
            db.add(device)
            devices.append(device)
        db.commit()
        for device in devices:
            db.refresh(device)

        return {
            "tenant_id": tenant_id,
            "dashboard_token": token_verifier.create_token(tenant_id, user_id, email="operator@example.com"),
            "devices": [
                {"id": str(d.id), "device_id": d.device_id, "connection_token": d.connection_token}
                for d in devices
            ],
        }
    finally:
        db.close()


if __name__ == "__main__":
    result = seed()
    print(f"tenant:          {result['tenant_id']}")
    print(f"dashboard token: {result['dashboard_token']}")
    for row in result["devices"]:
        print(f"device {row['device_id']}: id={row['id']} device_token={row['connection_token']}")
