import json
import os
import uuid
from datetime import datetime, timedelta

# Must be set before signage.config is imported anywhere.
os.environ["SIGNAGE_DATABASE_URL"] = "sqlite://"
os.environ["SIGNAGE_JWT_SECRET"] = "test-secret"

import pytest

from signage.db import Base, SessionLocal, engine
from signage.models.device import Device, new_connection_token
from signage.models import device_log  # noqa: F401
from signage.services.auth import TokenVerifier
from signage.services.gateway import ConnectionGateway
from signage.services.heartbeat import HeartbeatSweep
from signage.services.registry import DeviceRegistry

T0 = datetime(2026, 1, 1, 12, 0, 0)


class FrozenClock:
    """Manually advanced clock so heartbeat timing is deterministic."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeWebSocket:
    """Stands in for a Starlette WebSocket; records every frame sent to it."""

    def __init__(
        self,
        query_params: dict | None = None,
        headers: dict | None = None,
        incoming: list | None = None,
    ) -> None:
        self.query_params = query_params or {}
        self.headers = headers or {}
        # str entries arrive as text frames, bytes as binary frames
        self.incoming = list(incoming or [])
        self.accepted = False
        self.close_code: int | None = None
        self.sent: list[dict] = []
        self.fail_sends = False

    async def accept(self) -> None:
        self.accepted = True

    async def receive(self) -> dict:
        if not self.incoming:
            return {"type": "websocket.disconnect", "code": 1000}
        frame = self.incoming.pop(0)
        if isinstance(frame, bytes):
            return {"type": "websocket.receive", "bytes": frame}
        return {"type": "websocket.receive", "text": frame}

    async def send_text(self, data: str) -> None:
        if self.fail_sends:
            raise RuntimeError("socket is gone")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.close_code = code

    def events(self, event_type: str) -> list[dict]:
        return [frame for frame in self.sent if frame["type"] == event_type]

    def payloads(self, event_type: str) -> list:
        return [frame["payload"] for frame in self.events(event_type)]


@pytest.fixture(autouse=True)
def db_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def verifier() -> TokenVerifier:
    return TokenVerifier("test-secret")


@pytest.fixture
def registry() -> DeviceRegistry:
    return DeviceRegistry(SessionLocal)


@pytest.fixture
def gateway(registry, verifier, clock) -> ConnectionGateway:
    return ConnectionGateway(registry, verifier, clock=clock)


@pytest.fixture
def sweep(registry, gateway, clock) -> HeartbeatSweep:
    return HeartbeatSweep(registry, gateway.fanout, timeout_sec=60, interval_sec=30, clock=clock)


@pytest.fixture
def make_device(db):
    def _make(tenant_id: str = "tenant-1", **overrides) -> Device:
        values = {
            "tenant_id": tenant_id,
            "device_id": f"hw-{uuid.uuid4().hex[:12]}",
            "name": "Lobby Screen",
            "status": "offline",
            "connection_token": new_connection_token(),
            "device_info": {},
            "tags": [],
        }
        values.update(overrides)
        device = Device(**values)
        db.add(device)
        db.commit()
        db.refresh(device)
        return device

    return _make


@pytest.fixture
def fake_socket():
    return FakeWebSocket


@pytest.fixture
def reload_device():
    """Fresh read of a device row, bypassing any session identity map."""

    def _reload(device_pk: str) -> Device | None:
        session = SessionLocal()
        try:
            return session.get(Device, device_pk)
        finally:
            session.close()

    return _reload
