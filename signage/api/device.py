import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import or_
from sqlalchemy.orm import Session

from signage.db import SessionLocal
from signage.models.device import Device, new_connection_token, utcnow
from signage.models.device_log import DeviceLog
from signage.schemas.device import (
    DeviceCreatedOut,
    DeviceLogOut,
    DeviceOut,
    DeviceRegisterIn,
    DeviceStatsOut,
    DeviceUpdateIn,
    DeviceProvider,
    DeviceStatus,
)
from signage.services.auth import TokenClaims, get_current_user
from signage.services.registry import rotate_credential

router = APIRouter(prefix="/devices", tags=["devices"])
logger = logging.getLogger(__name__)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _tenant_device(db: Session, device_pk: str, tenant_id: str) -> Device:
    device = (
        db.query(Device)
        .filter(Device.id == device_pk, Device.tenant_id == tenant_id)
        .first()
    )
    if not device:
        raise HTTPException(status_code=404, detail="Device not found")
    return device


async def _close_live_sessions(request: Request, device_pk: str, reason: str) -> None:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        return
    closed = await gateway.close_device_sessions(device_pk, reason=reason)
    if closed:
        logger.info("Closed %d live session(s) of device %s: %s", closed, device_pk, reason)


async def _publish_status(request: Request, device: Device, timestamp) -> None:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        return
    await gateway.fanout.publish_status(
        str(device.tenant_id), str(device.id), device.status, reason="updated", timestamp=timestamp
    )


@router.get("", response_model=list[DeviceOut])
@router.get("/", response_model=list[DeviceOut], include_in_schema=False)
def list_devices(
    status: DeviceStatus | None = None,
    provider: DeviceProvider | None = None,
    search: str | None = None,
    user: TokenClaims = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = db.query(Device).filter(Device.tenant_id == user.tenant_id)
    if status:
        query = query.filter(Device.status == status)
    if provider:
        query = query.filter(Device.provider == provider)
    term = (search or "").strip()
    if term:
        pattern = f"%{term}%"
        query = query.filter(
            or_(
                Device.name.like(pattern),
                Device.device_id.like(pattern),
                Device.location_name.like(pattern),
            )
        )
    return query.order_by(Device.created_at.desc()).all()


@router.get("/{device_id}", response_model=DeviceOut)
def get_device(device_id: str, user: TokenClaims = Depends(get_current_user), db: Session = Depends(get_db)):
    return _tenant_device(db, device_id, user.tenant_id)


@router.post("", response_model=DeviceCreatedOut, status_code=201)
def register_device(
    payload: DeviceRegisterIn,
    user: TokenClaims = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    hardware_id = payload.device_id.strip()
    if not hardware_id:
        raise HTTPException(status_code=422, detail="device_id cannot be empty")
    if db.query(Device).filter(Device.device_id == hardware_id).first() is not None:
        raise HTTPException(status_code=409, detail="Device with this device ID already exists")

    device = Device(
        **payload.model_dump(exclude={"device_id", "name"}),
        tenant_id=user.tenant_id,
        device_id=hardware_id,
        name=payload.name.strip(),
        status="offline",
        last_heartbeat=None,
        connection_token=new_connection_token(),
        device_info={},
    )
    db.add(device)
    db.commit()
    db.refresh(device)
    logger.info("Registered device %s (%s) for tenant %s", device.id, hardware_id, user.tenant_id)
    return device


@router.put("/{device_id}", response_model=DeviceOut)
async def update_device(
    device_id: str,
    payload: DeviceUpdateIn,
    request: Request,
    user: TokenClaims = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    device = _tenant_device(db, device_id, user.tenant_id)
    previous_status = device.status
    now = utcnow()
    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is None and field in {"name", "orientation", "status", "tags"}:
            continue
        setattr(device, field, value)
    device.updated_at = now

    status_changed = device.status != previous_status
    if status_changed:
        db.add(
            DeviceLog(
                device_id=device.id,
                log_type="status_change",
                message=device.status,
                meta={"reason": "updated", "previous": previous_status, "updated_by": user.user_id},
                created_at=now,
            )
        )
    db.commit()
    db.refresh(device)

    if status_changed:
        await _publish_status(request, device, now)
    return device


@router.delete("/{device_id}")
async def delete_device(
    device_id: str,
    request: Request,
    user: TokenClaims = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    device = _tenant_device(db, device_id, user.tenant_id)
    device_pk = str(device.id)
    db.query(DeviceLog).filter(DeviceLog.device_id == device_pk).delete(synchronize_session=False)
    db.delete(device)
    db.commit()
    await _close_live_sessions(request, device_pk, "Device deleted")
    return {"message": "Device deleted successfully"}


@router.post("/{device_id}/regenerate-token")
async def regenerate_token(
    device_id: str,
    request: Request,
    user: TokenClaims = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    device = _tenant_device(db, device_id, user.tenant_id)
    token = rotate_credential(db, device)
    await _close_live_sessions(request, str(device.id), "Credential rotated")
    return {"connection_token": token}


@router.get("/{device_id}/stats", response_model=DeviceStatsOut)
def device_stats(device_id: str, user: TokenClaims = Depends(get_current_user), db: Session = Depends(get_db)):
    device = _tenant_device(db, device_id, user.tenant_id)
    uptime_ms = None
    if device.last_heartbeat is not None:
        uptime_ms = int((utcnow() - device.last_heartbeat).total_seconds() * 1000)
    return {
        "status": device.status,
        "last_heartbeat": device.last_heartbeat,
        "uptime_ms": uptime_ms,
        "player_version": device.player_version,
        "device_info": device.device_info or {},
    }


@router.get("/{device_id}/logs", response_model=list[DeviceLogOut])
def device_logs(
    device_id: str,
    limit: int = Query(50, ge=1, le=500),
    log_type: str | None = None,
    user: TokenClaims = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    device = _tenant_device(db, device_id, user.tenant_id)
    query = db.query(DeviceLog).filter(DeviceLog.device_id == device.id)
    if log_type:
        query = query.filter(DeviceLog.log_type == log_type)
    return query.order_by(DeviceLog.created_at.desc()).limit(limit).all()
