"""Persistence boundary for device liveness state.

Every liveness mutation is a single UPDATE statement so that ``status`` and
``last_heartbeat`` are never observed half-written. The conditional
``WHERE`` clauses double as the transition test: a rowcount of 1 means the
record really moved to the new status, which is what decides whether a
status-change event gets broadcast.
"""
import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from signage.db import SessionLocal
from signage.models.device import Device, new_connection_token, utcnow
from signage.models.device_log import DeviceLog
from signage.services.sessions import DeviceIdentity

logger = logging.getLogger(__name__)


class DeviceRegistry:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    def _update(self, device_pk: str, values: dict[str, Any], *criteria) -> bool:
        db = self._session_factory()
        try:
            changed = (
                db.query(Device)
                .filter(Device.id == device_pk, *criteria)
                .update(values, synchronize_session=False)
            )
            db.commit()
            return changed > 0
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def resolve_credential(self, token: str) -> DeviceIdentity | None:
        if not token:
            return None
        db = self._session_factory()
        try:
            device = db.query(Device).filter(Device.connection_token == token).first()
            if device is None:
                return None
            return DeviceIdentity(
                tenant_id=str(device.tenant_id),
                device_pk=str(device.id),
                device_id=device.device_id,
            )
        finally:
            db.close()

    def mark_online(self, device_pk: str, now: datetime | None = None) -> bool:
        """Stamp a fresh connection. Returns True when the status changed."""
        now = now or utcnow()
        transitioned = self._update(
            device_pk,
            {"status": "online", "last_heartbeat": now, "updated_at": now},
            Device.status != "online",
        )
        if not transitioned:
            self._update(device_pk, {"last_heartbeat": now})
        return transitioned

    def record_heartbeat(
        self,
        device_pk: str,
        now: datetime | None = None,
        player_version: str | None = None,
        device_info: dict | None = None,
    ) -> bool:
        """Refresh ``last_heartbeat``; revive an ``offline`` record.

        Operator-owned states (``maintenance``, ``error``) are not touched.
        Returns True only when the record moved from offline to online.
        """
        now = now or utcnow()
        values: dict[str, Any] = {"last_heartbeat": now}
        if player_version is not None:
            values["player_version"] = player_version
        if device_info is not None:
            values["device_info"] = device_info

        revived = self._update(
            device_pk,
            {**values, "status": "online", "updated_at": now},
            Device.status == "offline",
        )
        if not revived:
            self._update(device_pk, values)
        return revived

    def mark_offline(self, device_pk: str, now: datetime | None = None) -> bool:
        return self._update(
            device_pk,
            {"status": "offline", "updated_at": now or utcnow()},
            Device.status == "online",
        )

    def find_stale(self, threshold: datetime) -> list[Device]:
        db = self._session_factory()
        try:
            return (
                db.query(Device)
                .filter(
                    Device.status == "online",
                    or_(Device.last_heartbeat.is_(None), Device.last_heartbeat < threshold),
                )
                .all()
            )
        finally:
            db.close()

    def expire(self, device_pk: str, threshold: datetime, now: datetime | None = None) -> bool:
        # Re-check staleness inside the UPDATE: a heartbeat that landed after
        # find_stale() keeps the device online.
        return self._update(
            device_pk,
            {"status": "offline", "updated_at": now or utcnow()},
            Device.status == "online",
            or_(Device.last_heartbeat.is_(None), Device.last_heartbeat < threshold),
        )

    def list_for_tenant(self, tenant_id: str) -> list[Device]:
        db = self._session_factory()
        try:
            return (
                db.query(Device)
                .filter(Device.tenant_id == tenant_id)
                .order_by(Device.created_at.desc())
                .all()
            )
        finally:
            db.close()

    def get_for_tenant(self, device_pk: str, tenant_id: str) -> Device | None:
        db = self._session_factory()
        try:
            return (
                db.query(Device)
                .filter(Device.id == device_pk, Device.tenant_id == tenant_id)
                .first()
            )
        finally:
            db.close()

    def add_log(
        self,
        device_pk: str,
        log_type: str,
        message: str | None = None,
        metadata: dict | None = None,
    ) -> None:
        db = self._session_factory()
        try:
            db.add(DeviceLog(device_id=device_pk, log_type=log_type, message=message, meta=metadata or {}))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.warning("Could not write %s log for device %s", log_type, device_pk, exc_info=True)
        finally:
            db.close()


def rotate_credential(db: Session, device: Device) -> str:
    device.connection_token = new_connection_token()
    db.commit()
    db.refresh(device)
    return device.connection_token
