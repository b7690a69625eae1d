import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DashboardIdentity:
    tenant_id: str
    user_id: str


@dataclass(frozen=True)
class DeviceIdentity:
    tenant_id: str
    device_pk: str
    device_id: str


ConnectionIdentity = DashboardIdentity | DeviceIdentity


def tenant_dashboards_group(tenant_id: str) -> str:
    return f"tenant:{tenant_id}:dashboards"


def tenant_devices_group(tenant_id: str) -> str:
    return f"tenant:{tenant_id}:devices"


def device_group(device_pk: str) -> str:
    return f"device:{device_pk}"


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def encode_event(event_type: str, payload: Any = None) -> str:
    return json.dumps(
        {
            "type": event_type,
            "payload": payload if payload is not None else {},
            "ts": datetime.now(timezone.utc).isoformat(),
        },
        default=_json_default,
    )


class ConnectionSession:
    def __init__(self, websocket: WebSocket, identity: ConnectionIdentity) -> None:
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.identity = identity
        self.connected_at = datetime.now(timezone.utc)
        self._send_lock = asyncio.Lock()

    @property
    def tenant_id(self) -> str:
        return self.identity.tenant_id

    @property
    def is_device(self) -> bool:
        return isinstance(self.identity, DeviceIdentity)

    @property
    def groups(self) -> tuple[str, ...]:
        identity = self.identity
        if isinstance(identity, DeviceIdentity):
            return (tenant_devices_group(identity.tenant_id), device_group(identity.device_pk))
        if isinstance(identity, DashboardIdentity):
            return (tenant_dashboards_group(identity.tenant_id),)
        raise TypeError(f"Unknown identity {identity!r}")

    async def send(self, event_type: str, payload: Any = None) -> None:
        await self.send_text(encode_event(event_type, payload))

    async def send_text(self, message: str) -> None:
        # Starlette forbids concurrent sends on one socket.
        async with self._send_lock:
            await self.websocket.send_text(message)

    def __repr__(self) -> str:
        return f"<ConnectionSession {self.id} {self.identity!r}>"


class SessionRegistry:
    """Live connection sessions and their group memberships, for one gateway."""

    def __init__(self) -> None:
        self._sessions: dict[str, ConnectionSession] = {}
        self._groups: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()

    async def add(self, session: ConnectionSession) -> None:
        async with self._lock:
            self._sessions[session.id] = session
            for group in session.groups:
                self._groups.setdefault(group, set()).add(session.id)

    async def remove(self, session: ConnectionSession) -> bool:
        async with self._lock:
            if self._sessions.pop(session.id, None) is None:
                return False
            for group in session.groups:
                members = self._groups.get(group)
                if members is None:
                    continue
                members.discard(session.id)
                if not members:
                    del self._groups[group]
            return True

    def get(self, session_id: str) -> ConnectionSession | None:
        return self._sessions.get(session_id)

    def members(self, group: str) -> list[ConnectionSession]:
        return [self._sessions[sid] for sid in self._groups.get(group, ()) if sid in self._sessions]

    def device_sessions(self, device_pk: str) -> list[ConnectionSession]:
        return self.members(device_group(device_pk))

    def dashboard_sessions(self, tenant_id: str) -> list[ConnectionSession]:
        return self.members(tenant_dashboards_group(tenant_id))

    def __len__(self) -> int:
        return len(self._sessions)

    async def emit_to_group(self, group: str, event_type: str, payload: Any = None) -> int:
        message = encode_event(event_type, payload)
        async with self._lock:
            targets = self.members(group)

        delivered = 0
        stale: list[ConnectionSession] = []
        for session in targets:
            try:
                await session.send_text(message)
                delivered += 1
            except Exception:
                logger.debug("Dropping stale session %s", session.id, exc_info=True)
                stale.append(session)

        for session in stale:
            await self.remove(session)
        return delivered
