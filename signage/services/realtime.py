import logging
from datetime import datetime
from typing import Any

from signage.models.device import utcnow
from signage.services.sessions import SessionRegistry, tenant_dashboards_group

logger = logging.getLogger(__name__)

STATUS_CHANGE_EVENT = "status-change"


class StatusFanout:
    """Tenant-scoped, best-effort delivery to dashboard sessions.

    There is no replay queue: a dashboard that misses an event resyncs with a
    ``request:device_list`` snapshot.
    """

    def __init__(self, sessions: SessionRegistry) -> None:
        self._sessions = sessions

    async def publish_status(
        self,
        tenant_id: str,
        device_pk: str,
        status: str,
        reason: str | None = None,
        timestamp: datetime | None = None,
    ) -> int:
        payload: dict[str, Any] = {
            "deviceId": device_pk,
            "status": status,
            "timestamp": timestamp or utcnow(),
        }
        if reason:
            payload["reason"] = reason
        delivered = await self.relay(tenant_id, STATUS_CHANGE_EVENT, payload)
        logger.info(
            "Device %s (tenant %s) -> %s%s, %d dashboard(s) notified",
            device_pk,
            tenant_id,
            status,
            f" [{reason}]" if reason else "",
            delivered,
        )
        return delivered

    async def relay(self, tenant_id: str, event_type: str, payload: dict[str, Any]) -> int:
        return await self._sessions.emit_to_group(tenant_dashboards_group(tenant_id), event_type, payload)
