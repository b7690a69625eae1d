import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from signage.config import HEARTBEAT_SWEEP_SEC, HEARTBEAT_TIMEOUT_SEC
from signage.models.device import utcnow
from signage.services.realtime import StatusFanout
from signage.services.registry import DeviceRegistry

logger = logging.getLogger(__name__)

HEARTBEAT_TIMEOUT_REASON = "heartbeat_timeout"


class HeartbeatSweep:
    """Demotes ``online`` devices whose last heartbeat is older than the timeout.

    The gateway's disconnect path covers clean closes; this catches half-open
    connections the transport never reported. It only ever moves devices to
    ``offline``.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        fanout: StatusFanout,
        timeout_sec: int = HEARTBEAT_TIMEOUT_SEC,
        interval_sec: int = HEARTBEAT_SWEEP_SEC,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.fanout = fanout
        self.timeout = timedelta(seconds=timeout_sec)
        self.interval_sec = interval_sec
        self.clock = clock
        self._run_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: datetime | None = None) -> list[str]:
        if self._run_lock.locked():
            logger.debug("Heartbeat sweep still in progress, skipping this run")
            return []
        async with self._run_lock:
            return await self._sweep(now or self.clock())

    async def _sweep(self, now: datetime) -> list[str]:
        threshold = now - self.timeout
        expired: list[str] = []
        try:
            candidates = await asyncio.to_thread(self.registry.find_stale, threshold)
        except SQLAlchemyError:
            logger.exception("Heartbeat sweep could not read the device registry")
            return expired

        for device in candidates:
            device_pk = str(device.id)
            try:
                if not await asyncio.to_thread(self.registry.expire, device_pk, threshold, now):
                    continue
            except SQLAlchemyError:
                logger.exception("Heartbeat sweep could not expire device %s", device_pk)
                continue

            expired.append(device_pk)
            logger.warning(
                "Device %s (%s) marked offline due to heartbeat timeout, last heartbeat %s",
                device.name,
                device_pk,
                device.last_heartbeat.isoformat() if device.last_heartbeat else "never",
            )
            await asyncio.to_thread(
                self.registry.add_log,
                device_pk,
                "status_change",
                "offline",
                {"reason": HEARTBEAT_TIMEOUT_REASON, "last_heartbeat": device.last_heartbeat.isoformat() if device.last_heartbeat else None},
            )
            await self.fanout.publish_status(
                str(device.tenant_id),
                device_pk,
                "offline",
                reason=HEARTBEAT_TIMEOUT_REASON,
                timestamp=now,
            )
        return expired

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_sec)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Heartbeat sweep run failed")

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Heartbeat sweep started (timeout: %ss, interval: %ss)",
            int(self.timeout.total_seconds()),
            self.interval_sec,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
