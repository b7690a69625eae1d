"""Realtime gateway for device players and operator dashboards.

One WebSocket endpoint serves both kinds of client. A connection presents
exactly one credential: a dashboard JWT (``token``) or a device connection
token (``device_token``). Everything after admission branches on the
resolved identity type.

Device frames::

    heartbeat   {playerVersion?, deviceInfo?}  -> heartbeat:ack
    log         {level?, message, ...}         -> device:log to tenant dashboards
    screenshot  {screenshot}                   -> device:screenshot to tenant dashboards

Dashboard frames::

    request:device_list                        -> device_list
    command:device {deviceId, command, payload} -> command to the device,
                                                  command:sent / command:error to the issuer
"""
import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

from fastapi import WebSocket, status
from sqlalchemy.exc import SQLAlchemyError

from signage.models.device import Device, utcnow
from signage.services.auth import TokenVerifier, bearer_token
from signage.services.errors import AuthenticationFailure, DeviceNotFound, ProtocolError
from signage.services.realtime import StatusFanout
from signage.services.registry import DeviceRegistry
from signage.services.sessions import (
    ConnectionIdentity,
    ConnectionSession,
    DashboardIdentity,
    DeviceIdentity,
    SessionRegistry,
    device_group,
)

logger = logging.getLogger(__name__)

Handler = Callable[[ConnectionSession, dict[str, Any]], Awaitable[None]]


def device_summary(device: Device) -> dict[str, Any]:
    return {
        "id": str(device.id),
        "device_id": device.device_id,
        "name": device.name,
        "status": device.status,
        "last_heartbeat": device.last_heartbeat,
        "location_latitude": device.location_latitude,
        "location_longitude": device.location_longitude,
    }


def connection_credentials(websocket: WebSocket) -> tuple[str | None, str | None]:
    token = (websocket.query_params.get("token") or "").strip() or bearer_token(
        websocket.headers.get("Authorization")
    )
    device_token = (
        (websocket.query_params.get("device_token") or "").strip()
        or (websocket.headers.get("X-Device-Token") or "").strip()
    )
    return token or None, device_token or None


class ConnectionGateway:
    def __init__(
        self,
        registry: DeviceRegistry,
        verifier: TokenVerifier,
        sessions: SessionRegistry | None = None,
        fanout: StatusFanout | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.verifier = verifier
        self.sessions = sessions or SessionRegistry()
        self.fanout = fanout or StatusFanout(self.sessions)
        self.clock = clock
        self._device_handlers: dict[str, Handler] = {
            "heartbeat": self._on_heartbeat,
            "log": self._on_device_log,
            "screenshot": self._on_screenshot,
        }
        self._dashboard_handlers: dict[str, Handler] = {
            "request:device_list": self._on_device_list,
            "command:device": self._on_device_command,
        }

    # -- admission -----------------------------------------------------------

    def authenticate(self, token: str | None, device_token: str | None) -> ConnectionIdentity:
        if token and device_token:
            raise AuthenticationFailure("Present either a session token or a device token, not both")
        if token:
            return self.verifier.verify(token).identity()
        if device_token:
            identity = self.registry.resolve_credential(device_token)
            if identity is None:
                raise AuthenticationFailure("Unknown device token")
            return identity
        raise AuthenticationFailure("Authentication failed")

    async def serve(self, websocket: WebSocket) -> None:
        token, device_token = connection_credentials(websocket)
        try:
            identity = await asyncio.to_thread(self.authenticate, token, device_token)
        except AuthenticationFailure as exc:
            logger.info("Rejected realtime connection: %s", exc)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc))
            return
        except SQLAlchemyError:
            logger.exception("Device credential lookup failed")
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
            return

        session = await self.admit(websocket, identity)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    await session.send("error", {"error": "Binary frames are not supported"})
                    continue
                await self.handle_message(session, raw)
        except Exception:
            # abrupt transport failures are a liveness signal, not a server error
            logger.warning("Connection %s dropped", session.id, exc_info=True)
        finally:
            await self.disconnect(session)

    async def admit(self, websocket: WebSocket, identity: ConnectionIdentity) -> ConnectionSession:
        await websocket.accept()
        session = ConnectionSession(websocket, identity)
        await self.sessions.add(session)
        kind = "device" if session.is_device else "dashboard"
        await session.send("hello", {"kind": kind, "tenantId": identity.tenant_id, "sessionId": session.id})

        if isinstance(identity, DeviceIdentity):
            await self._device_connected(identity)
            logger.info("Device %s connected (tenant %s)", identity.device_pk, identity.tenant_id)
        else:
            logger.info("Dashboard user %s connected to tenant %s", identity.user_id, identity.tenant_id)
        return session

    async def _device_connected(self, identity: DeviceIdentity) -> None:
        now = self.clock()
        try:
            transitioned = await asyncio.to_thread(self.registry.mark_online, identity.device_pk, now)
        except SQLAlchemyError:
            logger.exception("Could not mark device %s online", identity.device_pk)
            return
        if transitioned:
            await self._log(identity.device_pk, "status_change", "online", {"reason": "connected"})
        await self.fanout.publish_status(identity.tenant_id, identity.device_pk, "online", timestamp=now)

    async def disconnect(self, session: ConnectionSession) -> None:
        await self.sessions.remove(session)
        identity = session.identity
        if not isinstance(identity, DeviceIdentity):
            logger.info("Dashboard user %s disconnected", identity.user_id)
            return

        if self.sessions.device_sessions(identity.device_pk):
            # a newer connection for the same device is still live
            logger.info("Device %s closed a duplicate connection", identity.device_pk)
            return

        now = self.clock()
        try:
            transitioned = await asyncio.to_thread(self.registry.mark_offline, identity.device_pk, now)
        except SQLAlchemyError:
            logger.exception("Could not mark device %s offline", identity.device_pk)
            return
        logger.info("Device %s disconnected", identity.device_pk)
        if transitioned:
            await self._log(identity.device_pk, "status_change", "offline", {"reason": "disconnected"})
            await self.fanout.publish_status(
                identity.tenant_id, identity.device_pk, "offline", reason="disconnected", timestamp=now
            )

    async def close_device_sessions(self, device_pk: str, reason: str = "Credential revoked") -> int:
        targets = self.sessions.members(device_group(device_pk))
        for session in targets:
            try:
                await session.websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=reason)
            except Exception:
                logger.debug("Session %s already closed", session.id, exc_info=True)
        return len(targets)

    async def _log(self, device_pk: str, log_type: str, message: str | None, metadata: dict | None = None) -> None:
        await asyncio.to_thread(self.registry.add_log, device_pk, log_type, message, metadata)

    # -- message routing -----------------------------------------------------

    async def handle_message(self, session: ConnectionSession, raw: str) -> None:
        try:
            message_type, payload = self._decode(raw)
            handlers = self._device_handlers if session.is_device else self._dashboard_handlers
            handler = handlers.get(message_type)
            if handler is None:
                raise ProtocolError(f"Unsupported message type: {message_type}")
            await handler(session, payload)
        except ProtocolError as exc:
            await session.send("error", {"error": str(exc)})
        except Exception:
            # a handler bug must not end the session or demote a live device
            logger.exception("Unhandled error processing frame on connection %s", session.id)
            await session.send("error", {"error": "Internal error"})

    @staticmethod
    def _decode(raw: str) -> tuple[str, dict[str, Any]]:
        try:
            message = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            raise ProtocolError("Frame is not valid JSON") from exc
        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            raise ProtocolError("Frame must be an object with a string 'type'")
        payload = message.get("payload")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ProtocolError("'payload' must be an object")
        return message["type"], payload

    async def _on_heartbeat(self, session: ConnectionSession, payload: dict[str, Any]) -> None:
        identity: DeviceIdentity = session.identity
        player_version = payload.get("playerVersion")
        device_info = payload.get("deviceInfo")
        if player_version is not None and not isinstance(player_version, str):
            raise ProtocolError("'playerVersion' must be a string")
        if device_info is not None and not isinstance(device_info, dict):
            raise ProtocolError("'deviceInfo' must be an object")

        now = self.clock()
        revived = False
        try:
            revived = await asyncio.to_thread(
                self.registry.record_heartbeat, identity.device_pk, now, player_version, device_info
            )
        except SQLAlchemyError:
            logger.exception("Heartbeat write failed for device %s", identity.device_pk)

        await session.send("heartbeat:ack", {"timestamp": now})
        if revived:
            await self._log(identity.device_pk, "status_change", "online", {"reason": "heartbeat"})
            await self.fanout.publish_status(identity.tenant_id, identity.device_pk, "online", timestamp=now)

    async def _on_device_log(self, session: ConnectionSession, payload: dict[str, Any]) -> None:
        identity: DeviceIdentity = session.identity
        level = payload.get("level") or "warning"
        message = payload.get("message")
        if not isinstance(level, str):
            raise ProtocolError("'level' must be a string")
        if message is not None and not isinstance(message, str):
            raise ProtocolError("'message' must be a string")
        log_type = level if level in {"error", "warning"} else "warning"
        await self._log(
            identity.device_pk,
            log_type,
            message,
            {k: v for k, v in payload.items() if k != "message"},
        )
        await self.fanout.relay(
            identity.tenant_id,
            "device:log",
            {**payload, "deviceId": identity.device_pk, "timestamp": self.clock()},
        )

    async def _on_screenshot(self, session: ConnectionSession, payload: dict[str, Any]) -> None:
        identity: DeviceIdentity = session.identity
        await self.fanout.relay(
            identity.tenant_id,
            "device:screenshot",
            {
                "deviceId": identity.device_pk,
                "screenshot": payload.get("screenshot"),
                "timestamp": self.clock(),
            },
        )

    async def _on_device_list(self, session: ConnectionSession, payload: dict[str, Any]) -> None:
        try:
            devices = await asyncio.to_thread(self.registry.list_for_tenant, session.tenant_id)
        except SQLAlchemyError:
            logger.exception("Device list read failed for tenant %s", session.tenant_id)
            await session.send("error", {"error": "Device list unavailable"})
            return
        await session.send("device_list", [device_summary(device) for device in devices])

    async def _on_device_command(self, session: ConnectionSession, payload: dict[str, Any]) -> None:
        device_pk = payload.get("deviceId")
        command = payload.get("command")
        if not isinstance(device_pk, str) or not device_pk:
            raise ProtocolError("'deviceId' is required")
        if not isinstance(command, str) or not command:
            raise ProtocolError("'command' is required")

        try:
            await self.dispatch_command(session.identity, device_pk, command, payload.get("payload"))
        except DeviceNotFound:
            await session.send("command:error", {"deviceId": device_pk, "error": "Device not found"})
            return
        await session.send("command:sent", {"deviceId": device_pk, "command": command, "status": "sent"})

    async def dispatch_command(
        self,
        issuer: DashboardIdentity,
        device_pk: str,
        command: str,
        command_payload: Any = None,
    ) -> int:
        """Route a command to every live session of a device in the issuer's tenant."""
        try:
            device = await asyncio.to_thread(self.registry.get_for_tenant, device_pk, issuer.tenant_id)
        except SQLAlchemyError:
            logger.exception("Device lookup failed for command %s", command)
            device = None
        if device is None:
            logger.info("Command %s from user %s rejected: device %s not in tenant", command, issuer.user_id, device_pk)
            raise DeviceNotFound(device_pk)

        delivered = await self.sessions.emit_to_group(
            device_group(device_pk),
            "command",
            {"command": command, "payload": command_payload, "timestamp": self.clock()},
        )
        await self._log(device_pk, "command", command, {"issued_by": issuer.user_id, "delivered": delivered})
        return delivered
