import logging
from datetime import datetime, timezone
from typing import Callable

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from signage.api import device
from signage.config import (
    CORS_ORIGINS,
    HEARTBEAT_SWEEP_SEC,
    HEARTBEAT_TIMEOUT_SEC,
    LOG_LEVEL,
    QUIET_ACCESS_LOG,
    QUIET_WEBSOCKET_LOG,
    SERVER_PORT,
)
from signage.db import SessionLocal, init_db
from signage.services.auth import TokenVerifier, token_verifier
from signage.services.gateway import ConnectionGateway
from signage.services.heartbeat import HeartbeatSweep
from signage.services.registry import DeviceRegistry

logging.getLogger("signage").setLevel(LOG_LEVEL)

if QUIET_ACCESS_LOG:
    # Keep warning/error lines, suppress normal access noise (200/201 etc).
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

if QUIET_WEBSOCKET_LOG:
    # Players on flaky networks drop constantly; the gateway already logs the
    # disconnect, the transport stack traces are noise.
    logging.getLogger("websockets").setLevel(logging.CRITICAL)
    logging.getLogger("uvicorn.protocols.websockets").setLevel(logging.CRITICAL)

logger = logging.getLogger(__name__)


def create_app(
    session_factory: Callable[[], Session] = SessionLocal,
    verifier: TokenVerifier = token_verifier,
    heartbeat_timeout_sec: int = HEARTBEAT_TIMEOUT_SEC,
    sweep_interval_sec: int = HEARTBEAT_SWEEP_SEC,
    start_sweep: bool = True,
) -> FastAPI:
    app = FastAPI(title="signage-api")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    registry = DeviceRegistry(session_factory)
    gateway = ConnectionGateway(registry, verifier)
    sweep = HeartbeatSweep(
        registry,
        gateway.fanout,
        timeout_sec=heartbeat_timeout_sec,
        interval_sec=sweep_interval_sec,
    )
    app.state.token_verifier = verifier
    app.state.registry = registry
    app.state.gateway = gateway
    app.state.sweep = sweep

    @app.get("/")
    def root():
        return {
            "ok": True,
            "service": "signage-api",
            "time_utc": datetime.now(timezone.utc).isoformat(),
            "docs": "/docs",
        }

    @app.get("/healthz")
    def healthz():
        return {
            "ok": True,
            "connections": len(gateway.sessions),
            "heartbeat_timeout_sec": heartbeat_timeout_sec,
            "sweep_interval_sec": sweep_interval_sec,
            "sweep_running": sweep.running,
        }

    @app.websocket("/ws")
    async def ws_realtime(websocket: WebSocket):
        await gateway.serve(websocket)

    @app.on_event("startup")
    async def startup_events() -> None:
        init_db()
        if start_sweep:
            sweep.start()

    @app.on_event("shutdown")
    async def shutdown_events() -> None:
        await sweep.stop()

    app.include_router(device.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=SERVER_PORT)
