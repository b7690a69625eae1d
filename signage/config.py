import os


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


DATABASE_URL = os.getenv("SIGNAGE_DATABASE_URL", "sqlite:///./signage.db").strip()
SERVER_PORT = int(os.getenv("SIGNAGE_SERVER_PORT", "8000"))

JWT_SECRET = os.getenv("SIGNAGE_JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("SIGNAGE_JWT_ALGORITHM", "HS256")
JWT_EXPIRE_MIN = int(os.getenv("SIGNAGE_JWT_EXPIRE_MIN", str(60 * 24)))

HEARTBEAT_TIMEOUT_SEC = int(os.getenv("SIGNAGE_HEARTBEAT_TIMEOUT_SEC", "60"))
HEARTBEAT_SWEEP_SEC = int(os.getenv("SIGNAGE_HEARTBEAT_SWEEP_SEC", "30"))

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("SIGNAGE_CORS_ORIGINS", "*").split(",")
    if origin.strip()
]
LOG_LEVEL = os.getenv("SIGNAGE_LOG_LEVEL", "INFO").strip().upper()
QUIET_ACCESS_LOG = _flag("SIGNAGE_QUIET_ACCESS_LOG", "1")
QUIET_WEBSOCKET_LOG = _flag("SIGNAGE_QUIET_WEBSOCKET_LOG", "1")
