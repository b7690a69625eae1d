import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Integer, Float, Text, JSON
from signage.db import Base

DEVICE_STATUSES = ("online", "offline", "error", "maintenance")
DEVICE_PROVIDERS = ("signcraft_player", "screencloud", "yodeck", "android", "windows", "other")
DEVICE_ORIENTATIONS = ("landscape", "portrait")


def utcnow() -> datetime:
    # Naive UTC wall clock, stored as-is by SQLite DateTime columns.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_connection_token() -> str:
    return f"{uuid.uuid4()}-{int(utcnow().timestamp() * 1000)}"


class Device(Base):
    __tablename__ = "device"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), nullable=False, index=True)
    device_id = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    provider = Column(String(32), nullable=False, default="signcraft_player")
    provider_device_id = Column(String(255), nullable=True)
    screen_width = Column(Integer, nullable=True)
    screen_height = Column(Integer, nullable=True)
    orientation = Column(String(16), nullable=False, default="landscape")
    location_name = Column(String(255), nullable=True)
    location_address = Column(Text, nullable=True)
    location_latitude = Column(Float, nullable=True)
    location_longitude = Column(Float, nullable=True)
    timezone = Column(String(100), default="UTC")
    tags = Column(JSON, default=list)
    status = Column(String(16), nullable=False, default="offline", index=True)
    last_heartbeat = Column(DateTime, nullable=True, index=True)
    connection_token = Column(String(500), nullable=True, unique=True)
    player_version = Column(String(50), nullable=True)
    device_info = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
