from typing import Literal

from pydantic import BaseModel, Field
from datetime import datetime

DeviceStatus = Literal["online", "offline", "error", "maintenance"]
DeviceProvider = Literal["signcraft_player", "screencloud", "yodeck", "android", "windows", "other"]
Orientation = Literal["landscape", "portrait"]


class DeviceRegisterIn(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)
    provider: DeviceProvider = "signcraft_player"
    provider_device_id: str | None = None
    screen_width: int | None = Field(None, gt=0)
    screen_height: int | None = Field(None, gt=0)
    orientation: Orientation = "landscape"
    location_name: str | None = None
    location_address: str | None = None
    location_latitude: float | None = Field(None, ge=-90, le=90)
    location_longitude: float | None = Field(None, ge=-180, le=180)
    timezone: str = "UTC"
    tags: list[str] = Field(default_factory=list)


class DeviceUpdateIn(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    screen_width: int | None = Field(None, gt=0)
    screen_height: int | None = Field(None, gt=0)
    orientation: Orientation | None = None
    location_name: str | None = None
    location_address: str | None = None
    location_latitude: float | None = Field(None, ge=-90, le=90)
    location_longitude: float | None = Field(None, ge=-180, le=180)
    timezone: str | None = None
    tags: list[str] | None = None
    status: DeviceStatus | None = None


class DeviceOut(BaseModel):
    id: str
    tenant_id: str
    device_id: str
    name: str
    provider: str
    provider_device_id: str | None = None
    screen_width: int | None = None
    screen_height: int | None = None
    orientation: str
    location_name: str | None = None
    location_address: str | None = None
    location_latitude: float | None = None
    location_longitude: float | None = None
    timezone: str | None = None
    tags: list[str] = Field(default_factory=list)
    status: str
    last_heartbeat: datetime | None = None
    player_version: str | None = None
    device_info: dict = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class DeviceCreatedOut(DeviceOut):
    connection_token: str


class DeviceStatsOut(BaseModel):
    status: str
    last_heartbeat: datetime | None = None
    uptime_ms: int | None = None
    player_version: str | None = None
    device_info: dict = Field(default_factory=dict)


class DeviceLogOut(BaseModel):
    id: str
    device_id: str
    log_type: str
    message: str | None = None
    metadata: dict = Field(default_factory=dict, validation_alias="meta")
    created_at: datetime | None = None

    class Config:
        from_attributes = True
