import uuid

from sqlalchemy import Column, DateTime, ForeignKey, JSON, String, Text

from signage.db import Base
from signage.models.device import utcnow

LOG_TYPES = ("heartbeat", "error", "warning", "command", "status_change")


class DeviceLog(Base):
    __tablename__ = "device_log"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    device_id = Column(String(36), ForeignKey("device.id", ondelete="CASCADE"), nullable=False, index=True)
    log_type = Column(String(32), nullable=False, index=True)
    message = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=utcnow, index=True)
