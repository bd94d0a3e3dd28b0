"""Activity log model for bot and connection events."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String

from app.persistence.database import Base


class ActivityAction(str, Enum):
    """Types of logged activity (status changes are logged as ``status_<phase>``)."""

    MESSAGE_RECEIVED = "message_received"
    MESSAGE_STORED = "message_stored"
    KEYWORD_REPLY_SENT = "keyword_reply_sent"
    KEYWORD_REPLY_AUDIO_FALLBACK_TEXT = "keyword_reply_audio_fallback_text"
    MANUAL_REPLY_SENT = "manual_reply_sent"
    CONTACTS_MERGED = "contacts_merged"
    CONTACTS_SYNCED = "contacts_synced"
    CONTACTS_REFRESHED = "contacts_refreshed"
    DEVICE_DISCONNECTED = "device_disconnected"
    ERROR = "error"


class ActivityLog(Base):
    """Operator-visible history of what the bridge did for a tenant."""

    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    action = Column(String(100), nullable=False, index=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<ActivityLog(id={self.id}, tenant_id={self.tenant_id}, action={self.action})>"
