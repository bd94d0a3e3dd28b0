"""Tenant auto-reply configuration model."""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON
from sqlalchemy.orm import relationship

from app.persistence.database import Base

if TYPE_CHECKING:
    from app.persistence.models.tenant import Tenant


class TenantBotConfig(Base):
    """Per-tenant automated reply settings."""

    __tablename__ = "tenant_bot_configs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, unique=True, index=True)

    # Enable/disable
    auto_reply_enabled = Column(Boolean, default=True, nullable=False)
    bot_paused = Column(Boolean, default=False, nullable=False)

    # Human-like timing (seconds)
    min_delay_seconds = Column(Integer, default=3, nullable=False)
    max_delay_seconds = Column(Integer, default=10, nullable=False)
    view_delay_min_seconds = Column(Integer, default=1, nullable=False)
    view_delay_max_seconds = Column(Integer, default=5, nullable=False)
    typing_indicator_enabled = Column(Boolean, default=True, nullable=False)

    # 0 means unlimited
    max_replies_per_contact = Column(Integer, default=5, nullable=False)

    # [{"keyword": "hi", "replyType": "text", "message": "Welcome!", "audioId": null}, ...]
    keyword_replies = Column(JSON, nullable=True)
    # [{"id": "a1", "name": "Greeting", "path": "audios/greeting.mp3"}, ...]
    saved_audios = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    tenant = relationship("Tenant", back_populates="bot_config")

    def __repr__(self) -> str:
        return (
            f"<TenantBotConfig(id={self.id}, tenant_id={self.tenant_id}, "
            f"auto_reply={self.auto_reply_enabled}, paused={self.bot_paused})>"
        )
