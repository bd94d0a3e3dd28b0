"""Contact model."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from app.persistence.database import Base

if TYPE_CHECKING:
    from app.persistence.models.message import Message
    from app.persistence.models.tenant import Tenant


class ContactStatus(str, Enum):
    """Reply lifecycle of a contact."""

    PENDING = "pending"
    REPLIED = "replied"
    COMPLETED = "completed"


class Contact(Base):
    """Canonical identity of one remote conversation partner (a lead).

    ``updated_at`` is advanced by message timestamps, not wall-clock, so
    recency ordering stays chronological when a backlog is replayed.
    """

    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    canonical_address = Column(String(20), nullable=True, index=True)
    canonical_protocol_id = Column(String(100), nullable=True, index=True)
    display_name = Column(String(255), nullable=True)
    avatar_ref = Column(String(1024), nullable=True)
    reply_count = Column(Integer, default=0, nullable=False)
    status = Column(String(20), default=ContactStatus.PENDING.value, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # Relationships
    tenant = relationship("Tenant", back_populates="contacts")
    messages = relationship(
        "Message", back_populates="contact", order_by="Message.timestamp", passive_deletes=True
    )

    def __repr__(self) -> str:
        return (
            f"<Contact(id={self.id}, tenant_id={self.tenant_id}, "
            f"address={self.canonical_address}, protocol_id={self.canonical_protocol_id})>"
        )
