"""Message model."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from app.persistence.database import Base

if TYPE_CHECKING:
    from app.persistence.models.contact import Contact


class MessageDirection(str, Enum):
    """Who sent the message."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class DeliveryStatus(str, Enum):
    """Delivery progress; only ever moves forward."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"


DELIVERY_ORDER = {
    DeliveryStatus.PENDING.value: 0,
    DeliveryStatus.SENT.value: 1,
    DeliveryStatus.DELIVERED.value: 2,
}


class Message(Base):
    """One message exchanged with a contact.

    Immutable once stored except for ``delivery_status`` and the owning
    ``contact_id``, which is reassigned when contacts are merged.
    """

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=False, index=True)
    direction = Column(String(20), nullable=False)
    body = Column(Text, nullable=False)
    delivery_status = Column(String(20), default=DeliveryStatus.PENDING.value, nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)
    external_id = Column(String(255), nullable=True, index=True)  # Provider message id
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    contact = relationship("Contact", back_populates="messages")

    def __repr__(self) -> str:
        return (
            f"<Message(id={self.id}, contact_id={self.contact_id}, "
            f"direction={self.direction}, status={self.delivery_status})>"
        )
