"""Database models."""

from app.persistence.models.activity_log import ActivityAction, ActivityLog
from app.persistence.models.contact import Contact, ContactStatus
from app.persistence.models.message import DeliveryStatus, Message, MessageDirection
from app.persistence.models.session_credential import SessionCredential
from app.persistence.models.tenant import Tenant
from app.persistence.models.tenant_bot_config import TenantBotConfig

__all__ = [
    "ActivityAction",
    "ActivityLog",
    "Contact",
    "ContactStatus",
    "DeliveryStatus",
    "Message",
    "MessageDirection",
    "SessionCredential",
    "Tenant",
    "TenantBotConfig",
]
