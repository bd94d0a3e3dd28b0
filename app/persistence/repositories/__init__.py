"""Repository implementations."""

from app.persistence.repositories.activity_log_repository import ActivityLogRepository
from app.persistence.repositories.base import BaseRepository
from app.persistence.repositories.contact_repository import ContactRepository
from app.persistence.repositories.message_repository import MessageRepository
from app.persistence.repositories.session_credential_repository import SessionCredentialRepository
from app.persistence.repositories.tenant_bot_config_repository import TenantBotConfigRepository
from app.persistence.repositories.tenant_repository import TenantRepository

__all__ = [
    "BaseRepository",
    "ActivityLogRepository",
    "ContactRepository",
    "MessageRepository",
    "SessionCredentialRepository",
    "TenantBotConfigRepository",
    "TenantRepository",
]
