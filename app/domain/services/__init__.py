"""Domain services."""

from app.domain.services.connection_manager import ConnectionManager
from app.domain.services.ingestion_service import IngestionService
from app.domain.services.reconciliation_service import ReconciliationService
from app.domain.services.reply_dispatcher import ReplyDispatcher
from app.domain.services.tenant_registry import TenantContext, TenantRegistry

__all__ = [
    "ConnectionManager",
    "IngestionService",
    "ReconciliationService",
    "ReplyDispatcher",
    "TenantContext",
    "TenantRegistry",
]
