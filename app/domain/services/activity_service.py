"""Activity logging for bot and connection events."""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.persistence.models.activity_log import ActivityAction
from app.persistence.repositories.activity_log_repository import ActivityLogRepository

logger = logging.getLogger(__name__)


class ActivityService:
    """Service for writing activity log entries in their own transaction.

    Usage:
        activity = ActivityService(AsyncSessionLocal)
        await activity.record(tenant_id, ActivityAction.KEYWORD_REPLY_SENT, {"contact_id": 7})
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None):
        """Initialize activity service (``None`` disables persistence)."""
        self.session_factory = session_factory

    async def record(
        self,
        tenant_id: int,
        action: ActivityAction | str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Create an activity log entry.

        Args:
            tenant_id: Tenant ID
            action: The action being logged
            details: Additional action-specific details
        """
        if self.session_factory is None:
            return
        action_value = action.value if isinstance(action, ActivityAction) else action
        try:
            async with self.session_factory() as session:
                await ActivityLogRepository(session).log(tenant_id, action_value, details)
        except Exception as e:
            # Don't let activity logging failures break the caller
            logger.error(f"Failed to create activity log {action_value} for tenant {tenant_id}: {e}")
