"""Activity log repository."""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.persistence.models.activity_log import ActivityLog
from app.persistence.repositories.base import BaseRepository


class ActivityLogRepository(BaseRepository[ActivityLog]):
    """Repository for ActivityLog entries."""

    def __init__(self, session: AsyncSession):
        """Initialize activity log repository."""
        super().__init__(ActivityLog, session)

    async def log(self, tenant_id: int, action: str, details: dict[str, Any] | None = None) -> ActivityLog:
        """Record one activity entry."""
        return await self.create(tenant_id, action=action, details=details or {})

    async def list_recent(
        self, tenant_id: int, limit: int = 100, action: str | None = None
    ) -> list[ActivityLog]:
        """List the newest entries first."""
        stmt = select(ActivityLog).where(ActivityLog.tenant_id == tenant_id)
        if action:
            stmt = stmt.where(ActivityLog.action == action)
        stmt = stmt.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
