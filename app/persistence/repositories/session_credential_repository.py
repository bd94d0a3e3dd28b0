"""Session credential repository."""

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.persistence.models.session_credential import SessionCredential
from app.persistence.repositories.base import BaseRepository


class SessionCredentialRepository(BaseRepository[SessionCredential]):
    """Repository for stored protocol credential material."""

    def __init__(self, session: AsyncSession):
        """Initialize session credential repository."""
        super().__init__(SessionCredential, session)

    async def get_all(self, tenant_id: int) -> dict[str, str]:
        """Get all stored credential entries for a tenant as ``{key_name: data}``."""
        stmt = select(SessionCredential).where(SessionCredential.tenant_id == tenant_id)
        result = await self.session.execute(stmt)
        return {row.key_name: row.data for row in result.scalars().all()}

    async def upsert_many(self, tenant_id: int, entries: dict[str, str]) -> None:
        """Insert or replace credential entries, committing once."""
        if not entries:
            return
        stmt = select(SessionCredential).where(
            SessionCredential.tenant_id == tenant_id,
            SessionCredential.key_name.in_(list(entries)),
        )
        result = await self.session.execute(stmt)
        existing = {row.key_name: row for row in result.scalars().all()}
        for key_name, data in entries.items():
            row = existing.get(key_name)
            if row is None:
                self.session.add(SessionCredential(tenant_id=tenant_id, key_name=key_name, data=data))
            else:
                row.data = data
        await self.session.commit()

    async def delete_keys(self, tenant_id: int, key_names: list[str]) -> None:
        """Delete selected credential entries."""
        if not key_names:
            return
        await self.session.execute(
            delete(SessionCredential).where(
                SessionCredential.tenant_id == tenant_id,
                SessionCredential.key_name.in_(key_names),
            )
        )
        await self.session.commit()

    async def delete_all(self, tenant_id: int) -> int:
        """Delete every credential entry for a tenant.

        Returns:
            Number of rows deleted
        """
        result = await self.session.execute(
            delete(SessionCredential).where(SessionCredential.tenant_id == tenant_id)
        )
        await self.session.commit()
        return result.rowcount or 0
