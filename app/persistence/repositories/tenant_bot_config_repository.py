"""Tenant bot configuration repository."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.persistence.models.tenant_bot_config import TenantBotConfig
from app.persistence.repositories.base import BaseRepository


class TenantBotConfigRepository(BaseRepository[TenantBotConfig]):
    """Repository for TenantBotConfig entities (one row per tenant)."""

    def __init__(self, session: AsyncSession):
        """Initialize bot config repository."""
        super().__init__(TenantBotConfig, session)

    async def get_by_tenant_id(self, tenant_id: int) -> TenantBotConfig | None:
        """Get the bot config for a tenant."""
        stmt = select(TenantBotConfig).where(TenantBotConfig.tenant_id == tenant_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create(self, tenant_id: int) -> TenantBotConfig:
        """Get the bot config for a tenant, creating defaults if absent."""
        config = await self.get_by_tenant_id(tenant_id)
        if config is None:
            config = await self.create(tenant_id, keyword_replies=[], saved_audios=[])
        return config

    async def set_values(self, tenant_id: int, **values) -> TenantBotConfig:
        """Update fields on the tenant's bot config."""
        config = await self.get_or_create(tenant_id)
        for key, value in values.items():
            setattr(config, key, value)
        await self.session.commit()
        await self.session.refresh(config)
        return config
