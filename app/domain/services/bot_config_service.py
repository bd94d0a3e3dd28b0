"""Per-tenant auto-reply configuration."""

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.services.keyword_rules import KeywordRule, parse_rules
from app.persistence.models.tenant_bot_config import TenantBotConfig
from app.persistence.repositories.tenant_bot_config_repository import TenantBotConfigRepository

logger = logging.getLogger(__name__)


@dataclass
class BotSettings:
    """Detached snapshot of a tenant's bot config."""

    auto_reply_enabled: bool = True
    bot_paused: bool = False
    min_delay_seconds: float = 3
    max_delay_seconds: float = 10
    view_delay_min_seconds: float = 1
    view_delay_max_seconds: float = 5
    typing_indicator_enabled: bool = True
    max_replies_per_contact: int = 5
    rules: list[KeywordRule] = field(default_factory=list)
    saved_audios: list[dict[str, Any]] = field(default_factory=list)

    @property
    def replies_active(self) -> bool:
        return self.auto_reply_enabled and not self.bot_paused

    @classmethod
    def from_model(cls, config: TenantBotConfig) -> "BotSettings":
        return cls(
            auto_reply_enabled=bool(config.auto_reply_enabled),
            bot_paused=bool(config.bot_paused),
            min_delay_seconds=config.min_delay_seconds,
            max_delay_seconds=config.max_delay_seconds,
            view_delay_min_seconds=config.view_delay_min_seconds,
            view_delay_max_seconds=config.view_delay_max_seconds,
            typing_indicator_enabled=bool(config.typing_indicator_enabled),
            max_replies_per_contact=config.max_replies_per_contact or 0,
            rules=parse_rules(config.keyword_replies),
            saved_audios=list(config.saved_audios or []),
        )


class BotConfigService:
    """Service for reading and toggling a tenant's bot config."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize bot config service."""
        self.session = session
        self.repo = TenantBotConfigRepository(session)

    async def get_settings(self, tenant_id: int) -> BotSettings:
        """Get the tenant's settings, creating defaults on first use."""
        config = await self.repo.get_or_create(tenant_id)
        return BotSettings.from_model(config)

    async def set_paused(self, tenant_id: int, paused: bool) -> BotSettings:
        """Pause or resume automated replies."""
        config = await self.repo.set_values(tenant_id, bot_paused=paused)
        logger.info(f"Bot {'paused' if paused else 'resumed'} for tenant {tenant_id}")
        return BotSettings.from_model(config)
