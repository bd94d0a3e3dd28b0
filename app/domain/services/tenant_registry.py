"""Registry of per-tenant bridge contexts.

Each ``TenantContext`` owns everything one tenant needs: its event bus,
connection manager, ingestion pipeline, reply dispatcher, merge lock and
timers. Nothing is shared between tenants except the database.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.events import EventBus, EventDispatchError
from app.core.tenant_context import tenant_scope
from app.core.timers import TimerGroup
from app.domain.errors import NotConnectedError
from app.domain.models.connection import ConnectionStatusEvent
from app.domain.models.events import ContactSnapshot, ContactsChangedEvent, MessageSnapshot
from app.domain.services.bot_config_service import BotConfigService, BotSettings
from app.domain.services.connection_manager import ConnectionManager
from app.domain.services.contact_profile_resolver import ContactProfileResolver
from app.domain.services.duplicate_detector import DuplicateDetector, default_duplicate_detector
from app.domain.services.ingestion_service import IngestionService
from app.domain.services.messaging_service import MessagingService
from app.domain.services.reconciliation_service import ReconciliationService
from app.domain.services.reply_dispatcher import ReplyDispatcher
from app.infrastructure.audio import AudioTranscoder
from app.infrastructure.credential_store import CredentialStore
from app.infrastructure.protocol.base import ProtocolSessionFactory
from app.infrastructure.redis import RedisClient
from app.infrastructure.sent_message_pins import SentMessagePins
from app.settings import settings

logger = logging.getLogger(__name__)


class TenantContext:
    """All bridge state for one tenant."""

    def __init__(
        self,
        tenant_id: int,
        protocol_factory: ProtocolSessionFactory,
        credential_store: CredentialStore,
        db_session_factory: async_sessionmaker[AsyncSession],
        transcoder: AudioTranscoder | None = None,
        redis: RedisClient | None = None,
        profile_resolver: ContactProfileResolver | None = None,
        duplicate_detector: DuplicateDetector | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.db_session_factory = db_session_factory
        self.bus = EventBus(f"tenant:{tenant_id}")
        self.merge_lock = asyncio.Lock()
        self.timers = TimerGroup(f"tenant:{tenant_id}")
        self.pins = SentMessagePins(tenant_id, redis=redis)
        duplicate_detector = duplicate_detector or default_duplicate_detector()

        self.connection = ConnectionManager(
            tenant_id,
            protocol_factory,
            credential_store,
            self.bus,
            db_session_factory=db_session_factory,
            timers=self.timers,
        )
        self.dispatcher = ReplyDispatcher(
            tenant_id,
            self.connection,
            self.bus,
            db_session_factory,
            pins=self.pins,
            transcoder=transcoder,
            sleep=sleep,
            rng=rng,
            merge_lock=self.merge_lock,
        )
        self.ingestion = IngestionService(
            tenant_id,
            self.connection,
            self.bus,
            db_session_factory,
            self.merge_lock,
            self.pins,
            dispatcher=self.dispatcher,
            profile_resolver=profile_resolver,
            duplicate_detector=duplicate_detector,
        )
        self.connection.listener = self.ingestion
        self.messaging = MessagingService(
            tenant_id,
            self.connection,
            self.bus,
            db_session_factory,
            self.merge_lock,
            self.pins,
        )

    async def start(self) -> ConnectionStatusEvent:
        """Start the reply worker and connect."""
        with tenant_scope(self.tenant_id):
            self.dispatcher.start()
            return await self.connection.start()

    def status(self) -> ConnectionStatusEvent:
        return self.connection.status()

    async def pause(self) -> BotSettings:
        """Stop automated replies; messages are still ingested."""
        async with self.db_session_factory() as db:
            return await BotConfigService(db).set_paused(self.tenant_id, True)

    async def resume(self) -> BotSettings:
        async with self.db_session_factory() as db:
            return await BotConfigService(db).set_paused(self.tenant_id, False)

    async def reconnect(self) -> ConnectionStatusEvent:
        with tenant_scope(self.tenant_id):
            self.dispatcher.start()
            return await self.connection.reconnect()

    async def disconnect(self) -> ConnectionStatusEvent:
        """Graceful logout."""
        with tenant_scope(self.tenant_id):
            return await self.connection.disconnect()

    async def send_message(
        self, address: str | None, body: str, contact_id_hint: int | None = None
    ) -> tuple[ContactSnapshot, MessageSnapshot]:
        with tenant_scope(self.tenant_id):
            return await self.messaging.send_message(address, body, contact_id_hint)

    async def refresh_contact_names(self) -> dict[str, int]:
        """Re-resolve names and avatars of every contact.

        Raises:
            NotConnectedError: If the tenant has no open session
        """
        session = self.connection.connected_session()
        if session is None:
            raise NotConnectedError(f"Tenant {self.tenant_id} is not connected")
        with tenant_scope(self.tenant_id):
            return await self.ingestion.refresh_contact_profiles(session)

    async def merge_duplicate_contacts(self) -> list[int]:
        """Merge contacts stored twice for the same party.

        Returns:
            IDs of the surviving contacts
        """
        with tenant_scope(self.tenant_id):
            async with self.db_session_factory() as db:
                resolutions = await ReconciliationService(db, self.merge_lock).merge_all_duplicates(self.tenant_id)
                removed = [contact_id for r in resolutions for contact_id in r.merged_contact_ids]
                survivors = [r.contact.id for r in resolutions]
            if resolutions:
                try:
                    await self.bus.publish(
                        ContactsChangedEvent(
                            tenant_id=self.tenant_id, contact_ids=survivors, removed_contact_ids=removed
                        )
                    )
                except EventDispatchError as e:
                    logger.error(f"Subscribers failed for ContactsChangedEvent on tenant {self.tenant_id}: {e}")
            return survivors

    async def drain(self, timeout: float) -> bool:
        return await self.dispatcher.drain(timeout)

    async def close(self, timeout: float | None = None) -> None:
        """Stop the session (no logout), the worker and every timer."""
        with tenant_scope(self.tenant_id):
            self.timers.cancel_all()
            await self.dispatcher.cancel()
            await self.connection.shutdown(timeout)


class TenantRegistry:
    """Explicit arena of tenant contexts keyed by tenant id."""

    def __init__(
        self,
        protocol_factory: ProtocolSessionFactory,
        credential_store: CredentialStore,
        db_session_factory: async_sessionmaker[AsyncSession],
        **context_options,
    ) -> None:
        self.protocol_factory = protocol_factory
        self.credential_store = credential_store
        self.db_session_factory = db_session_factory
        self.context_options = context_options
        self._contexts: dict[int, TenantContext] = {}

    def __contains__(self, tenant_id: int) -> bool:
        return tenant_id in self._contexts

    @property
    def tenant_ids(self) -> list[int]:
        return sorted(self._contexts)

    def get(self, tenant_id: int) -> TenantContext | None:
        return self._contexts.get(tenant_id)

    def get_or_create(self, tenant_id: int) -> TenantContext:
        context = self._contexts.get(tenant_id)
        if context is None:
            context = TenantContext(
                tenant_id,
                self.protocol_factory,
                self.credential_store,
                self.db_session_factory,
                **self.context_options,
            )
            self._contexts[tenant_id] = context
        return context

    async def start_tenant(self, tenant_id: int) -> TenantContext:
        """Create (if needed) and start a tenant's context."""
        context = self.get_or_create(tenant_id)
        await context.start()
        return context

    async def remove_tenant(self, tenant_id: int, timeout: float | None = None) -> None:
        context = self._contexts.pop(tenant_id, None)
        if context is not None:
            await context.close(timeout or settings.shutdown_session_timeout_seconds)

    async def shutdown(
        self,
        drain_timeout: float | None = None,
        session_timeout: float | None = None,
    ) -> None:
        """Drain reply queues, then close every session, each step bounded.

        Returns once the bounds elapse even if some tenant is still stuck.
        """
        drain_timeout = drain_timeout if drain_timeout is not None else settings.shutdown_drain_timeout_seconds
        session_timeout = (
            session_timeout if session_timeout is not None else settings.shutdown_session_timeout_seconds
        )
        contexts = list(self._contexts.values())
        if not contexts:
            return
        logger.info(f"Shutting down {len(contexts)} tenant contexts")

        await self._run_bounded([context.drain(drain_timeout) for context in contexts], drain_timeout, "drain")
        await self._run_bounded([context.close(session_timeout) for context in contexts], session_timeout, "close")
        self._contexts.clear()

    async def _run_bounded(self, coroutines: list, timeout: float, step: str) -> None:
        tasks = [asyncio.ensure_future(coroutine) for coroutine in coroutines]
        # Small grace period past the bound for the tasks' own timeouts to fire
        done, pending = await asyncio.wait(tasks, timeout=timeout + 0.5)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"Tenant {step} failed during shutdown: {task.exception()}")
        if pending:
            logger.warning(f"{len(pending)} tenant(s) did not finish {step} in {timeout}s, abandoning")
            for task in pending:
                task.cancel()
