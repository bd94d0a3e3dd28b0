"""Inbound event ingestion for one tenant.

Consumes the protocol session's message batches, receipts and contact syncs,
resolves every message to one Contact, stores it once and hands genuine
inbound messages to the reply dispatcher.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.events import EventBus, EventDispatchError, Subscription
from app.core.identity import (
    is_broadcast_id,
    is_group_id,
    normalize_address,
    normalize_protocol_id,
    protocol_domain,
)
from app.domain.errors import PersistenceError, UnresolvableIdentityError
from app.domain.models.events import (
    ContactSnapshot,
    ContactsChangedEvent,
    MessageSnapshot,
    NewMessageEvent,
)
from app.domain.services.activity_service import ActivityService
from app.domain.services.bot_config_service import BotConfigService
from app.domain.services.contact_profile_resolver import ContactProfileResolver, NameLookup
from app.domain.services.duplicate_detector import (
    DuplicateDetector,
    MessageCandidate,
    default_duplicate_detector,
)
from app.domain.services.reconciliation_service import ReconciliationService
from app.domain.services.reply_dispatcher import ReplyDispatcher, ReplyJob
from app.infrastructure.protocol.base import (
    WRAPPER_KINDS,
    BatchKind,
    ContactsSync,
    MessageBatch,
    MessageContent,
    MessageKind,
    MessageStatusUpdate,
    ProtocolSession,
    RawMessage,
)
from app.infrastructure.sent_message_pins import SentMessagePins
from app.persistence.models.activity_log import ActivityAction
from app.persistence.models.contact import Contact
from app.persistence.models.message import DeliveryStatus, Message, MessageDirection
from app.persistence.repositories.contact_repository import ContactRepository
from app.persistence.repositories.message_repository import MessageRepository
from app.settings import settings

logger = logging.getLogger(__name__)

TYPE_TAGS = {
    MessageKind.IMAGE: "[Image]",
    MessageKind.VIDEO: "[Video]",
    MessageKind.AUDIO: "[Audio]",
    MessageKind.DOCUMENT: "[Document]",
    MessageKind.STICKER: "[Sticker]",
}

RECEIPT_STATUSES = {
    "sent": DeliveryStatus.SENT.value,
    "server_ack": DeliveryStatus.SENT.value,
    "delivered": DeliveryStatus.DELIVERED.value,
    "delivery_ack": DeliveryStatus.DELIVERED.value,
    "read": DeliveryStatus.DELIVERED.value,
    "played": DeliveryStatus.DELIVERED.value,
}


def unwrap_content(content: MessageContent | None) -> MessageContent | None:
    """Strip ephemeral, view-once and document-with-caption wrappers."""
    while content is not None and content.kind in WRAPPER_KINDS and content.inner is not None:
        content = content.inner
    return content


def extract_body(content: MessageContent | None) -> str | None:
    """Textual body of a message, a type tag for captionless media, else None."""
    content = unwrap_content(content)
    if content is None or content.kind in (MessageKind.PROTOCOL, MessageKind.REACTION):
        return None
    text = content.text or content.caption
    if text and text.strip():
        return text.strip()
    return TYPE_TAGS.get(content.kind)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass
class StoredMessage:
    """A message the pipeline persisted."""

    contact: ContactSnapshot
    message: MessageSnapshot
    reply_queued: bool = False


class IngestionService:
    """Event ingestion pipeline for one tenant."""

    def __init__(
        self,
        tenant_id: int,
        connection,
        bus: EventBus,
        db_session_factory: async_sessionmaker[AsyncSession],
        merge_lock: asyncio.Lock,
        pins: SentMessagePins,
        dispatcher: ReplyDispatcher | None = None,
        profile_resolver: ContactProfileResolver | None = None,
        duplicate_detector: DuplicateDetector | None = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        """Initialize the pipeline.

        Args:
            tenant_id: Tenant ID
            connection: The tenant's ConnectionManager (epoch gate)
            bus: Tenant event bus for notifications
            db_session_factory: Session factory; one session per event
            merge_lock: The tenant's reconciliation lock
            pins: Sent-message pins for echoed outbound messages
            dispatcher: Reply dispatcher (None disables auto-reply)
            profile_resolver: Name/avatar lookup
            duplicate_detector: Dedup strategy
            now: Clock returning naive UTC
        """
        self.tenant_id = tenant_id
        self.connection = connection
        self.bus = bus
        self.db_session_factory = db_session_factory
        self.merge_lock = merge_lock
        self.pins = pins
        self.dispatcher = dispatcher
        self.profile_resolver = profile_resolver or ContactProfileResolver()
        self.duplicate_detector = duplicate_detector or default_duplicate_detector()
        self.now = now
        self.activity = ActivityService(db_session_factory)
        self.historical_window = timedelta(seconds=settings.historical_window_seconds)

    def attach(self, session: ProtocolSession, epoch: int) -> list[Subscription]:
        """Subscribe to a freshly opened session's inbound events."""
        return [
            session.events.subscribe(MessageBatch, lambda batch: self.handle_batch(session, epoch, batch)),
            session.events.subscribe(
                MessageStatusUpdate, lambda update: self.handle_status_update(session, epoch, update)
            ),
            session.events.subscribe(ContactsSync, lambda sync: self.handle_contacts_sync(session, epoch, sync)),
        ]

    # ------------------------------------------------------------------
    # Message batches

    def is_recent_batch(self, batch: MessageBatch) -> bool:
        """Every timestamp lies within the historical window of now."""
        cutoff = self.now() - self.historical_window
        for raw in batch.messages:
            if raw.timestamp is not None and to_naive_utc(raw.timestamp) < cutoff:
                return False
        return True

    async def handle_batch(self, session: ProtocolSession, epoch: int, batch: MessageBatch) -> list[StoredMessage]:
        """Process one batch of message events.

        Returns:
            The messages that were stored

        Raises:
            PersistenceError: If any message could not be written; the rest of
                the batch is still processed first
        """
        if not self.connection.is_current(session, epoch):
            logger.debug(f"Dropping batch of {len(batch.messages)} from untrusted session for tenant {self.tenant_id}")
            return []

        if batch.kind == BatchKind.HISTORICAL and not self.is_recent_batch(batch):
            logger.info(
                f"Dropping historical batch of {len(batch.messages)} messages for tenant {self.tenant_id}",
                extra={"batch_size": len(batch.messages)},
            )
            return []

        stored: list[StoredMessage] = []
        failures: list[PersistenceError] = []
        for raw in batch.messages:
            try:
                result = await self.ingest_message(session, raw, live=batch.kind == BatchKind.LIVE)
            except PersistenceError as e:
                logger.error(f"Failed to persist message {raw.key.id} for tenant {self.tenant_id}: {e}")
                await self.activity.record(
                    self.tenant_id,
                    ActivityAction.ERROR,
                    {"stage": "persist", "message_id": raw.key.id, "error": str(e)},
                )
                failures.append(e)
                continue
            except Exception as e:
                logger.exception(f"Failed to ingest message {raw.key.id} for tenant {self.tenant_id}: {e}")
                continue
            if result is not None:
                stored.append(result)

        if failures:
            raise failures[0]
        return stored

    def should_skip(self, raw: RawMessage) -> bool:
        """Only 1:1 conversations are in scope."""
        remote_id = raw.key.remote_id
        return (
            not remote_id
            or protocol_domain(remote_id) is None
            or is_group_id(remote_id)
            or is_broadcast_id(remote_id)
        )

    async def ingest_message(self, session: ProtocolSession, raw: RawMessage, live: bool = True) -> StoredMessage | None:
        """Resolve, deduplicate and store one message event.

        Returns:
            The stored message, or None when it was skipped or a duplicate

        Raises:
            PersistenceError: If the message could not be written
        """
        if self.should_skip(raw):
            return None
        body = extract_body(raw.content)
        if body is None:
            return None

        from_me = raw.key.from_me
        remote_id = raw.key.remote_id
        direction = MessageDirection.OUTBOUND.value if from_me else MessageDirection.INBOUND.value
        timestamp = to_naive_utc(raw.timestamp) if raw.timestamp else self.now()

        preferred_contact_id = await self.pins.lookup(raw.key.id) if from_me else None
        # Our own push name is not the contact's name
        name = await self.profile_resolver.resolve_name(
            session, NameLookup(remote_id=remote_id, push_name=None if from_me else raw.push_name)
        )

        async with self.db_session_factory() as db:
            recon = ReconciliationService(db, self.merge_lock)
            # Held until the message row exists so a merge cannot remove the contact in between
            async with self.merge_lock:
                try:
                    resolution = await recon.resolve_locked(
                        self.tenant_id,
                        raw_protocol_id=remote_id,
                        preferred_contact_id=preferred_contact_id,
                        display_name=name.name if name else None,
                    )
                except UnresolvableIdentityError:
                    logger.debug(f"Skipping message {raw.key.id}: unresolvable sender {remote_id}")
                    return None
                except SQLAlchemyError as e:
                    await db.rollback()
                    raise PersistenceError(f"Contact resolution failed: {e}") from e

                contact = resolution.contact
                candidate = MessageCandidate(
                    tenant_id=self.tenant_id,
                    contact_id=contact.id,
                    direction=direction,
                    body=body,
                    timestamp=timestamp,
                    external_id=raw.key.id,
                )
                try:
                    existing = await self.duplicate_detector.find_duplicate(db, candidate)
                    if existing is not None:
                        logger.debug(f"Skipping duplicate of message {existing.id} for contact {contact.id}")
                        return None

                    message = await self._store(db, contact, candidate, from_me)
                except SQLAlchemyError as e:
                    await db.rollback()
                    raise PersistenceError(f"Failed to store message {raw.key.id}: {e}") from e

            contact_snapshot = ContactSnapshot.model_validate(contact)
            message_snapshot = MessageSnapshot.model_validate(message)
            replies_active = False
            if live and not from_me and self.dispatcher is not None:
                bot_settings = await BotConfigService(db).get_settings(self.tenant_id)
                replies_active = bot_settings.replies_active

        if not contact_snapshot.avatar_ref:
            contact_snapshot = await self._backfill_avatar(session, contact_snapshot.id, remote_id) or contact_snapshot

        logger.info(
            f"Stored {direction} message {message_snapshot.id} for contact {contact_snapshot.id}",
            extra={"contact_id": contact_snapshot.id, "message_id": message_snapshot.id, "direction": direction},
        )
        await self.activity.record(
            self.tenant_id,
            ActivityAction.MESSAGE_STORED if from_me else ActivityAction.MESSAGE_RECEIVED,
            {"contact_id": contact_snapshot.id, "message_id": message_snapshot.id, "preview": body[:100]},
        )
        await self._publish(
            NewMessageEvent(tenant_id=self.tenant_id, contact=contact_snapshot, message=message_snapshot)
        )
        await self._publish(
            ContactsChangedEvent(
                tenant_id=self.tenant_id,
                contact_ids=[contact_snapshot.id],
                removed_contact_ids=resolution.merged_contact_ids,
            )
        )

        reply_queued = False
        if replies_active:
            await self.dispatcher.enqueue(
                ReplyJob(
                    contact_id=contact_snapshot.id,
                    remote_id=remote_id,
                    message_key=raw.key,
                    body=body,
                    inbound_message_id=message_snapshot.id,
                )
            )
            reply_queued = True

        return StoredMessage(contact=contact_snapshot, message=message_snapshot, reply_queued=reply_queued)

    async def _store(self, db: AsyncSession, contact: Contact, candidate: MessageCandidate, from_me: bool) -> Message:
        message = await MessageRepository(db).add(
            self.tenant_id,
            contact_id=contact.id,
            direction=candidate.direction,
            body=candidate.body,
            delivery_status=DeliveryStatus.SENT.value if from_me else DeliveryStatus.DELIVERED.value,
            timestamp=candidate.timestamp,
            external_id=candidate.external_id,
        )
        ContactRepository.advance_updated_at(contact, candidate.timestamp)
        await db.commit()
        await db.refresh(message)
        await db.refresh(contact)
        return message

    async def _backfill_avatar(
        self, session: ProtocolSession, contact_id: int, remote_id: str
    ) -> ContactSnapshot | None:
        """Fetch a missing profile picture; None when nothing was stored."""
        avatar = await self.profile_resolver.resolve_avatar(session, remote_id)
        if not avatar:
            return None
        async with self.merge_lock:
            async with self.db_session_factory() as db:
                try:
                    contact = await ReconciliationService(db, self.merge_lock).locate_locked(
                        self.tenant_id, contact_id, remote_id
                    )
                    if not ContactRepository.apply_profile(contact, avatar_ref=avatar):
                        return None
                    await db.commit()
                    await db.refresh(contact)
                except (SQLAlchemyError, UnresolvableIdentityError) as e:
                    logger.warning(f"Failed to store avatar for contact {contact_id}: {e}")
                    return None
                return ContactSnapshot.model_validate(contact)

    # ------------------------------------------------------------------
    # Receipts and contact metadata

    async def handle_status_update(
        self, session: ProtocolSession, epoch: int, update: MessageStatusUpdate
    ) -> Message | None:
        """Advance a stored message's delivery status (never backwards)."""
        if not self.connection.is_current(session, epoch):
            return None
        status = RECEIPT_STATUSES.get(update.status.lower())
        if status is None or not update.key.id:
            return None
        async with self.db_session_factory() as db:
            try:
                message = await MessageRepository(db).advance_delivery_status(self.tenant_id, update.key.id, status)
            except SQLAlchemyError as e:
                await db.rollback()
                raise PersistenceError(f"Failed to update delivery status of {update.key.id}: {e}") from e
        if message is not None:
            logger.debug(f"Message {message.id} is now {message.delivery_status}")
        return message

    async def handle_contacts_sync(self, session: ProtocolSession, epoch: int, sync: ContactsSync) -> list[int]:
        """Refresh names of existing contacts; never creates contacts.

        Returns:
            IDs of contacts that changed
        """
        if not self.connection.is_current(session, epoch):
            return []

        changed_ids: list[int] = []
        async with self.merge_lock:
            async with self.db_session_factory() as db:
                repo = ContactRepository(db)
                for info in sync.contacts:
                    name = info.best_name
                    protocol_id = normalize_protocol_id(info.id)
                    if not name or protocol_id is None:
                        continue
                    for contact in await repo.find_matching(self.tenant_id, normalize_address(info.id), protocol_id):
                        if ContactRepository.apply_profile(contact, display_name=name):
                            changed_ids.append(contact.id)
                if changed_ids:
                    await db.commit()

        if changed_ids:
            await self.activity.record(self.tenant_id, ActivityAction.CONTACTS_SYNCED, {"contact_ids": changed_ids})
            await self._publish(ContactsChangedEvent(tenant_id=self.tenant_id, contact_ids=changed_ids))
        return changed_ids

    async def refresh_contact_profiles(self, session: ProtocolSession) -> dict[str, int]:
        """Re-run name and avatar resolution for every contact of the tenant.

        Returns:
            ``{"updated": n, "errors": n, "total": n}``
        """
        updated = errors = 0
        changed_ids: list[int] = []
        async with self.db_session_factory() as db:
            repo = ContactRepository(db)
            targets = [
                (contact.id, contact.canonical_protocol_id)
                for contact in await repo.list_by_tenant(self.tenant_id, limit=None)
            ]
            for contact_id, remote_id in targets:
                if not remote_id:
                    continue
                name = await self.profile_resolver.resolve_name(session, NameLookup(remote_id=remote_id))
                avatar = await self.profile_resolver.resolve_avatar(session, remote_id)
                try:
                    async with self.merge_lock:
                        contact = await repo.get_by_id(self.tenant_id, contact_id)
                        if contact is None:
                            # Merged away meanwhile
                            continue
                        if ContactRepository.apply_profile(
                            contact, display_name=name.name if name else None, avatar_ref=avatar
                        ):
                            await db.commit()
                            updated += 1
                            changed_ids.append(contact_id)
                except SQLAlchemyError as e:
                    errors += 1
                    await db.rollback()
                    logger.warning(f"Failed to refresh contact {contact_id}: {e}")

        result = {"updated": updated, "errors": errors, "total": len(targets)}
        await self.activity.record(self.tenant_id, ActivityAction.CONTACTS_REFRESHED, result)
        if changed_ids:
            await self._publish(ContactsChangedEvent(tenant_id=self.tenant_id, contact_ids=changed_ids))
        return result

    async def _publish(self, event) -> None:
        try:
            await self.bus.publish(event)
        except EventDispatchError as e:
            logger.error(f"Subscribers failed for {type(event).__name__} on tenant {self.tenant_id}: {e}")
