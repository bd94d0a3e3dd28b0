"""Operator-initiated outbound messages."""

import asyncio
import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.events import EventBus, EventDispatchError
from app.core.identity import canonical_protocol_id
from app.domain.errors import NotConnectedError, SendError, UnresolvableIdentityError
from app.domain.models.events import (
    ContactSnapshot,
    ContactsChangedEvent,
    MessageSnapshot,
    NewMessageEvent,
)
from app.domain.services.activity_service import ActivityService
from app.domain.services.bot_config_service import BotConfigService
from app.domain.services.duplicate_detector import DuplicateDetector, ExternalIdDetector, MessageCandidate
from app.domain.services.reconciliation_service import ReconciliationService
from app.infrastructure.sent_message_pins import SentMessagePins
from app.persistence.models.activity_log import ActivityAction
from app.persistence.models.message import DeliveryStatus, MessageDirection
from app.persistence.repositories.contact_repository import ContactRepository
from app.persistence.repositories.message_repository import MessageRepository
from app.settings import settings

logger = logging.getLogger(__name__)


class MessagingService:
    """Sends manual messages through the tenant's open session."""

    def __init__(
        self,
        tenant_id: int,
        connection,
        bus: EventBus,
        db_session_factory: async_sessionmaker[AsyncSession],
        merge_lock: asyncio.Lock,
        pins: SentMessagePins,
        duplicate_detector: DuplicateDetector | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.connection = connection
        self.bus = bus
        self.db_session_factory = db_session_factory
        self.merge_lock = merge_lock
        self.pins = pins
        self.duplicate_detector = duplicate_detector or ExternalIdDetector()
        self.activity = ActivityService(db_session_factory)

    async def send_message(
        self,
        address: str | None,
        body: str,
        contact_id_hint: int | None = None,
    ) -> tuple[ContactSnapshot, MessageSnapshot]:
        """Send a text message to a contact.

        Args:
            address: Recipient phone number or protocol id
            body: Message text
            contact_id_hint: Contact the message belongs to, when known

        Returns:
            Snapshots of the contact and the stored message

        Raises:
            NotConnectedError: If the tenant has no open session
            UnresolvableIdentityError: If no recipient can be determined
            SendError: If the protocol client fails to send
        """
        session = self.connection.connected_session()
        if session is None:
            raise NotConnectedError(f"Tenant {self.tenant_id} is not connected")

        async with self.db_session_factory() as db:
            recon = ReconciliationService(db, self.merge_lock)
            contact = None
            if contact_id_hint is not None:
                contact = await ContactRepository(db).get_by_id(self.tenant_id, contact_id_hint)
            if contact is None:
                if not address:
                    raise UnresolvableIdentityError("No address or known contact to send to")
                if "@" in address:
                    contact = await recon.resolve(self.tenant_id, raw_protocol_id=address)
                else:
                    contact = await recon.resolve(self.tenant_id, raw_address=address)

            to = contact.canonical_protocol_id or canonical_protocol_id(
                contact.canonical_address or address, None, settings.default_protocol_domain
            )
            if not to:
                raise UnresolvableIdentityError(f"Contact {contact.id} has no usable address")
            contact_id = contact.id

            try:
                result = await session.send_text(to, body)
            except Exception as e:
                logger.error(f"Manual send to contact {contact_id} failed: {e}", exc_info=True)
                raise SendError(f"Failed to send message: {e}") from e
            await self.pins.pin(result.message_id, contact_id)

            timestamp = result.timestamp or datetime.utcnow()
            bot_settings = await BotConfigService(db).get_settings(self.tenant_id)
            async with self.merge_lock:
                # The contact may have been merged away while we were sending
                contact = await recon.locate_locked(self.tenant_id, contact_id, to)
                contact_id = contact.id
                candidate = MessageCandidate(
                    tenant_id=self.tenant_id,
                    contact_id=contact_id,
                    direction=MessageDirection.OUTBOUND.value,
                    body=body,
                    timestamp=timestamp,
                    external_id=result.message_id,
                )
                # The echo may have been ingested while we were sending
                message = await self.duplicate_detector.find_duplicate(db, candidate)
                if message is None:
                    message = await MessageRepository(db).add(
                        self.tenant_id,
                        contact_id=contact_id,
                        direction=candidate.direction,
                        body=body,
                        delivery_status=DeliveryStatus.SENT.value,
                        timestamp=timestamp,
                        external_id=result.message_id,
                    )
                    ContactRepository.advance_updated_at(contact, timestamp)
                    await db.commit()
                    await db.refresh(message)

                contact = await ContactRepository(db).record_reply(
                    self.tenant_id, contact_id, bot_settings.max_replies_per_contact
                )
                contact_snapshot = ContactSnapshot.model_validate(contact)
                message_snapshot = MessageSnapshot.model_validate(message)

        logger.info(f"Sent manual message to contact {contact_id}", extra={"contact_id": contact_id})
        await self.activity.record(
            self.tenant_id,
            ActivityAction.MANUAL_REPLY_SENT,
            {"contact_id": contact_id, "message_id": message_snapshot.id, "preview": body[:100]},
        )
        for event in (
            NewMessageEvent(tenant_id=self.tenant_id, contact=contact_snapshot, message=message_snapshot),
            ContactsChangedEvent(tenant_id=self.tenant_id, contact_ids=[contact_id]),
        ):
            try:
                await self.bus.publish(event)
            except EventDispatchError as e:
                logger.error(f"Subscribers failed for {type(event).__name__} on tenant {self.tenant_id}: {e}")
        return contact_snapshot, message_snapshot
