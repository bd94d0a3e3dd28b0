"""Tests for the inbound ingestion pipeline."""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from app.core.events import EventBus
from app.domain.errors import PersistenceError
from app.domain.models.events import ContactsChangedEvent, NewMessageEvent
from app.domain.services.duplicate_detector import DuplicateDetector, default_duplicate_detector
from app.domain.services.ingestion_service import IngestionService, extract_body
from app.domain.services.reconciliation_service import ReconciliationService
from app.infrastructure.protocol.base import (
    ContactInfo,
    ContactsSync,
    MessageContent,
    MessageKey,
    MessageKind,
    MessageStatusUpdate,
    RawMessage,
)
from app.infrastructure.sent_message_pins import SentMessagePins
from app.persistence.models.message import DeliveryStatus, MessageDirection
from app.persistence.repositories.contact_repository import ContactRepository
from app.persistence.repositories.message_repository import MessageRepository
from app.persistence.repositories.tenant_bot_config_repository import TenantBotConfigRepository
from tests.fakes import (
    FakeProtocolSession,
    RecordingDispatcher,
    StubConnection,
    historical_batch,
    live_batch,
    text_message,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)
ALICE = "12817882316@s.whatsapp.net"
BOB = "447700900123@s.whatsapp.net"


@pytest.fixture
def protocol(tenant):
    return FakeProtocolSession(tenant.id)


@pytest.fixture
def bus():
    return EventBus("test")


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def pipeline(tenant, protocol, bus, session_factory, dispatcher):
    return IngestionService(
        tenant.id,
        StubConnection(protocol, epoch=1),
        bus,
        session_factory,
        asyncio.Lock(),
        SentMessagePins(tenant.id),
        dispatcher=dispatcher,
        now=lambda: NOW,
    )


async def _messages(session_factory, tenant_id):
    async with session_factory() as session:
        contacts = await ContactRepository(session).list_by_tenant(tenant_id)
        messages = []
        for contact in contacts:
            messages.extend(await MessageRepository(session).list_by_contact(tenant_id, contact.id))
        return contacts, messages


def test_extract_body():
    assert extract_body(MessageContent(kind=MessageKind.TEXT, text="  hello ")) == "hello"
    assert extract_body(MessageContent(kind=MessageKind.IMAGE)) == "[Image]"
    assert extract_body(MessageContent(kind=MessageKind.IMAGE, caption="look")) == "look"
    assert extract_body(MessageContent(kind=MessageKind.STICKER)) == "[Sticker]"
    wrapped = MessageContent(
        kind=MessageKind.EPHEMERAL,
        inner=MessageContent(kind=MessageKind.VIEW_ONCE, inner=MessageContent(kind=MessageKind.VIDEO, caption="clip")),
    )
    assert extract_body(wrapped) == "clip"
    assert extract_body(MessageContent(kind=MessageKind.PROTOCOL)) is None
    assert extract_body(MessageContent(kind=MessageKind.REACTION, text="👍")) is None
    assert extract_body(MessageContent(kind=MessageKind.UNKNOWN)) is None
    assert extract_body(None) is None


@pytest.mark.asyncio
async def test_old_historical_batch_is_dropped(pipeline, protocol, session_factory, tenant):
    old = NOW - timedelta(minutes=20)
    batch = historical_batch(
        text_message(ALICE, "hello", "H1", timestamp=old),
        text_message(BOB, "hey", "H2", timestamp=old),
    )

    stored = await pipeline.handle_batch(protocol, 1, batch)

    assert stored == []
    contacts, messages = await _messages(session_factory, tenant.id)
    assert contacts == []
    assert messages == []


@pytest.mark.asyncio
async def test_recent_historical_batch_is_stored_without_replies(pipeline, protocol, session_factory, tenant, dispatcher):
    recent = NOW - timedelta(minutes=1)
    batch = historical_batch(
        text_message(ALICE, "hi", "H1", timestamp=recent),
        text_message(BOB, "hi", "H2", timestamp=recent),
    )

    stored = await pipeline.handle_batch(protocol, 1, batch)

    assert len(stored) == 2
    _, messages = await _messages(session_factory, tenant.id)
    assert len(messages) == 2
    assert dispatcher.jobs == []


@pytest.mark.asyncio
async def test_live_inbound_message_is_stored_and_queued(pipeline, protocol, session_factory, tenant, dispatcher, bus):
    events = []

    async def collect(event):
        events.append(event)

    bus.subscribe(NewMessageEvent, collect)
    bus.subscribe(ContactsChangedEvent, collect)

    stored = await pipeline.handle_batch(
        protocol, 1, live_batch(text_message(ALICE, "hi", "IN1", timestamp=NOW, push_name="Alice"))
    )

    assert len(stored) == 1
    result = stored[0]
    assert result.reply_queued
    assert result.contact.display_name == "Alice"
    assert result.contact.canonical_address == "12817882316"
    assert result.message.direction == MessageDirection.INBOUND.value
    assert result.message.delivery_status == DeliveryStatus.DELIVERED.value

    assert len(dispatcher.jobs) == 1
    job = dispatcher.jobs[0]
    assert job.contact_id == result.contact.id
    assert job.remote_id == ALICE
    assert job.body == "hi"
    assert job.message_key.id == "IN1"

    assert [type(e) for e in events] == [NewMessageEvent, ContactsChangedEvent]
    assert events[1].contact_ids == [result.contact.id]


@pytest.mark.asyncio
async def test_paused_bot_stores_but_does_not_queue(pipeline, protocol, db_session, tenant, dispatcher):
    await TenantBotConfigRepository(db_session).set_values(tenant.id, bot_paused=True)

    stored = await pipeline.handle_batch(protocol, 1, live_batch(text_message(ALICE, "hi", "IN1", timestamp=NOW)))

    assert len(stored) == 1
    assert not stored[0].reply_queued
    assert dispatcher.jobs == []


@pytest.mark.asyncio
async def test_outbound_echo_is_stored_once(pipeline, protocol, session_factory, tenant, dispatcher):
    echo = text_message(ALICE, "Thanks!", "OUT1", timestamp=NOW, from_me=True, push_name="Operator")

    first = await pipeline.handle_batch(protocol, 1, live_batch(echo))
    second = await pipeline.handle_batch(protocol, 1, live_batch(echo))

    assert len(first) == 1
    assert second == []
    assert first[0].message.direction == MessageDirection.OUTBOUND.value
    assert first[0].message.delivery_status == DeliveryStatus.SENT.value
    # Our own push name is never recorded as the contact's name
    assert first[0].contact.display_name is None
    assert dispatcher.jobs == []
    _, messages = await _messages(session_factory, tenant.id)
    assert len(messages) == 1


@pytest.mark.asyncio
async def test_batches_from_a_superseded_session_are_ignored(pipeline, protocol, session_factory, tenant):
    stale = FakeProtocolSession(tenant.id)

    assert await pipeline.handle_batch(stale, 1, live_batch(text_message(ALICE, "hi", "IN1", timestamp=NOW))) == []
    assert await pipeline.handle_batch(protocol, 0, live_batch(text_message(ALICE, "hi", "IN2", timestamp=NOW))) == []

    contacts, _ = await _messages(session_factory, tenant.id)
    assert contacts == []


@pytest.mark.asyncio
async def test_out_of_scope_messages_are_skipped(pipeline, protocol, session_factory, tenant):
    batch = live_batch(
        text_message("120363025246125486@g.us", "group chatter", "G1", timestamp=NOW),
        text_message("status@broadcast", "story", "S1", timestamp=NOW),
        text_message("12817882316", "no domain", "N1", timestamp=NOW),
        RawMessage(
            key=MessageKey(remote_id=ALICE, from_me=False, id="R1"),
            content=MessageContent(kind=MessageKind.REACTION, text="👍"),
            timestamp=NOW,
        ),
        RawMessage(key=MessageKey(remote_id=ALICE, from_me=False, id="P1"), content=None, timestamp=NOW),
    )

    assert await pipeline.handle_batch(protocol, 1, batch) == []
    contacts, _ = await _messages(session_factory, tenant.id)
    assert contacts == []


@pytest.mark.asyncio
async def test_media_without_caption_is_stored_as_tag(pipeline, protocol):
    raw = text_message(ALICE, None, "IMG1", timestamp=NOW, kind=MessageKind.IMAGE)

    stored = await pipeline.handle_batch(protocol, 1, live_batch(raw))

    assert stored[0].message.body == "[Image]"


@pytest.mark.asyncio
async def test_contact_name_prefers_the_contacts_cache(pipeline, protocol):
    protocol.cached[ALICE] = ContactInfo(id=ALICE, name="Alice Smith")
    protocol.avatars[ALICE] = "https://pps.example/alice.jpg"

    stored = await pipeline.handle_batch(
        protocol, 1, live_batch(text_message(ALICE, "hello", "IN1", timestamp=NOW, push_name="ally"))
    )

    assert stored[0].contact.display_name == "Alice Smith"
    assert stored[0].contact.avatar_ref == "https://pps.example/alice.jpg"


@pytest.mark.asyncio
async def test_persistence_failure_does_not_stop_the_batch(tenant, protocol, bus, session_factory):
    class FailOnBody(DuplicateDetector):
        def __init__(self):
            self.inner = default_duplicate_detector()

        async def find_duplicate(self, session, candidate):
            if candidate.body == "boom":
                raise SQLAlchemyError("disk I/O error")
            return await self.inner.find_duplicate(session, candidate)

    pipeline = IngestionService(
        tenant.id,
        StubConnection(protocol),
        bus,
        session_factory,
        asyncio.Lock(),
        SentMessagePins(tenant.id),
        duplicate_detector=FailOnBody(),
        now=lambda: NOW,
    )
    batch = live_batch(
        text_message(ALICE, "boom", "IN1", timestamp=NOW),
        text_message(BOB, "fine", "IN2", timestamp=NOW),
    )

    with pytest.raises(PersistenceError):
        await pipeline.handle_batch(protocol, 1, batch)

    _, messages = await _messages(session_factory, tenant.id)
    assert [m.body for m in messages] == ["fine"]


@pytest.mark.asyncio
async def test_receipts_only_advance_delivery_status(pipeline, protocol, session_factory, tenant):
    await pipeline.handle_batch(
        protocol, 1, live_batch(text_message(ALICE, "On my way", "OUT7", timestamp=NOW, from_me=True))
    )
    key = MessageKey(remote_id=ALICE, from_me=True, id="OUT7")

    updated = await pipeline.handle_status_update(protocol, 1, MessageStatusUpdate(key=key, status="read"))
    assert updated.delivery_status == DeliveryStatus.DELIVERED.value

    assert await pipeline.handle_status_update(protocol, 1, MessageStatusUpdate(key=key, status="sent")) is None
    assert await pipeline.handle_status_update(protocol, 1, MessageStatusUpdate(key=key, status="bogus")) is None

    async with session_factory() as session:
        message = await MessageRepository(session).get_by_external_id(tenant.id, "OUT7")
    assert message.delivery_status == DeliveryStatus.DELIVERED.value


@pytest.mark.asyncio
async def test_contacts_sync_names_existing_contacts_only(pipeline, protocol, session_factory, tenant):
    await pipeline.handle_batch(protocol, 1, live_batch(text_message(ALICE, "hello", "IN1", timestamp=NOW)))

    changed = await pipeline.handle_contacts_sync(
        protocol,
        1,
        ContactsSync(contacts=[
            ContactInfo(id="12817882316:4@s.whatsapp.net", notify="Alice"),
            ContactInfo(id=BOB, notify="Bob"),
        ]),
    )

    contacts, _ = await _messages(session_factory, tenant.id)
    assert len(contacts) == 1
    assert contacts[0].display_name == "Alice"
    assert changed == [contacts[0].id]


@pytest.mark.asyncio
async def test_refresh_contact_profiles(pipeline, protocol, session_factory, tenant):
    await pipeline.handle_batch(protocol, 1, live_batch(text_message(ALICE, "hello", "IN1", timestamp=NOW)))
    await pipeline.handle_batch(protocol, 1, live_batch(text_message(BOB, "hey", "IN2", timestamp=NOW)))
    protocol.remote[ALICE] = ContactInfo(id=ALICE, verified_name="Alice's Bakery")

    result = await pipeline.refresh_contact_profiles(protocol)

    assert result == {"updated": 1, "errors": 0, "total": 2}
    async with session_factory() as session:
        contact = (await ContactRepository(session).find_matching(tenant.id, "12817882316", ALICE))[0]
    assert contact.display_name == "Alice's Bakery"


class MergeDuringDedup(DuplicateDetector):
    """Requests a merge of the resolved contact right before the insert."""

    def __init__(self, lock, session_factory, survivor_id):
        self.lock = lock
        self.session_factory = session_factory
        self.survivor_id = survivor_id
        self.lock_held = []
        self.merge_task = None

    async def _merge(self, tenant_id, contact_id):
        async with self.session_factory() as db:
            repo = ContactRepository(db)
            contacts = [await repo.get_by_id(tenant_id, self.survivor_id), await repo.get_by_id(tenant_id, contact_id)]
            await ReconciliationService(db, self.lock).merge(tenant_id, contacts)

    async def find_duplicate(self, session, candidate):
        self.lock_held.append(self.lock.locked())
        self.merge_task = asyncio.create_task(self._merge(candidate.tenant_id, candidate.contact_id))
        await asyncio.sleep(0.01)
        return await default_duplicate_detector().find_duplicate(session, candidate)


@pytest.mark.asyncio
async def test_merge_waits_until_the_message_is_stored(tenant, protocol, bus, session_factory, db_session):
    repo = ContactRepository(db_session)
    survivor = await repo.create(
        tenant.id,
        canonical_protocol_id="98765432101@lid",
        created_at=NOW - timedelta(days=1),
        updated_at=NOW - timedelta(days=1),
    )
    alice = await repo.create(tenant.id, canonical_address="12817882316", canonical_protocol_id=ALICE)
    lock = asyncio.Lock()
    detector = MergeDuringDedup(lock, session_factory, survivor.id)
    pipeline = IngestionService(
        tenant.id,
        StubConnection(protocol, epoch=1),
        bus,
        session_factory,
        lock,
        SentMessagePins(tenant.id),
        duplicate_detector=detector,
        now=lambda: NOW,
    )

    stored = await pipeline.handle_batch(protocol, 1, live_batch(text_message(ALICE, "hi", "IN1", timestamp=NOW)))
    assert stored[0].contact.id == alice.id
    await asyncio.wait_for(detector.merge_task, timeout=2)

    assert detector.lock_held == [True]
    async with session_factory() as db:
        assert await ContactRepository(db).get_by_id(tenant.id, alice.id) is None
        messages = await MessageRepository(db).list_by_contact(tenant.id, survivor.id)
    assert [(m.body, m.external_id) for m in messages] == [("hi", "IN1")]
