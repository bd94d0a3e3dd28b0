"""Tests for manual sends and the end-to-end tenant flow."""

from datetime import datetime, timedelta

import pytest

from app.domain.errors import NotConnectedError, SendError, UnresolvableIdentityError
from app.domain.models.events import ContactsChangedEvent, NewMessageEvent
from app.domain.services.reconciliation_service import ReconciliationService
from app.domain.services.tenant_registry import TenantContext
from app.persistence.models.contact import ContactStatus
from app.persistence.models.message import DeliveryStatus, MessageDirection
from app.persistence.repositories.contact_repository import ContactRepository
from app.persistence.repositories.message_repository import MessageRepository
from tests.fakes import (
    FakeSessionFactory,
    FakeTranscoder,
    MemoryCredentialStore,
    RecordingSleep,
    live_batch,
    text_message,
)

ALICE = "12817882316@s.whatsapp.net"


@pytest.fixture
def protocol_factory():
    return FakeSessionFactory()


@pytest.fixture
async def context(tenant, protocol_factory, session_factory):
    context = TenantContext(
        tenant.id,
        protocol_factory,
        MemoryCredentialStore(),
        session_factory,
        transcoder=FakeTranscoder(),
        sleep=RecordingSleep(),
    )
    yield context
    await context.close(0.1)


@pytest.fixture
async def connected(context, protocol_factory):
    await context.start()
    await protocol_factory.latest.open()
    return context


async def _contact_and_messages(session_factory, tenant_id):
    async with session_factory() as db:
        contacts = await ContactRepository(db).list_by_tenant(tenant_id)
        assert len(contacts) == 1
        messages = await MessageRepository(db).list_by_contact(tenant_id, contacts[0].id)
        return contacts[0], messages


@pytest.mark.asyncio
async def test_send_message_creates_contact_and_stores_outbound(connected, protocol_factory, session_factory, tenant):
    events = []

    async def on_message(event):
        events.append(event)

    connected.bus.subscribe(NewMessageEvent, on_message)

    contact, message = await connected.send_message("+1 (281) 788-2316", "Hello from the shop")

    assert ("send_text", ALICE, "Hello from the shop") in protocol_factory.latest.calls
    assert contact.canonical_address == "12817882316"
    assert contact.reply_count == 1
    assert contact.status == ContactStatus.REPLIED.value
    assert message.direction == MessageDirection.OUTBOUND.value
    assert message.delivery_status == DeliveryStatus.SENT.value
    assert message.external_id == "OUT1"
    assert len(events) == 1


@pytest.mark.asyncio
async def test_echo_of_manual_send_is_not_stored_twice(connected, protocol_factory, session_factory, tenant):
    await connected.send_message("12817882316", "Hello from the shop")

    echo = text_message(ALICE, "Hello from the shop", "OUT1", from_me=True)
    await protocol_factory.latest.emit(live_batch(echo))

    _, messages = await _contact_and_messages(session_factory, tenant.id)
    assert len(messages) == 1


@pytest.mark.asyncio
async def test_send_by_protocol_id(connected, protocol_factory, session_factory, tenant):
    contact, _ = await connected.send_message(ALICE, "Hi")

    assert contact.canonical_protocol_id == ALICE
    assert protocol_factory.latest.calls[-1] == ("send_text", ALICE, "Hi")


@pytest.mark.asyncio
async def test_send_to_known_contact_by_id(connected, protocol_factory, session_factory, tenant):
    async with session_factory() as db:
        existing = await ContactRepository(db).create(
            tenant.id,
            canonical_address="447700900123",
            canonical_protocol_id="447700900123@s.whatsapp.net",
            display_name="Bob",
        )

    contact, _ = await connected.send_message(None, "Your order is ready", contact_id_hint=existing.id)

    assert contact.id == existing.id
    assert protocol_factory.latest.calls[-1] == ("send_text", "447700900123@s.whatsapp.net", "Your order is ready")


@pytest.mark.asyncio
async def test_send_requires_connection(context):
    with pytest.raises(NotConnectedError):
        await context.send_message("12817882316", "Hello")


@pytest.mark.asyncio
async def test_send_failure_raises_send_error(connected, protocol_factory, session_factory, tenant):
    protocol_factory.latest.send_failures = 1

    with pytest.raises(SendError):
        await connected.send_message("12817882316", "Hello")

    _, messages = await _contact_and_messages(session_factory, tenant.id)
    assert messages == []


@pytest.mark.asyncio
async def test_send_without_recipient(connected):
    with pytest.raises(UnresolvableIdentityError):
        await connected.send_message(None, "Hello")
    with pytest.raises(UnresolvableIdentityError):
        await connected.send_message("not a number", "Hello")


@pytest.mark.asyncio
async def test_inbound_keyword_gets_reply_end_to_end(
    connected, protocol_factory, session_factory, tenant, keyword_config
):
    session = protocol_factory.latest
    await session.emit(live_batch(text_message(ALICE, "Hi", "IN1", push_name="Alice")))

    assert await connected.drain(5)

    contact, messages = await _contact_and_messages(session_factory, tenant.id)
    assert contact.display_name == "Alice"
    assert contact.reply_count == 1
    assert [(m.direction, m.body) for m in messages] == [
        (MessageDirection.INBOUND.value, "Hi"),
        (MessageDirection.OUTBOUND.value, "Welcome!"),
    ]
    names = session.call_names()
    assert names.index("mark_read") < names.index("send_text")


@pytest.mark.asyncio
async def test_keyword_reply_echoed_during_send_is_stored_once(
    connected, protocol_factory, session_factory, tenant, keyword_config
):
    session = protocol_factory.latest
    send_text = session.send_text

    async def send_and_echo(to, text):
        result = await send_text(to, text)
        await session.emit(live_batch(text_message(to, text, result.message_id, from_me=True)))
        return result

    session.send_text = send_and_echo
    await session.emit(live_batch(text_message(ALICE, "Hi", "IN1", push_name="Alice")))

    assert await connected.drain(5)

    contact, messages = await _contact_and_messages(session_factory, tenant.id)
    assert [(m.direction, m.body) for m in messages] == [
        (MessageDirection.INBOUND.value, "Hi"),
        (MessageDirection.OUTBOUND.value, "Welcome!"),
    ]
    assert contact.reply_count == 1


@pytest.mark.asyncio
async def test_send_to_a_contact_merged_during_send(connected, protocol_factory, session_factory, tenant):
    now = datetime.utcnow()
    async with session_factory() as db:
        repo = ContactRepository(db)
        named = await repo.create(
            tenant.id,
            canonical_address="447700900123",
            canonical_protocol_id="447700900123@lid",
            display_name="Bob",
            created_at=now - timedelta(days=1),
            updated_at=now - timedelta(days=1),
        )
        duplicate = await repo.create(
            tenant.id, canonical_address="447700900123", canonical_protocol_id="447700900123@s.whatsapp.net"
        )

    session = protocol_factory.latest
    send_text = session.send_text

    async def send_then_merge(to, text):
        result = await send_text(to, text)
        async with session_factory() as db:
            repo = ContactRepository(db)
            contacts = [await repo.get_by_id(tenant.id, named.id), await repo.get_by_id(tenant.id, duplicate.id)]
            await ReconciliationService(db, connected.merge_lock).merge(tenant.id, contacts)
        return result

    session.send_text = send_then_merge

    contact, message = await connected.send_message(None, "See you soon", contact_id_hint=duplicate.id)

    assert contact.id == named.id
    assert message.contact_id == named.id
    assert contact.reply_count == 1
    async with session_factory() as db:
        assert await ContactRepository(db).get_by_id(tenant.id, duplicate.id) is None
        messages = await MessageRepository(db).list_by_contact(tenant.id, named.id)
    assert [m.body for m in messages] == ["See you soon"]


@pytest.mark.asyncio
async def test_merge_duplicate_contacts(context, session_factory, tenant):
    events = []

    async def on_change(event):
        events.append(event)

    context.bus.subscribe(ContactsChangedEvent, on_change)
    async with session_factory() as db:
        repo = ContactRepository(db)
        first = await repo.create(tenant.id, canonical_address="2817882316", display_name="Alice")
        second = await repo.create(tenant.id, canonical_address="12817882316", canonical_protocol_id=ALICE)

    survivors = await context.merge_duplicate_contacts()

    assert survivors == [first.id]
    assert events[0].contact_ids == [first.id]
    assert events[0].removed_contact_ids == [second.id]
    contact, _ = await _contact_and_messages(session_factory, tenant.id)
    assert contact.canonical_address == "12817882316"
    assert await context.merge_duplicate_contacts() == []
