"""Tests for the HTTP and WebSocket surface."""

import asyncio
from datetime import datetime
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from starlette.websockets import WebSocketDisconnect

from app.domain.services.tenant_registry import TenantRegistry
from app.main import app
from app.persistence.database import Base, get_db
from app.persistence.models.message import DeliveryStatus, MessageDirection
from app.persistence.repositories.contact_repository import ContactRepository
from app.persistence.repositories.message_repository import MessageRepository
from app.persistence.repositories.tenant_repository import TenantRepository
from tests.fakes import FakeSessionFactory, FakeTranscoder, MemoryCredentialStore, RecordingSleep

API = "/api/v1/tenants"


async def _seed(engine, factory):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with factory() as db:
        tenant = await TenantRepository(db).create(None, name="Acme", subdomain="acme")
        inactive = await TenantRepository(db).create(None, name="Gone", subdomain="gone", is_active=False)
        contact = await ContactRepository(db).create(
            tenant.id,
            canonical_address="12817882316",
            canonical_protocol_id="12817882316@s.whatsapp.net",
            display_name="Alice",
        )
        await MessageRepository(db).create(
            tenant.id,
            contact_id=contact.id,
            direction=MessageDirection.INBOUND.value,
            body="Hi",
            delivery_status=DeliveryStatus.DELIVERED.value,
            timestamp=datetime(2026, 3, 1, 12, 0, 0),
            external_id="IN1",
        )
        return tenant.id, inactive.id, contact.id


@pytest.fixture
def api(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", poolclass=NullPool)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    tenant_id, inactive_id, contact_id = asyncio.run(_seed(engine, factory))

    async def override_get_db():
        async with factory() as session:
            yield session

    protocol_factory = FakeSessionFactory(auto_open=True)
    app.dependency_overrides[get_db] = override_get_db
    app.state.registry = TenantRegistry(
        protocol_factory,
        MemoryCredentialStore(),
        factory,
        transcoder=FakeTranscoder(),
        sleep=RecordingSleep(),
    )
    try:
        with TestClient(app) as client:
            yield SimpleNamespace(
                client=client,
                tenant_id=tenant_id,
                inactive_id=inactive_id,
                contact_id=contact_id,
                protocol_factory=protocol_factory,
                session_factory=factory,
            )
    finally:
        app.state.registry = None
        app.dependency_overrides.clear()
        asyncio.run(engine.dispose())


def test_health(api):
    response = api.client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_unknown_or_inactive_tenant_is_404(api):
    assert api.client.get(f"{API}/9999/connection").status_code == 404
    assert api.client.get(f"{API}/{api.inactive_id}/connection").status_code == 404


def test_connection_status_before_start(api):
    response = api.client.get(f"{API}/{api.tenant_id}/connection")

    assert response.status_code == 200
    data = response.json()
    assert data["type"] == "connection_status"
    assert data["tenant_id"] == api.tenant_id
    assert data["phase"] == "initializing"


def test_start_then_disconnect(api):
    response = api.client.post(f"{API}/{api.tenant_id}/start")
    assert response.status_code == 200
    assert response.json()["phase"] == "connected"
    assert response.json()["connection_epoch"] == 1

    response = api.client.post(f"{API}/{api.tenant_id}/disconnect")
    assert response.status_code == 200
    assert response.json()["phase"] == "disconnected"
    assert response.json()["reason"] == "manual_logout"
    assert ("logout",) in api.protocol_factory.latest.calls


def test_pause_and_resume(api):
    response = api.client.post(f"{API}/{api.tenant_id}/pause")
    assert response.status_code == 200
    assert response.json() == {"auto_reply_enabled": True, "bot_paused": True}

    response = api.client.post(f"{API}/{api.tenant_id}/resume")
    assert response.json() == {"auto_reply_enabled": True, "bot_paused": False}


def test_list_contacts_and_messages(api):
    response = api.client.get(f"{API}/{api.tenant_id}/contacts")
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["contacts"][0]["display_name"] == "Alice"

    response = api.client.get(f"{API}/{api.tenant_id}/contacts/{api.contact_id}/messages")
    assert response.status_code == 200
    data = response.json()
    assert data["contact"]["id"] == api.contact_id
    assert [m["body"] for m in data["messages"]] == ["Hi"]


def test_messages_for_missing_contact(api):
    response = api.client.get(f"{API}/{api.tenant_id}/contacts/9999/messages")
    assert response.status_code == 404


def test_send_message_requires_connection(api):
    response = api.client.post(f"{API}/{api.tenant_id}/messages", json={"address": "12817882316", "body": "Hello"})
    assert response.status_code == 409


def test_send_message(api):
    api.client.post(f"{API}/{api.tenant_id}/start")

    response = api.client.post(
        f"{API}/{api.tenant_id}/messages",
        json={"contact_id": api.contact_id, "body": "Your order is ready"},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["contact"]["id"] == api.contact_id
    assert data["message"]["direction"] == "outbound"
    assert data["message"]["body"] == "Your order is ready"
    assert api.protocol_factory.latest.calls[-1] == (
        "send_text",
        "12817882316@s.whatsapp.net",
        "Your order is ready",
    )


def test_send_message_validation(api):
    response = api.client.post(f"{API}/{api.tenant_id}/messages", json={"body": "Hello"})
    assert response.status_code == 422

    response = api.client.post(f"{API}/{api.tenant_id}/messages", json={"address": "12817882316", "body": ""})
    assert response.status_code == 422


def test_refresh_contacts_requires_connection(api):
    response = api.client.post(f"{API}/{api.tenant_id}/contacts/refresh")
    assert response.status_code == 409


def test_bridge_routes_unavailable_without_registry(api):
    registry, app.state.registry = app.state.registry, None
    try:
        response = api.client.get(f"{API}/{api.tenant_id}/connection")
    finally:
        app.state.registry = registry
    assert response.status_code == 503


def test_events_socket_sends_current_status(api):
    api.client.get(f"{API}/{api.tenant_id}/connection")

    with api.client.websocket_connect(f"{API}/{api.tenant_id}/events") as websocket:
        data = websocket.receive_json()

    assert data["type"] == "connection_status"
    assert data["tenant_id"] == api.tenant_id


def test_events_socket_unknown_tenant(api):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with api.client.websocket_connect(f"{API}/9999/events") as websocket:
            websocket.receive_json()

    assert exc_info.value.code == 4404


async def _add_contact(factory, tenant_id, address):
    async with factory() as db:
        contact = await ContactRepository(db).create(tenant_id, canonical_address=address)
        return contact.id


def test_merge_duplicate_contacts(api):
    duplicate_id = asyncio.run(_add_contact(api.session_factory, api.tenant_id, "2817882316"))

    response = api.client.post(f"{API}/{api.tenant_id}/contacts/merge-duplicates")

    assert response.status_code == 200
    assert response.json() == {"merged_groups": 1, "contact_ids": [api.contact_id]}
    contacts = api.client.get(f"{API}/{api.tenant_id}/contacts").json()
    assert [c["id"] for c in contacts["contacts"]] == [api.contact_id]
    assert duplicate_id != api.contact_id

    response = api.client.post(f"{API}/{api.tenant_id}/contacts/merge-duplicates")
    assert response.json() == {"merged_groups": 0, "contact_ids": []}
