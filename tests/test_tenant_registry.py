"""Tests for the tenant registry."""

import asyncio
import uuid

import pytest

from app.domain.errors import NotConnectedError
from app.domain.models.connection import ConnectionPhase
from app.domain.services.tenant_registry import TenantRegistry
from app.persistence.repositories.tenant_repository import TenantRepository
from tests.fakes import FakeSessionFactory, FakeTranscoder, MemoryCredentialStore, RecordingSleep


def _registry(protocol_factory, session_factory):
    return TenantRegistry(
        protocol_factory,
        MemoryCredentialStore(),
        session_factory,
        transcoder=FakeTranscoder(),
        sleep=RecordingSleep(),
    )


@pytest.fixture
async def other_tenant(db_session):
    return await TenantRepository(db_session).create(
        None, name="Other Tenant", subdomain=f"other-{uuid.uuid4().hex[:8]}"
    )


@pytest.mark.asyncio
async def test_get_or_create_returns_one_context_per_tenant(session_factory, tenant, other_tenant):
    registry = _registry(FakeSessionFactory(), session_factory)

    first = registry.get_or_create(tenant.id)

    assert registry.get_or_create(tenant.id) is first
    assert registry.get_or_create(other_tenant.id) is not first
    assert registry.get(999) is None
    assert tenant.id in registry
    assert registry.tenant_ids == sorted([tenant.id, other_tenant.id])


@pytest.mark.asyncio
async def test_contexts_do_not_share_state(session_factory, tenant, other_tenant):
    registry = _registry(FakeSessionFactory(), session_factory)

    a = registry.get_or_create(tenant.id)
    b = registry.get_or_create(other_tenant.id)

    assert a.bus is not b.bus
    assert a.merge_lock is not b.merge_lock
    assert a.timers is not b.timers
    assert a.connection is not b.connection


@pytest.mark.asyncio
async def test_start_tenant_connects(session_factory, tenant):
    protocol_factory = FakeSessionFactory(auto_open=True)
    registry = _registry(protocol_factory, session_factory)

    context = await registry.start_tenant(tenant.id)

    assert context.status().phase == ConnectionPhase.CONNECTED
    assert context.dispatcher.running
    assert protocol_factory.latest.started
    await registry.shutdown(0.1, 0.1)


@pytest.mark.asyncio
async def test_pause_and_resume(session_factory, tenant):
    registry = _registry(FakeSessionFactory(), session_factory)
    context = registry.get_or_create(tenant.id)

    paused = await context.pause()
    assert paused.bot_paused
    assert not paused.replies_active

    resumed = await context.resume()
    assert not resumed.bot_paused
    assert resumed.replies_active


@pytest.mark.asyncio
async def test_refresh_requires_connection(session_factory, tenant):
    registry = _registry(FakeSessionFactory(), session_factory)
    context = registry.get_or_create(tenant.id)

    with pytest.raises(NotConnectedError):
        await context.refresh_contact_names()


@pytest.mark.asyncio
async def test_remove_tenant_closes_context(session_factory, tenant):
    protocol_factory = FakeSessionFactory(auto_open=True)
    registry = _registry(protocol_factory, session_factory)
    await registry.start_tenant(tenant.id)

    await registry.remove_tenant(tenant.id, timeout=0.1)

    assert tenant.id not in registry
    assert protocol_factory.latest.stopped


@pytest.mark.asyncio
async def test_shutdown_is_bounded_with_stuck_session(session_factory, tenant, other_tenant):
    protocol_factory = FakeSessionFactory(hang_on_stop=True, auto_open=True)
    registry = _registry(protocol_factory, session_factory)
    await registry.start_tenant(tenant.id)
    await registry.start_tenant(other_tenant.id)

    await asyncio.wait_for(registry.shutdown(drain_timeout=0.1, session_timeout=0.1), timeout=3)

    assert registry.tenant_ids == []
    assert all(not session.stopped for session in protocol_factory.sessions)


@pytest.mark.asyncio
async def test_shutdown_without_contexts(session_factory):
    registry = _registry(FakeSessionFactory(), session_factory)

    await registry.shutdown(0.1, 0.1)

    assert registry.tenant_ids == []


@pytest.mark.asyncio
async def test_services_of_a_tenant_share_one_merge_lock(session_factory, tenant):
    registry = _registry(FakeSessionFactory(), session_factory)

    context = registry.get_or_create(tenant.id)

    assert context.dispatcher.merge_lock is context.merge_lock
    assert context.ingestion.merge_lock is context.merge_lock
    assert context.messaging.merge_lock is context.merge_lock
