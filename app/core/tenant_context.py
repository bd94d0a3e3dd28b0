"""Tenant context for log correlation inside per-tenant tasks."""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

tenant_id_var: ContextVar[Optional[int]] = ContextVar("tenant_id", default=None)


def set_tenant_context(tenant_id: int | None) -> None:
    """Set the current tenant context."""
    tenant_id_var.set(tenant_id)


def get_tenant_context() -> int | None:
    """Get the current tenant context."""
    return tenant_id_var.get()


@contextmanager
def tenant_scope(tenant_id: int) -> Iterator[None]:
    """Bind a tenant to the current task for the duration of the block.

    Tasks created inside the block inherit the binding, so a tenant's
    worker and timer tasks log with the right tenant id.
    """
    token = tenant_id_var.set(tenant_id)
    try:
        yield
    finally:
        tenant_id_var.reset(token)
