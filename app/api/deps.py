"""FastAPI dependencies for tenant resolution."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.tenant_context import set_tenant_context
from app.domain.services.tenant_registry import TenantContext, TenantRegistry
from app.persistence.database import get_db
from app.persistence.repositories.tenant_repository import TenantRepository


def get_registry(request: Request) -> TenantRegistry:
    """Get the tenant registry created by the application lifespan.

    Raises:
        HTTPException: If the bridge is not running
    """
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Messaging bridge is not configured",
        )
    return registry


async def require_tenant(
    tenant_id: int,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> int:
    """Require an existing, active tenant and bind it to the request.

    Raises:
        HTTPException: If the tenant does not exist or is inactive
    """
    tenant = await TenantRepository(db).get_by_id(None, tenant_id)
    if tenant is None or not tenant.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Tenant not found",
        )
    set_tenant_context(tenant_id)
    return tenant_id


async def get_tenant_runtime(
    tenant_id: Annotated[int, Depends(require_tenant)],
    registry: Annotated[TenantRegistry, Depends(get_registry)],
) -> TenantContext:
    """Get the running context of a tenant, creating it on first use."""
    return registry.get_or_create(tenant_id)
