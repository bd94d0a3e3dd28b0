"""Base repository with tenant-scoped queries."""

from typing import Generic, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.persistence.database import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """Base repository with tenant-scoped query methods.

    ``create`` commits immediately. Services that need several writes in one
    transaction (message + contact touch, merges) use ``add`` and commit
    themselves.
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        """Initialize repository with model and session."""
        self.model = model
        self.session = session

    async def get_by_id(self, tenant_id: int | None, id: int) -> ModelType | None:
        """Get entity by ID, scoped to tenant.

        ``tenant_id=None`` is for tables that are not tenant-owned (tenants).
        """
        stmt = select(self.model).where(self.model.id == id)
        if tenant_id is not None:
            stmt = stmt.where(self.model.tenant_id == tenant_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add(self, tenant_id: int | None, **data) -> ModelType:
        """Add a new entity and flush it without committing."""
        if tenant_id is not None:
            data["tenant_id"] = tenant_id
        instance = self.model(**data)
        self.session.add(instance)
        await self.session.flush()
        return instance

    async def create(self, tenant_id: int | None, **data) -> ModelType:
        """Create new entity with tenant_id."""
        instance = await self.add(tenant_id, **data)
        await self.session.commit()
        await self.session.refresh(instance)
        return instance
