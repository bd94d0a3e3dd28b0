"""Message repository."""

from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.persistence.models.message import DELIVERY_ORDER, Message
from app.persistence.repositories.base import BaseRepository


class MessageRepository(BaseRepository[Message]):
    """Repository for Message entities."""

    def __init__(self, session: AsyncSession):
        """Initialize message repository."""
        super().__init__(Message, session)

    async def list_by_contact(
        self, tenant_id: int, contact_id: int, skip: int = 0, limit: int = 100
    ) -> list[Message]:
        """Get messages for a contact in chronological order."""
        stmt = (
            select(Message)
            .where(Message.tenant_id == tenant_id, Message.contact_id == contact_id)
            .order_by(Message.timestamp, Message.id)
            .offset(skip)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_by_external_id(self, tenant_id: int, external_id: str) -> Message | None:
        """Get a message by the provider's message id."""
        stmt = (
            select(Message)
            .where(Message.tenant_id == tenant_id, Message.external_id == external_id)
            .order_by(Message.id)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_in_window(
        self,
        tenant_id: int,
        contact_id: int,
        body: str,
        direction: str,
        timestamp: datetime,
        window_seconds: float,
    ) -> Message | None:
        """Find a stored message with the same body and direction near a timestamp.

        Args:
            tenant_id: Tenant ID
            contact_id: Owning contact
            body: Message body
            direction: inbound or outbound
            timestamp: Timestamp of the candidate message
            window_seconds: Tolerance on either side of ``timestamp``

        Returns:
            The first stored message inside the window, or None
        """
        window = timedelta(seconds=window_seconds)
        stmt = (
            select(Message)
            .where(
                Message.tenant_id == tenant_id,
                Message.contact_id == contact_id,
                Message.direction == direction,
                Message.body == body,
                Message.timestamp >= timestamp - window,
                Message.timestamp <= timestamp + window,
            )
            .order_by(Message.id)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def reassign(self, tenant_id: int, from_contact_ids: list[int], to_contact_id: int) -> int:
        """Move messages between contacts (no commit).

        Returns:
            Number of messages moved
        """
        if not from_contact_ids:
            return 0
        stmt = (
            update(Message)
            .where(Message.tenant_id == tenant_id, Message.contact_id.in_(from_contact_ids))
            .values(contact_id=to_contact_id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def advance_delivery_status(
        self, tenant_id: int, external_id: str, status: str
    ) -> Message | None:
        """Move a message's delivery status forward.

        Returns:
            The updated message, or None when the message is unknown or the
            new status would not be an advance
        """
        message = await self.get_by_external_id(tenant_id, external_id)
        if message is None:
            return None
        if DELIVERY_ORDER.get(status, -1) <= DELIVERY_ORDER.get(message.delivery_status, -1):
            return None
        message.delivery_status = status
        await self.session.commit()
        await self.session.refresh(message)
        return message
