"""Contact repository."""

from datetime import datetime

from sqlalchemy import and_, func, literal, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.persistence.models.contact import Contact, ContactStatus
from app.persistence.repositories.base import BaseRepository


class ContactRepository(BaseRepository[Contact]):
    """Repository for Contact entities."""

    def __init__(self, session: AsyncSession):
        """Initialize contact repository."""
        super().__init__(Contact, session)

    async def find_matching(
        self,
        tenant_id: int,
        address: str | None = None,
        protocol_id: str | None = None,
    ) -> list[Contact]:
        """Find every contact that could be the same party.

        A contact matches on an equal protocol id, or on an address that is
        equal to the given one or where one is a suffix of the other.

        Args:
            tenant_id: Tenant ID
            address: Normalized address
            protocol_id: Normalized protocol id

        Returns:
            Matching contacts, oldest first
        """
        conditions = []
        if protocol_id:
            conditions.append(Contact.canonical_protocol_id == protocol_id)
        if address:
            conditions.append(Contact.canonical_address == address)
            conditions.append(Contact.canonical_address.like(f"%{address}"))
            conditions.append(
                and_(
                    Contact.canonical_address != "",
                    literal(address).like("%" + Contact.canonical_address),
                )
            )
        if not conditions:
            return []

        stmt = (
            select(Contact)
            .where(Contact.tenant_id == tenant_id, or_(*conditions))
            .order_by(Contact.created_at, Contact.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_tenant(
        self, tenant_id: int, skip: int = 0, limit: int | None = 100
    ) -> list[Contact]:
        """List contacts, most recently active first."""
        stmt = (
            select(Contact)
            .where(Contact.tenant_id == tenant_id)
            .order_by(Contact.updated_at.desc(), Contact.id.desc())
            .offset(skip)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_tenant(self, tenant_id: int) -> int:
        stmt = select(func.count()).select_from(Contact).where(Contact.tenant_id == tenant_id)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def record_reply(
        self, tenant_id: int, contact_id: int, max_replies: int = 0
    ) -> Contact | None:
        """Increment the reply counter and advance the reply status.

        Args:
            tenant_id: Tenant ID
            contact_id: Contact ID
            max_replies: Reply limit; 0 means unlimited

        Returns:
            Updated contact or None if not found
        """
        contact = await self.get_by_id(tenant_id, contact_id)
        if contact is None:
            return None

        contact.reply_count = (contact.reply_count or 0) + 1
        if max_replies and contact.reply_count >= max_replies:
            contact.status = ContactStatus.COMPLETED.value
        else:
            contact.status = ContactStatus.REPLIED.value

        await self.session.commit()
        await self.session.refresh(contact)
        return contact

    @staticmethod
    def apply_profile(
        contact: Contact, display_name: str | None = None, avatar_ref: str | None = None
    ) -> bool:
        """Set name/avatar from non-empty values only. Returns True if anything changed."""
        changed = False
        if display_name and display_name.strip() and display_name.strip() != contact.display_name:
            contact.display_name = display_name.strip()
            changed = True
        if avatar_ref and avatar_ref != contact.avatar_ref:
            contact.avatar_ref = avatar_ref
            changed = True
        return changed

    @staticmethod
    def advance_updated_at(contact: Contact, timestamp: datetime) -> bool:
        """Move ``updated_at`` forward to a message timestamp (never back)."""
        if contact.updated_at is None or timestamp > contact.updated_at:
            contact.updated_at = timestamp
            return True
        return False
