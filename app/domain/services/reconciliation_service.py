"""Resolve raw identifiers to one canonical Contact, merging duplicates.

The network can address the same person under superficially different ids
(with or without a device suffix, or under the alias namespace), so a lookup
may find several Contacts for one party. They are merged on the spot.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.identity import (
    addresses_match,
    canonical_protocol_id,
    normalize_address,
    normalize_protocol_id,
)
from app.domain.errors import UnresolvableIdentityError
from app.persistence.models.activity_log import ActivityAction
from app.persistence.models.contact import Contact, ContactStatus
from app.persistence.repositories.activity_log_repository import ActivityLogRepository
from app.persistence.repositories.contact_repository import ContactRepository
from app.persistence.repositories.message_repository import MessageRepository
from app.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    """Outcome of resolving one set of identifiers."""

    contact: Contact
    created: bool = False
    updated: bool = False
    merged_contact_ids: list[int] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.created or self.updated or bool(self.merged_contact_ids)


class ReconciliationService:
    """Service enforcing one Contact per canonical address and protocol id.

    All resolution for a tenant must share one ``merge_lock``; the tenant
    context owns it and hands it to every instance it creates.
    """

    def __init__(
        self,
        session: AsyncSession,
        merge_lock: asyncio.Lock | None = None,
        default_domain: str | None = None,
    ) -> None:
        """Initialize reconciliation service."""
        self.session = session
        self.merge_lock = merge_lock or asyncio.Lock()
        self.default_domain = default_domain or settings.default_protocol_domain
        self.contact_repo = ContactRepository(session)
        self.message_repo = MessageRepository(session)
        self.activity_repo = ActivityLogRepository(session)

    async def resolve(
        self,
        tenant_id: int,
        raw_address: str | None = None,
        raw_protocol_id: str | None = None,
        preferred_contact_id: int | None = None,
        display_name: str | None = None,
    ) -> Contact:
        """Return the single Contact for the given identifiers.

        Args:
            tenant_id: Tenant ID
            raw_address: Phone number in any format
            raw_protocol_id: Network identifier, possibly with a device suffix
            preferred_contact_id: Contact a prior action pinned this party to
            display_name: Name to record if non-empty

        Returns:
            The canonical Contact

        Raises:
            UnresolvableIdentityError: If neither identifier normalizes
        """
        resolution = await self.resolve_detailed(
            tenant_id,
            raw_address=raw_address,
            raw_protocol_id=raw_protocol_id,
            preferred_contact_id=preferred_contact_id,
            display_name=display_name,
        )
        return resolution.contact

    async def resolve_detailed(
        self,
        tenant_id: int,
        raw_address: str | None = None,
        raw_protocol_id: str | None = None,
        preferred_contact_id: int | None = None,
        display_name: str | None = None,
    ) -> Resolution:
        """Like ``resolve`` but also reports whether contacts were created or merged."""
        self._identifiers(raw_address, raw_protocol_id)
        async with self.merge_lock:
            return await self.resolve_locked(
                tenant_id,
                raw_address=raw_address,
                raw_protocol_id=raw_protocol_id,
                preferred_contact_id=preferred_contact_id,
                display_name=display_name,
            )

    async def resolve_locked(
        self,
        tenant_id: int,
        raw_address: str | None = None,
        raw_protocol_id: str | None = None,
        preferred_contact_id: int | None = None,
        display_name: str | None = None,
    ) -> Resolution:
        """``resolve_detailed`` for callers that already hold ``merge_lock``.

        Callers hold the lock across resolve and their own writes (storing a
        message) so the contact cannot be merged away in between.
        """
        address, protocol_id = self._identifiers(raw_address, raw_protocol_id)
        matches = await self.contact_repo.find_matching(tenant_id, address, protocol_id)
        if not matches:
            contact = await self._create(tenant_id, address, protocol_id, display_name)
            return Resolution(contact=contact, created=True)

        if len(matches) == 1:
            contact = matches[0]
            updated = self._backfill(contact, address, protocol_id, display_name)
            if updated:
                await self.session.commit()
                await self.session.refresh(contact)
            return Resolution(contact=contact, updated=updated)

        primary, merged_ids = await self._merge(tenant_id, matches, preferred_contact_id)
        self._backfill(primary, address, protocol_id, display_name)
        await self.session.commit()
        await self.session.refresh(primary)
        return Resolution(contact=primary, updated=True, merged_contact_ids=merged_ids)

    async def locate_locked(self, tenant_id: int, contact_id: int, raw_protocol_id: str | None) -> Contact:
        """Load a contact by id, following it through a merge if it is gone.

        Caller must hold ``merge_lock``.

        Raises:
            UnresolvableIdentityError: If the contact is gone and the protocol
                id cannot be resolved
        """
        contact = await self.contact_repo.get_by_id(tenant_id, contact_id)
        if contact is not None:
            return contact
        resolution = await self.resolve_locked(tenant_id, raw_protocol_id=raw_protocol_id)
        logger.info(
            f"Contact {contact_id} no longer exists, continuing with contact {resolution.contact.id}",
            extra={"contact_id": resolution.contact.id, "previous_contact_id": contact_id},
        )
        return resolution.contact

    async def merge_all_duplicates(self, tenant_id: int) -> list[Resolution]:
        """Merge every group of contacts that identify the same party.

        Contacts group together when their addresses match (exactly or as a
        suffix) or their protocol ids are equal. Used to clean up duplicates
        stored before identifiers were normalized.

        Returns:
            One resolution per merged group
        """
        async with self.merge_lock:
            contacts = sorted(
                await self.contact_repo.list_by_tenant(tenant_id, limit=None),
                key=lambda c: (c.created_at or datetime.max, c.id),
            )
            groups = self.group_duplicates(contacts)

            results = []
            for group in groups:
                # Longest address of the group; shorter ones lack the country code
                address = max((normalize_address(c.canonical_address) or "" for c in group), key=len)
                primary, merged_ids = await self._merge(tenant_id, group, None)
                self._backfill(primary, address, normalize_protocol_id(primary.canonical_protocol_id), None)
                results.append(Resolution(contact=primary, updated=True, merged_contact_ids=merged_ids))
            if results:
                await self.session.commit()
                for result in results:
                    await self.session.refresh(result.contact)

        logger.info(
            f"Duplicate sweep for tenant {tenant_id} merged {len(results)} groups",
            extra={"merged_groups": len(results)},
        )
        return results

    @staticmethod
    def group_duplicates(contacts: list[Contact]) -> list[list[Contact]]:
        """Connected groups (size > 1) of contacts that match each other."""
        parent = list(range(len(contacts)))

        def find(i: int) -> int:
            while parent[i] != i:
                parent[i] = parent[parent[i]]
                i = parent[i]
            return i

        protocol_ids = [normalize_protocol_id(c.canonical_protocol_id) for c in contacts]
        for i, left in enumerate(contacts):
            for j in range(i + 1, len(contacts)):
                right = contacts[j]
                same_id = protocol_ids[i] is not None and protocol_ids[i] == protocol_ids[j]
                if same_id or addresses_match(left.canonical_address, right.canonical_address):
                    parent[find(j)] = find(i)

        groups: dict[int, list[Contact]] = {}
        for i, contact in enumerate(contacts):
            groups.setdefault(find(i), []).append(contact)
        return [group for group in groups.values() if len(group) > 1]

    @staticmethod
    def _identifiers(raw_address: str | None, raw_protocol_id: str | None) -> tuple[str, str | None]:
        protocol_id = normalize_protocol_id(raw_protocol_id)
        address = normalize_address(raw_address) or normalize_address(raw_protocol_id)
        if not address and not protocol_id:
            raise UnresolvableIdentityError(
                f"Cannot resolve address={raw_address!r} protocol_id={raw_protocol_id!r}"
            )
        return address, protocol_id

    async def merge(
        self,
        tenant_id: int,
        contacts: list[Contact],
        preferred_contact_id: int | None = None,
    ) -> Contact:
        """Merge already-loaded candidate contacts into one.

        Returns:
            The surviving contact
        """
        if not contacts:
            raise ValueError("At least one contact required for merge")
        if len(contacts) == 1:
            return contacts[0]
        async with self.merge_lock:
            primary, _ = await self._merge(tenant_id, contacts, preferred_contact_id)
            await self.session.commit()
            await self.session.refresh(primary)
            return primary

    async def _create(
        self,
        tenant_id: int,
        address: str,
        protocol_id: str | None,
        display_name: str | None,
    ) -> Contact:
        now = datetime.utcnow()
        contact = await self.contact_repo.add(
            tenant_id,
            canonical_address=address or None,
            canonical_protocol_id=protocol_id or canonical_protocol_id(address, None, self.default_domain),
            display_name=(display_name or "").strip() or None,
            reply_count=0,
            status=ContactStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        await self.session.commit()
        await self.session.refresh(contact)
        logger.info(
            f"Created contact {contact.id} for tenant {tenant_id}",
            extra={"contact_id": contact.id, "protocol_id": contact.canonical_protocol_id},
        )
        return contact

    def _backfill(
        self,
        contact: Contact,
        address: str,
        protocol_id: str | None,
        display_name: str | None,
    ) -> bool:
        """Fill missing or non-canonical identifiers; never swaps the namespace."""
        changed = False

        if address and contact.canonical_address != address:
            stored = normalize_address(contact.canonical_address)
            # Replace when absent, non-canonical, or a shorter suffix of the new address
            if not stored or stored != contact.canonical_address or (
                len(address) > len(stored) and address.endswith(stored)
            ):
                contact.canonical_address = address
                changed = True

        stored_id = normalize_protocol_id(contact.canonical_protocol_id)
        if stored_id is None:
            new_id = protocol_id or canonical_protocol_id(
                contact.canonical_address or address, None, self.default_domain
            )
            if new_id and new_id != contact.canonical_protocol_id:
                contact.canonical_protocol_id = new_id
                changed = True
        elif stored_id != contact.canonical_protocol_id:
            contact.canonical_protocol_id = stored_id
            changed = True

        if display_name and ContactRepository.apply_profile(contact, display_name=display_name):
            changed = True
        return changed

    @staticmethod
    def select_primary(contacts: list[Contact], preferred_contact_id: int | None = None) -> Contact:
        """Pick the surviving contact of a merge.

        Preferred id first, then the earliest contact with a name or avatar,
        then the earliest contact.
        """
        ordered = sorted(contacts, key=lambda c: (c.created_at or datetime.max, c.id))
        if preferred_contact_id is not None:
            for contact in ordered:
                if contact.id == preferred_contact_id:
                    return contact
        for contact in ordered:
            if contact.display_name or contact.avatar_ref:
                return contact
        return ordered[0]

    async def _merge(
        self,
        tenant_id: int,
        contacts: list[Contact],
        preferred_contact_id: int | None,
    ) -> tuple[Contact, list[int]]:
        """Fold contacts into the primary without committing."""
        primary = self.select_primary(contacts, preferred_contact_id)
        others = [c for c in contacts if c.id != primary.id]
        other_ids = [c.id for c in others]

        moved = await self.message_repo.reassign(tenant_id, other_ids, primary.id)

        primary.reply_count = sum(c.reply_count or 0 for c in contacts)
        for other in others:
            if not primary.display_name and other.display_name:
                primary.display_name = other.display_name
            if not primary.avatar_ref and other.avatar_ref:
                primary.avatar_ref = other.avatar_ref
            if not primary.canonical_address and other.canonical_address:
                primary.canonical_address = other.canonical_address
            if not primary.canonical_protocol_id and other.canonical_protocol_id:
                primary.canonical_protocol_id = other.canonical_protocol_id
            if other.created_at and (primary.created_at is None or other.created_at < primary.created_at):
                primary.created_at = other.created_at
            if other.updated_at and (primary.updated_at is None or other.updated_at > primary.updated_at):
                primary.updated_at = other.updated_at
            if other.status == ContactStatus.COMPLETED.value:
                primary.status = ContactStatus.COMPLETED.value
            elif other.status == ContactStatus.REPLIED.value and primary.status == ContactStatus.PENDING.value:
                primary.status = ContactStatus.REPLIED.value

        for other in others:
            await self.session.delete(other)
        await self.session.flush()

        await self.activity_repo.add(
            tenant_id,
            action=ActivityAction.CONTACTS_MERGED.value,
            details={
                "primary_contact_id": primary.id,
                "merged_contact_ids": other_ids,
                "messages_moved": moved,
                "reply_count": primary.reply_count,
            },
        )
        logger.info(
            f"Merged contacts {other_ids} into {primary.id} for tenant {tenant_id}",
            extra={"primary_contact_id": primary.id, "merged_contact_ids": other_ids, "messages_moved": moved},
        )
        return primary, other_ids
