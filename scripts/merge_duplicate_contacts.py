"""Merge contacts stored more than once for the same party.

Usage: python scripts/merge_duplicate_contacts.py [tenant_id ...]

Without arguments every active tenant is swept.
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from app.domain.services.reconciliation_service import ReconciliationService
from app.persistence.database import AsyncSessionLocal
from app.persistence.models.tenant import Tenant


async def merge_duplicate_contacts(tenant_ids: list[int]):
    """Merge duplicate contacts of the given tenants (all active tenants if empty)."""
    async with AsyncSessionLocal() as session:
        if not tenant_ids:
            result = await session.execute(select(Tenant.id).where(Tenant.is_active.is_(True)).order_by(Tenant.id))
            tenant_ids = list(result.scalars().all())

        print(f"Sweeping {len(tenant_ids)} tenants for duplicate contacts...")

        # Only for use while the bridge is stopped; the lock is not shared with a running server
        recon = ReconciliationService(session)
        total = 0
        for tenant_id in tenant_ids:
            resolutions = await recon.merge_all_duplicates(tenant_id)
            for resolution in resolutions:
                print(
                    f"  tenant {tenant_id}: merged {resolution.merged_contact_ids} "
                    f"into contact {resolution.contact.id}"
                )
            total += len(resolutions)

        print(f"Merged {total} groups of duplicate contacts.")


if __name__ == "__main__":
    asyncio.run(merge_duplicate_contacts([int(arg) for arg in sys.argv[1:]]))
