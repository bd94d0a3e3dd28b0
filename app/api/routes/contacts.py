"""Contact and conversation history routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import require_tenant
from app.api.schemas.bridge import ContactsListResponse, MessagesListResponse
from app.domain.models.events import ContactSnapshot, MessageSnapshot
from app.persistence.database import get_db
from app.persistence.repositories.contact_repository import ContactRepository
from app.persistence.repositories.message_repository import MessageRepository

router = APIRouter()


@router.get("/{tenant_id}/contacts", response_model=ContactsListResponse)
async def list_contacts(
    tenant_id: Annotated[int, Depends(require_tenant)],
    db: Annotated[AsyncSession, Depends(get_db)],
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
) -> ContactsListResponse:
    """List contacts, most recently active first."""
    repo = ContactRepository(db)
    contacts = await repo.list_by_tenant(tenant_id, skip=skip, limit=limit)
    total = await repo.count_by_tenant(tenant_id)
    return ContactsListResponse(
        contacts=[ContactSnapshot.model_validate(c) for c in contacts],
        total=total,
    )


@router.get("/{tenant_id}/contacts/{contact_id}/messages", response_model=MessagesListResponse)
async def list_contact_messages(
    contact_id: int,
    tenant_id: Annotated[int, Depends(require_tenant)],
    db: Annotated[AsyncSession, Depends(get_db)],
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
) -> MessagesListResponse:
    """Get a contact's messages in chronological order."""
    contact = await ContactRepository(db).get_by_id(tenant_id, contact_id)
    if contact is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Contact not found",
        )
    messages = await MessageRepository(db).list_by_contact(tenant_id, contact_id, skip=skip, limit=limit)
    return MessagesListResponse(
        contact=ContactSnapshot.model_validate(contact),
        messages=[MessageSnapshot.model_validate(m) for m in messages],
    )
