"""Domain events published on a tenant's event bus."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict


class ContactSnapshot(BaseModel):
    """Serializable view of a Contact."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    canonical_address: str | None = None
    canonical_protocol_id: str | None = None
    display_name: str | None = None
    avatar_ref: str | None = None
    reply_count: int = 0
    status: str
    created_at: datetime
    updated_at: datetime


class MessageSnapshot(BaseModel):
    """Serializable view of a Message."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    contact_id: int
    direction: str
    body: str
    delivery_status: str
    timestamp: datetime
    external_id: str | None = None


class NewMessageEvent(BaseModel):
    """A message was stored for a contact."""

    type: Literal["new_message"] = "new_message"
    tenant_id: int
    contact: ContactSnapshot
    message: MessageSnapshot


class ContactsChangedEvent(BaseModel):
    """One or more contacts were created, merged or updated."""

    type: Literal["contacts_changed"] = "contacts_changed"
    tenant_id: int
    contact_ids: list[int] = []
    removed_contact_ids: list[int] = []
