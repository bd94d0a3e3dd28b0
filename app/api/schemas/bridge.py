"""Bridge API schemas."""

from pydantic import BaseModel, Field

from app.domain.models.events import ContactSnapshot, MessageSnapshot


class BotStateResponse(BaseModel):
    """Auto-reply switches after a pause/resume."""

    auto_reply_enabled: bool
    bot_paused: bool


class SendMessageRequest(BaseModel):
    """Manual message request; ``contact_id`` pins the message to a known contact."""

    address: str | None = None
    body: str = Field(min_length=1)
    contact_id: int | None = None


class SendMessageResponse(BaseModel):
    """Stored outbound message and its contact."""

    contact: ContactSnapshot
    message: MessageSnapshot


class ContactsListResponse(BaseModel):
    """Contacts list response."""

    contacts: list[ContactSnapshot]
    total: int


class MessagesListResponse(BaseModel):
    """Messages of one contact."""

    contact: ContactSnapshot
    messages: list[MessageSnapshot]


class RefreshContactsResponse(BaseModel):
    """Outcome of re-resolving contact names."""

    updated: int
    errors: int
    total: int


class MergeDuplicatesResponse(BaseModel):
    """Outcome of a duplicate-contact sweep."""

    merged_groups: int
    contact_ids: list[int]
