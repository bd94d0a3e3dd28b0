"""API schemas package."""

from app.api.schemas.bridge import (
    BotStateResponse,
    ContactsListResponse,
    MergeDuplicatesResponse,
    MessagesListResponse,
    RefreshContactsResponse,
    SendMessageRequest,
    SendMessageResponse,
)

__all__ = [
    "BotStateResponse",
    "ContactsListResponse",
    "MergeDuplicatesResponse",
    "MessagesListResponse",
    "RefreshContactsResponse",
    "SendMessageRequest",
    "SendMessageResponse",
]
