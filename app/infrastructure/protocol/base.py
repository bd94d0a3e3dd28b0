"""Protocol client contract.

The messaging network's wire protocol is provided by an external client
library. The bridge consumes it only through ``ProtocolSession`` (commands)
and the events a session publishes on its ``events`` bus.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from app.core.events import EventBus


class CloseReason(str, Enum):
    """Structured reason attached to a connection close."""

    LOGGED_OUT = "logged_out"  # Credentials invalidated or explicit logout
    METHOD_REJECTED = "method_rejected"  # Handshake rejected (status 405)
    RESTART_REQUIRED = "restart_required"
    TIMED_OUT = "timed_out"
    CONNECTION_LOST = "connection_lost"
    CONNECTION_CLOSED = "connection_closed"
    CONNECTION_REPLACED = "connection_replaced"
    BAD_SESSION = "bad_session"
    UNKNOWN = "unknown"


@dataclass
class CloseInfo:
    """Why a connection closed."""

    reason: CloseReason
    status_code: int | None = None
    message: str = ""


@dataclass
class ConnectionUpdate:
    """Connection state change reported by the protocol client.

    ``connection`` is ``"connecting"``, ``"open"`` or ``"close"``; a QR-only
    update carries ``qr`` and no ``connection``.
    """

    connection: str | None = None
    qr: str | None = None
    close: CloseInfo | None = None


@dataclass
class CredentialsUpdate:
    """Auth material changed; ``None`` values mean the entry was removed."""

    entries: dict[str, Any]


class MessageKind(str, Enum):
    """Payload type of a raw message."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"
    PROTOCOL = "protocol"  # Revokes, receipts and other control messages
    REACTION = "reaction"
    EPHEMERAL = "ephemeral"  # Wrapper around ``inner``
    VIEW_ONCE = "view_once"  # Wrapper around ``inner``
    DOCUMENT_WITH_CAPTION = "document_with_caption"  # Wrapper around ``inner``
    UNKNOWN = "unknown"


WRAPPER_KINDS = (MessageKind.EPHEMERAL, MessageKind.VIEW_ONCE, MessageKind.DOCUMENT_WITH_CAPTION)


@dataclass
class MessageContent:
    """Decoded message payload."""

    kind: MessageKind
    text: str | None = None
    caption: str | None = None
    inner: "MessageContent | None" = None


@dataclass
class MessageKey:
    """Identifies a message within a conversation."""

    remote_id: str
    from_me: bool
    id: str
    participant: str | None = None


@dataclass
class RawMessage:
    """One message event as delivered by the protocol client."""

    key: MessageKey
    content: MessageContent | None
    timestamp: datetime | None = None
    push_name: str | None = None


class BatchKind(str, Enum):
    """Whether a batch is real-time traffic or synced backlog."""

    LIVE = "live"
    HISTORICAL = "historical"


@dataclass
class MessageBatch:
    """A batch of message events."""

    kind: BatchKind
    messages: list[RawMessage] = field(default_factory=list)


@dataclass
class MessageStatusUpdate:
    """Delivery receipt for a previously sent message."""

    key: MessageKey
    status: str  # sent, delivered, read


@dataclass
class ContactInfo:
    """Contact metadata known to the protocol client."""

    id: str
    name: str | None = None  # Saved name in the address book
    notify: str | None = None  # Name the contact set for themselves
    verified_name: str | None = None

    @property
    def best_name(self) -> str | None:
        return self.notify or self.name or self.verified_name or None


@dataclass
class ContactsSync:
    """Contact metadata pushed by the network."""

    contacts: list[ContactInfo] = field(default_factory=list)


@dataclass
class SendResult:
    """Result of a send operation."""

    message_id: str
    remote_id: str
    timestamp: datetime | None = None
    raw_response: dict | None = None


class Presence(str, Enum):
    """Chat presence signals."""

    AVAILABLE = "available"
    COMPOSING = "composing"
    RECORDING = "recording"
    PAUSED = "paused"


class ProtocolSession(ABC):
    """One live session with the messaging network.

    Implementations publish ``ConnectionUpdate``, ``CredentialsUpdate``,
    ``MessageBatch``, ``MessageStatusUpdate`` and ``ContactsSync`` on
    ``self.events``.
    """

    def __init__(self, tenant_id: int, credentials: dict[str, Any] | None = None) -> None:
        self.tenant_id = tenant_id
        self.credentials = credentials or {}
        self.events = EventBus(f"protocol:{tenant_id}")

    @abstractmethod
    async def start(self) -> None:
        """Open the socket and begin authentication."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Close the socket without logging out."""
        pass

    @abstractmethod
    async def logout(self) -> None:
        """Invalidate the credentials on the network side.

        The network confirms with a ``ConnectionUpdate`` close of reason
        ``LOGGED_OUT``.
        """
        pass

    @abstractmethod
    async def send_text(self, to: str, text: str) -> SendResult:
        """Send a text message.

        Args:
            to: Recipient protocol id
            text: Message body

        Returns:
            SendResult with the provider message id
        """
        pass

    @abstractmethod
    async def send_audio(self, to: str, audio: bytes, mimetype: str, voice_note: bool = True) -> SendResult:
        """Send an audio message.

        Args:
            to: Recipient protocol id
            audio: Encoded audio
            mimetype: MIME type of ``audio``
            voice_note: Deliver as a push-to-talk voice note

        Returns:
            SendResult with the provider message id
        """
        pass

    @abstractmethod
    async def mark_read(self, keys: list[MessageKey]) -> None:
        """Send read receipts."""
        pass

    @abstractmethod
    async def send_presence(self, presence: Presence, to: str | None = None) -> None:
        """Update presence, globally or for one chat."""
        pass

    @abstractmethod
    async def profile_picture_url(self, remote_id: str) -> str | None:
        """Look up a profile picture URL (None when hidden or absent)."""
        pass

    @abstractmethod
    async def lookup_contact(self, remote_id: str) -> ContactInfo | None:
        """Ask the network for a contact's metadata."""
        pass

    @abstractmethod
    def cached_contact(self, remote_id: str) -> ContactInfo | None:
        """Return contact metadata from the client's local cache."""
        pass


class ProtocolSessionFactory(ABC):
    """Creates protocol sessions; each reconnect gets a fresh session."""

    @abstractmethod
    def create_session(self, tenant_id: int, credentials: dict[str, Any]) -> ProtocolSession:
        """Create a session for a tenant from its stored credentials.

        Args:
            tenant_id: Tenant ID
            credentials: Previously persisted auth material (empty when new)

        Returns:
            A session that has not been started
        """
        pass
