"""Messaging protocol client contract."""

from app.infrastructure.protocol.base import (
    BatchKind,
    CloseInfo,
    CloseReason,
    ConnectionUpdate,
    ContactInfo,
    ContactsSync,
    CredentialsUpdate,
    MessageBatch,
    MessageContent,
    MessageKey,
    MessageKind,
    MessageStatusUpdate,
    Presence,
    ProtocolSession,
    ProtocolSessionFactory,
    RawMessage,
    SendResult,
)
from app.infrastructure.protocol.factory import load_session_factory
