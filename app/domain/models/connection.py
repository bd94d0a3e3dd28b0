"""Connection lifecycle state and status events."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel


class ConnectionPhase(str, Enum):
    """States of the per-tenant connection state machine."""

    INITIALIZING = "initializing"
    CONNECTING = "connecting"
    QR_READY = "qr_ready"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class StatusReason(str, Enum):
    """Why the connection is in its current phase."""

    STARTING = "starting"
    QR_ISSUED = "qr_issued"
    QR_EXPIRED = "qr_expired"
    OPENED = "opened"
    LOGGED_OUT = "logged_out"
    METHOD_REJECTED = "method_rejected"
    RESTART_REQUIRED = "restart_required"
    NETWORK_ERROR = "network_error"
    CONNECTION_LOST = "connection_lost"
    RECONNECTING = "reconnecting"
    MAX_ATTEMPTS = "max_attempts"
    MANUAL_RECONNECT = "manual_reconnect"
    MANUAL_LOGOUT = "manual_logout"
    SHUTDOWN = "shutdown"
    INIT_FAILED = "init_failed"


@dataclass
class ConnectionState:
    """Per-tenant connection singleton.

    ``connection_epoch`` only increases; 0 means no session has opened yet.
    ``qr_payload`` is set only while ``phase`` is ``qr_ready``.
    """

    phase: ConnectionPhase = ConnectionPhase.INITIALIZING
    reason: StatusReason | None = None
    connection_epoch: int = 0
    qr_payload: str | None = None
    reconnect_attempts: int = 0
    will_retry: bool = False
    updated_at: datetime = field(default_factory=datetime.utcnow)


class ConnectionStatusEvent(BaseModel):
    """Published on every connection transition."""

    type: Literal["connection_status"] = "connection_status"
    tenant_id: int
    phase: ConnectionPhase
    reason: StatusReason | None = None
    timestamp: datetime
    qr_payload: str | None = None
    connection_epoch: int = 0
    reconnect_attempts: int = 0
    will_retry: bool = False

    @classmethod
    def from_state(cls, tenant_id: int, state: ConnectionState) -> "ConnectionStatusEvent":
        return cls(
            tenant_id=tenant_id,
            phase=state.phase,
            reason=state.reason,
            timestamp=state.updated_at,
            qr_payload=state.qr_payload,
            connection_epoch=state.connection_epoch,
            reconnect_attempts=state.reconnect_attempts,
            will_retry=state.will_retry,
        )
