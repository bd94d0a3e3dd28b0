"""Per-tenant connection lifecycle state machine.

Phases: initializing -> connecting -> {qr_ready | connected}, connected ->
disconnected on failure, disconnected -> connecting on retry, qr_ready ->
connecting on QR refresh or expiry. ``disconnected`` without a pending retry
and ``error`` are terminal until an operator command.

Close handling differs per failure class:

    logged_out         clear credentials, no retry
    method_rejected    keep credentials, reset attempts, retry after 3s
    restart_required   reset attempts, retry after 2s
    timed_out          network fault -> network_error, no retry
                       QR outstanding -> treated as QR expiry
    anything else      retry with backoff until max attempts
"""

import asyncio
import logging
from datetime import datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.events import EventBus, EventDispatchError, Subscription
from app.core.timers import TimerGroup
from app.domain.models.connection import (
    ConnectionPhase,
    ConnectionState,
    ConnectionStatusEvent,
    StatusReason,
)
from app.domain.services.activity_service import ActivityService
from app.infrastructure.credential_store import CredentialStore
from app.infrastructure.protocol.base import (
    CloseInfo,
    CloseReason,
    ConnectionUpdate,
    CredentialsUpdate,
    ProtocolSession,
    ProtocolSessionFactory,
)
from app.persistence.models.activity_log import ActivityAction
from app.settings import settings

logger = logging.getLogger(__name__)

NETWORK_FAULT_MARKERS = ("ENOTFOUND", "getaddrinfo", "ECONNREFUSED", "ETIMEDOUT")

RECONNECT_TIMER = "reconnect"
QR_EXPIRY_TIMER = "qr_expiry"


class SessionListener(Protocol):
    """Consumer of a session's inbound events (the ingestion pipeline)."""

    def attach(self, session: ProtocolSession, epoch: int) -> list[Subscription]:
        ...


def is_network_fault(close: CloseInfo | None) -> bool:
    """Check whether a timed-out close was caused by name resolution or connectivity.

    Only ``timed_out`` closes qualify; other reasons carrying the same error
    text go through their normal retry handling.
    """
    if close is None or close.reason != CloseReason.TIMED_OUT or not close.message:
        return False
    return any(marker in close.message for marker in NETWORK_FAULT_MARKERS)


class ConnectionManager:
    """Owns the one protocol session of a tenant and its state machine."""

    def __init__(
        self,
        tenant_id: int,
        session_factory: ProtocolSessionFactory,
        credential_store: CredentialStore,
        bus: EventBus,
        db_session_factory: async_sessionmaker[AsyncSession] | None = None,
        listener: SessionListener | None = None,
        timers: TimerGroup | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.session_factory = session_factory
        self.credential_store = credential_store
        self.bus = bus
        self.listener = listener
        self.timers = timers or TimerGroup(f"connection:{tenant_id}")
        self.activity = ActivityService(db_session_factory)

        self.state = ConnectionState()
        self.session: ProtocolSession | None = None

        self.max_attempts = settings.max_reconnect_attempts
        self.reconnect_delay = settings.reconnect_delay_seconds
        self.reconnect_backoff = settings.reconnect_backoff
        self.reconnect_max_delay = settings.reconnect_max_delay_seconds
        self.restart_delay = settings.restart_retry_delay_seconds
        self.method_rejected_delay = settings.method_rejected_retry_delay_seconds
        self.qr_regenerate_delay = settings.qr_regenerate_delay_seconds
        self.qr_expiry = settings.qr_expiry_seconds
        self.logout_timeout = settings.logout_confirm_timeout_seconds
        self.session_stop_timeout = settings.shutdown_session_timeout_seconds

        self._session_subscriptions: list[Subscription] = []
        self._listener_subscriptions: list[Subscription] = []
        self._logout_confirmed: asyncio.Event | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Queries

    @property
    def active_epoch(self) -> int | None:
        """Epoch of the open session, or None when not connected."""
        if self.state.phase == ConnectionPhase.CONNECTED and self.state.connection_epoch > 0:
            return self.state.connection_epoch
        return None

    def is_current(self, session: ProtocolSession, epoch: int) -> bool:
        """Check that events from ``session`` opened at ``epoch`` are trusted."""
        return session is self.session and self.active_epoch == epoch

    def connected_session(self) -> ProtocolSession | None:
        """The session when connected, else None."""
        if self.active_epoch is None:
            return None
        return self.session

    def status(self) -> ConnectionStatusEvent:
        return ConnectionStatusEvent.from_state(self.tenant_id, self.state)

    def reconnect_delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        if self.reconnect_backoff == "exponential":
            return min(self.reconnect_delay * (2 ** max(attempt - 1, 0)), self.reconnect_max_delay)
        return self.reconnect_delay

    # ------------------------------------------------------------------
    # Commands

    async def start(self) -> ConnectionStatusEvent:
        """Start the tenant's session.

        Raises:
            Exception: Whatever credential loading or session creation raised;
                the state is ``error/init_failed`` afterwards
        """
        if self.session is not None:
            return self.status()
        self._closed = False
        self.state.reconnect_attempts = 0
        await self._transition(ConnectionPhase.INITIALIZING, StatusReason.STARTING)
        await self._open_session(StatusReason.STARTING)
        return self.status()

    async def reconnect(self) -> ConnectionStatusEvent:
        """Drop the current session and connect again with fresh attempts."""
        self._closed = False
        self.timers.cancel_all()
        await self._release_session()
        self.state.reconnect_attempts = 0
        await self._open_session(StatusReason.MANUAL_RECONNECT)
        return self.status()

    async def disconnect(self) -> ConnectionStatusEvent:
        """Graceful logout: invalidate credentials on the network and locally."""
        self._closed = True
        self.timers.cancel_all()
        session = self.session
        if session is not None:
            self._logout_confirmed = asyncio.Event()
            try:
                await session.logout()
                await asyncio.wait_for(self._logout_confirmed.wait(), timeout=self.logout_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Logout not confirmed within {self.logout_timeout}s for tenant {self.tenant_id}")
            except Exception as e:
                logger.error(f"Logout failed for tenant {self.tenant_id}: {e}", exc_info=True)
            finally:
                self._logout_confirmed = None

        await self._release_session()
        await self.credential_store.clear(self.tenant_id)
        self.state.reconnect_attempts = 0
        await self._transition(ConnectionPhase.DISCONNECTED, StatusReason.MANUAL_LOGOUT)
        await self.activity.record(self.tenant_id, ActivityAction.DEVICE_DISCONNECTED, {"reason": "manual_logout"})
        return self.status()

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop without logging out; pending timers never fire afterwards."""
        self._closed = True
        self.timers.cancel_all()
        await self._release_session(timeout=timeout)
        if self.state.phase not in (ConnectionPhase.DISCONNECTED, ConnectionPhase.ERROR):
            await self._transition(ConnectionPhase.DISCONNECTED, StatusReason.SHUTDOWN)

    # ------------------------------------------------------------------
    # Session management

    async def _open_session(self, reason: StatusReason) -> None:
        """Create and start a fresh session, superseding any previous one."""
        if self._closed:
            return
        await self._release_session()
        await self._transition(ConnectionPhase.CONNECTING, reason, will_retry=False)

        try:
            credentials = await self.credential_store.load(self.tenant_id)
            if self._closed:
                logger.info(f"Tenant {self.tenant_id} was stopped while loading credentials, not connecting")
                return
            session = self.session_factory.create_session(self.tenant_id, credentials)
        except Exception as e:
            logger.error(f"Failed to initialize session for tenant {self.tenant_id}: {e}", exc_info=True)
            await self._transition(ConnectionPhase.ERROR, StatusReason.INIT_FAILED)
            raise

        self.session = session
        self._session_subscriptions = [
            session.events.subscribe(ConnectionUpdate, lambda update: self._on_connection_update(session, update)),
            session.events.subscribe(CredentialsUpdate, lambda update: self._on_credentials_update(session, update)),
        ]

        try:
            await session.start()
        except Exception as e:
            logger.error(f"Failed to start session for tenant {self.tenant_id}: {e}", exc_info=True)
            await self._release_session()
            await self._transition(ConnectionPhase.ERROR, StatusReason.INIT_FAILED)
            raise

    async def _release_session(self, timeout: float | None = None) -> None:
        """Detach from and stop the current session."""
        self._detach_listener()
        for subscription in self._session_subscriptions:
            subscription.cancel()
        self._session_subscriptions = []

        session, self.session = self.session, None
        if session is None:
            return
        try:
            await asyncio.wait_for(session.stop(), timeout=timeout or self.session_stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Session stop timed out for tenant {self.tenant_id}")
        except Exception as e:
            logger.warning(f"Session stop failed for tenant {self.tenant_id}: {e}")

    def _detach_listener(self) -> None:
        for subscription in self._listener_subscriptions:
            subscription.cancel()
        self._listener_subscriptions = []

    # ------------------------------------------------------------------
    # Protocol events

    async def _on_credentials_update(self, session: ProtocolSession, update: CredentialsUpdate) -> None:
        if session is not self.session:
            return
        await self.credential_store.save(self.tenant_id, update.entries)

    async def _on_connection_update(self, session: ProtocolSession, update: ConnectionUpdate) -> None:
        if session is not self.session:
            logger.debug(f"Ignoring connection update from superseded session for tenant {self.tenant_id}")
            return

        if update.qr:
            await self._on_qr(session, update.qr)
        if update.connection == "open":
            await self._on_open(session)
        elif update.connection == "close":
            await self._on_close(update.close or CloseInfo(reason=CloseReason.UNKNOWN))

    async def _on_qr(self, session: ProtocolSession, qr: str) -> None:
        if self.state.phase == ConnectionPhase.CONNECTED:
            logger.warning(f"Ignoring QR code for tenant {self.tenant_id} while connected")
            return
        self._set_state(ConnectionPhase.QR_READY, StatusReason.QR_ISSUED, qr_payload=qr)
        await self._publish_status()

        async def _expired() -> None:
            if session is self.session and self.state.phase == ConnectionPhase.QR_READY:
                logger.info(f"QR code expired for tenant {self.tenant_id}")
                await self._handle_qr_expired()

        self.timers.schedule(QR_EXPIRY_TIMER, self.qr_expiry, _expired)

    async def _on_open(self, session: ProtocolSession) -> None:
        self.timers.cancel(QR_EXPIRY_TIMER)
        self.timers.cancel(RECONNECT_TIMER)

        # Open sequence; nothing between the epoch bump and the listener swap awaits
        self.state.connection_epoch += 1
        self.state.reconnect_attempts = 0
        self._set_state(ConnectionPhase.CONNECTED, StatusReason.OPENED)
        previous = self._listener_subscriptions
        if self.listener is not None:
            self._listener_subscriptions = self.listener.attach(session, self.state.connection_epoch)
        else:
            self._listener_subscriptions = []
        for subscription in previous:
            subscription.cancel()

        logger.info(
            f"Connected tenant {self.tenant_id} at epoch {self.state.connection_epoch}",
            extra={"connection_epoch": self.state.connection_epoch},
        )
        await self._publish_status()

    async def _on_close(self, close: CloseInfo) -> None:
        qr_outstanding = self.state.phase == ConnectionPhase.QR_READY
        self.timers.cancel(QR_EXPIRY_TIMER)
        self._detach_listener()

        logger.info(
            f"Connection closed for tenant {self.tenant_id}: {close.reason.value}",
            extra={"close_reason": close.reason.value, "status_code": close.status_code, "close_message": close.message},
        )

        if close.reason == CloseReason.LOGGED_OUT:
            if self._logout_confirmed is not None:
                # disconnect() finishes the transition
                self._logout_confirmed.set()
                return
            self.timers.cancel_all()
            await self._release_session()
            await self.credential_store.clear(self.tenant_id)
            self.state.reconnect_attempts = 0
            await self._transition(ConnectionPhase.DISCONNECTED, StatusReason.LOGGED_OUT)
            await self.activity.record(self.tenant_id, ActivityAction.DEVICE_DISCONNECTED, {"reason": "logged_out"})
            return

        if close.reason == CloseReason.METHOD_REJECTED:
            self.state.reconnect_attempts = 0
            await self._schedule_retry(StatusReason.METHOD_REJECTED, self.method_rejected_delay)
            return

        if close.reason == CloseReason.RESTART_REQUIRED:
            self.state.reconnect_attempts = 0
            await self._schedule_retry(StatusReason.RESTART_REQUIRED, self.restart_delay)
            return

        if is_network_fault(close):
            self.timers.cancel_all()
            await self._release_session()
            await self._transition(ConnectionPhase.DISCONNECTED, StatusReason.NETWORK_ERROR)
            return

        if close.reason == CloseReason.TIMED_OUT and qr_outstanding:
            await self._handle_qr_expired()
            return

        if self.state.reconnect_attempts < self.max_attempts:
            self.state.reconnect_attempts += 1
            delay = self.reconnect_delay_for(self.state.reconnect_attempts)
            await self._schedule_retry(StatusReason.CONNECTION_LOST, delay)
            return

        self.timers.cancel_all()
        await self._release_session()
        await self._transition(ConnectionPhase.DISCONNECTED, StatusReason.MAX_ATTEMPTS)

    async def _handle_qr_expired(self) -> None:
        """Discard the QR and request a fresh one without counting a failure."""
        await self._release_session()
        self.state.reconnect_attempts = 0
        await self._transition(ConnectionPhase.CONNECTING, StatusReason.QR_EXPIRED)
        self.timers.schedule(
            RECONNECT_TIMER, self.qr_regenerate_delay, lambda: self._retry(StatusReason.QR_EXPIRED)
        )

    async def _schedule_retry(self, reason: StatusReason, delay: float) -> None:
        await self._release_session()
        await self._transition(ConnectionPhase.DISCONNECTED, reason, will_retry=True)
        logger.info(
            f"Reconnecting tenant {self.tenant_id} in {delay}s ({reason.value}, attempt {self.state.reconnect_attempts})"
        )
        self.timers.schedule(RECONNECT_TIMER, delay, lambda: self._retry(StatusReason.RECONNECTING))

    async def _retry(self, reason: StatusReason) -> None:
        if self._closed:
            return
        await self._open_session(reason)

    # ------------------------------------------------------------------
    # State

    def _set_state(
        self,
        phase: ConnectionPhase,
        reason: StatusReason | None,
        will_retry: bool = False,
        qr_payload: str | None = None,
    ) -> None:
        self.state.phase = phase
        self.state.reason = reason
        self.state.will_retry = will_retry
        self.state.qr_payload = qr_payload if phase == ConnectionPhase.QR_READY else None
        self.state.updated_at = datetime.utcnow()

    async def _transition(
        self,
        phase: ConnectionPhase,
        reason: StatusReason | None,
        will_retry: bool = False,
        qr_payload: str | None = None,
    ) -> None:
        self._set_state(phase, reason, will_retry=will_retry, qr_payload=qr_payload)
        await self._publish_status()

    async def _publish_status(self) -> None:
        event = self.status()
        try:
            await self.bus.publish(event)
        except EventDispatchError as e:
            logger.error(f"Status subscribers failed for tenant {self.tenant_id}: {e}")
        await self.activity.record(
            self.tenant_id,
            f"status_{event.phase.value}",
            {
                "reason": event.reason.value if event.reason else None,
                "connection_epoch": event.connection_epoch,
                "reconnect_attempts": event.reconnect_attempts,
                "will_retry": event.will_retry,
            },
        )
