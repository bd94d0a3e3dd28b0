"""Keyword auto-replies with human-like timing.

One queue and one worker per tenant, so replies are strictly serialized.
Each job: keyword lookup -> view delay -> read receipt -> reply delay ->
presence -> send -> presence paused -> store and notify. A failing job is
logged and the worker moves on.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.events import EventBus, EventDispatchError
from app.domain.errors import NotConnectedError, TranscodeError, UnresolvableIdentityError
from app.domain.models.events import (
    ContactSnapshot,
    ContactsChangedEvent,
    MessageSnapshot,
    NewMessageEvent,
)
from app.domain.services.activity_service import ActivityService
from app.domain.services.bot_config_service import BotConfigService, BotSettings
from app.domain.services.duplicate_detector import DuplicateDetector, ExternalIdDetector, MessageCandidate
from app.domain.services.keyword_rules import KeywordRule, find_audio, find_rule, resolve_audio_path
from app.domain.services.reconciliation_service import ReconciliationService
from app.infrastructure.audio import (
    VOICE_NOTE_MIMETYPE,
    AudioTranscoder,
    FfmpegTranscoder,
    guess_audio_mimetype,
)
from app.infrastructure.protocol.base import MessageKey, Presence, ProtocolSession, SendResult
from app.infrastructure.sent_message_pins import SentMessagePins
from app.persistence.models.activity_log import ActivityAction
from app.persistence.models.message import DeliveryStatus, MessageDirection
from app.persistence.repositories.contact_repository import ContactRepository
from app.persistence.repositories.message_repository import MessageRepository
from app.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class ReplyJob:
    """An inbound message that may deserve an automated reply."""

    contact_id: int
    remote_id: str
    message_key: MessageKey
    body: str
    inbound_message_id: int | None = None
    queued_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class PreparedReply:
    """What will actually be sent for a matched rule."""

    rule: KeywordRule
    text: str | None = None
    audio_path: Path | None = None
    audio_name: str | None = None
    fell_back_to_text: bool = False

    @property
    def is_audio(self) -> bool:
        return self.audio_path is not None


class ReplyDispatcher:
    """Single-concurrency reply queue for one tenant."""

    def __init__(
        self,
        tenant_id: int,
        connection,
        bus: EventBus,
        db_session_factory: async_sessionmaker[AsyncSession],
        pins: SentMessagePins | None = None,
        transcoder: AudioTranscoder | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
        audio_data_dir: str | None = None,
        merge_lock: asyncio.Lock | None = None,
        duplicate_detector: DuplicateDetector | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.connection = connection
        self.bus = bus
        self.db_session_factory = db_session_factory
        self.pins = pins
        self.transcoder = transcoder or FfmpegTranscoder()
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.audio_data_dir = audio_data_dir or settings.audio_data_dir
        self.merge_lock = merge_lock or asyncio.Lock()
        self.duplicate_detector = duplicate_detector or ExternalIdDetector()
        self.activity = ActivityService(db_session_factory)

        self._queue: asyncio.Queue[ReplyJob] = asyncio.Queue()
        self._worker: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        """Start the worker task (idempotent)."""
        if not self.running:
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name=f"reply-dispatcher:{self.tenant_id}"
            )

    async def enqueue(self, job: ReplyJob) -> None:
        await self._queue.put(job)
        logger.debug(f"Queued reply job for contact {job.contact_id} ({self.pending} pending)")

    async def drain(self, timeout: float) -> bool:
        """Wait for queued jobs to finish within ``timeout``, then stop.

        Returns:
            True if the queue emptied in time
        """
        drained = True
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            drained = False
            logger.warning(f"Reply queue for tenant {self.tenant_id} not drained, {self.pending} jobs dropped")
        await self.cancel()
        return drained

    async def cancel(self) -> None:
        """Stop the worker immediately."""
        worker, self._worker = self._worker, None
        if worker is None or worker.done():
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.process(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Reply job failed for contact {job.contact_id} on tenant {self.tenant_id}: {e}")
                await self.activity.record(
                    self.tenant_id,
                    ActivityAction.ERROR,
                    {"stage": "reply", "contact_id": job.contact_id, "error": str(e)},
                )
            finally:
                self._queue.task_done()

    # ------------------------------------------------------------------
    # Job processing

    def _require_session(self) -> ProtocolSession:
        session = self.connection.connected_session()
        if session is None:
            raise NotConnectedError(f"Tenant {self.tenant_id} is not connected")
        return session

    def presence_duration(self, reply: PreparedReply) -> float:
        """Seconds to show typing/recording before sending."""
        if reply.is_audio:
            return 2 + self.rng.uniform(0, 2)
        length = len(reply.text or "")
        return max(1.0, min(3.0, 1 + length / 100 + self.rng.uniform(0, 2)))

    def _delay(self, low: float, high: float) -> float:
        low, high = min(low, high), max(low, high)
        return self.rng.uniform(low, high)

    async def prepare(self, rule: KeywordRule, bot_settings: BotSettings) -> PreparedReply | None:
        """Pick text or audio for a rule; None when nothing can be sent."""
        if not rule.is_audio:
            if not rule.message:
                return None
            return PreparedReply(rule=rule, text=rule.message)

        audio = find_audio(bot_settings.saved_audios, rule.audio_id)
        path = resolve_audio_path(audio, self.audio_data_dir) if audio else None
        if path is not None and path.is_file():
            return PreparedReply(rule=rule, audio_path=path, audio_name=audio.name)

        logger.warning(f"Audio asset {rule.audio_id} missing for keyword {rule.keyword!r}")
        if rule.message:
            return PreparedReply(rule=rule, text=rule.message, fell_back_to_text=True)
        return None

    async def process(self, job: ReplyJob) -> MessageSnapshot | None:
        """Run one reply job.

        Returns:
            The stored outbound message, or None when no reply was due

        Raises:
            NotConnectedError: If there is no open session
            Exception: Send or persistence failures
        """
        async with self.db_session_factory() as db:
            bot_settings = await BotConfigService(db).get_settings(self.tenant_id)
            if not bot_settings.replies_active:
                return None
            try:
                async with self.merge_lock:
                    contact = await ReconciliationService(db, self.merge_lock).locate_locked(
                        self.tenant_id, job.contact_id, job.remote_id
                    )
            except UnresolvableIdentityError:
                logger.warning(f"Contact {job.contact_id} is gone and {job.remote_id} cannot be resolved")
                return None
            reply_count = contact.reply_count or 0

        if contact.id != job.contact_id:
            job = replace(job, contact_id=contact.id)
        limit = bot_settings.max_replies_per_contact
        if limit and reply_count >= limit:
            logger.info(f"Contact {job.contact_id} reached {limit} replies, not replying")
            return None

        rule = find_rule(bot_settings.rules, job.body)
        if rule is None:
            return None
        reply = await self.prepare(rule, bot_settings)
        if reply is None:
            logger.warning(f"Keyword {rule.keyword!r} has nothing to send")
            return None
        if reply.fell_back_to_text:
            await self.activity.record(
                self.tenant_id,
                ActivityAction.KEYWORD_REPLY_AUDIO_FALLBACK_TEXT,
                {"contact_id": job.contact_id, "keyword": rule.keyword, "audio_id": rule.audio_id},
            )

        self._require_session()

        await self.sleep(self._delay(bot_settings.view_delay_min_seconds, bot_settings.view_delay_max_seconds))
        await self._require_session().mark_read([job.message_key])

        await self.sleep(self._delay(bot_settings.min_delay_seconds, bot_settings.max_delay_seconds))

        session = self._require_session()
        if bot_settings.typing_indicator_enabled:
            presence = Presence.RECORDING if reply.is_audio else Presence.COMPOSING
            await session.send_presence(presence, job.remote_id)
            await self.sleep(self.presence_duration(reply))

        result, body = await self._send(session, job.remote_id, reply)

        if bot_settings.typing_indicator_enabled:
            try:
                await session.send_presence(Presence.PAUSED, job.remote_id)
            except Exception as e:
                logger.warning(f"Failed to clear presence for {job.remote_id}: {e}")

        if self.pins is not None:
            await self.pins.pin(result.message_id, job.contact_id)

        return await self._record(job, rule, reply, result, body, bot_settings)

    async def _send(self, session: ProtocolSession, to: str, reply: PreparedReply) -> tuple[SendResult, str]:
        """Send the reply; returns the send result and the body to store."""
        if not reply.is_audio:
            return await session.send_text(to, reply.text), reply.text

        label = f"[Audio] {reply.audio_name}" if reply.audio_name else "[Audio]"
        try:
            audio = await self.transcoder.to_voice_note(reply.audio_path)
            return await session.send_audio(to, audio, VOICE_NOTE_MIMETYPE, voice_note=True), label
        except TranscodeError as e:
            logger.warning(f"Transcoding {reply.audio_path} failed: {e}")
            if reply.rule.message:
                return await session.send_text(to, reply.rule.message), reply.rule.message
            raw = await asyncio.to_thread(reply.audio_path.read_bytes)
            mimetype = guess_audio_mimetype(reply.audio_path)
            return await session.send_audio(to, raw, mimetype, voice_note=False), label

    async def _record(
        self,
        job: ReplyJob,
        rule: KeywordRule,
        reply: PreparedReply,
        result: SendResult,
        body: str,
        bot_settings: BotSettings,
    ) -> MessageSnapshot:
        timestamp = result.timestamp or datetime.utcnow()
        async with self.merge_lock:
            async with self.db_session_factory() as db:
                contact_repo = ContactRepository(db)
                contact = await ReconciliationService(db, self.merge_lock).locate_locked(
                    self.tenant_id, job.contact_id, job.remote_id
                )
                candidate = MessageCandidate(
                    tenant_id=self.tenant_id,
                    contact_id=contact.id,
                    direction=MessageDirection.OUTBOUND.value,
                    body=body,
                    timestamp=timestamp,
                    external_id=result.message_id,
                )
                # The echo may have been ingested while we were sending
                message = await self.duplicate_detector.find_duplicate(db, candidate)
                if message is None:
                    message = await MessageRepository(db).add(
                        self.tenant_id,
                        contact_id=contact.id,
                        direction=candidate.direction,
                        body=body,
                        delivery_status=DeliveryStatus.SENT.value,
                        timestamp=timestamp,
                        external_id=result.message_id,
                    )
                    ContactRepository.advance_updated_at(contact, timestamp)
                    await db.commit()
                    await db.refresh(message)
                else:
                    logger.debug(f"Reply {result.message_id} already stored as message {message.id}")
                contact = await contact_repo.record_reply(
                    self.tenant_id, contact.id, bot_settings.max_replies_per_contact
                )
                message_snapshot = MessageSnapshot.model_validate(message)
                contact_snapshot = ContactSnapshot.model_validate(contact) if contact is not None else None

        logger.info(
            f"Sent keyword reply to contact {message_snapshot.contact_id}",
            extra={"contact_id": message_snapshot.contact_id, "keyword": rule.keyword, "reply_type": rule.reply_type},
        )
        await self.activity.record(
            self.tenant_id,
            ActivityAction.KEYWORD_REPLY_SENT,
            {
                "contact_id": message_snapshot.contact_id,
                "keyword": rule.keyword,
                "reply_type": "audio" if reply.is_audio else "text",
                "message_id": message_snapshot.id,
            },
        )
        if contact_snapshot is not None:
            await self._publish(
                NewMessageEvent(tenant_id=self.tenant_id, contact=contact_snapshot, message=message_snapshot)
            )
            await self._publish(
                ContactsChangedEvent(tenant_id=self.tenant_id, contact_ids=[message_snapshot.contact_id])
            )
        return message_snapshot

    async def _publish(self, event) -> None:
        try:
            await self.bus.publish(event)
        except EventDispatchError as e:
            logger.error(f"Subscribers failed for {type(event).__name__} on tenant {self.tenant_id}: {e}")
