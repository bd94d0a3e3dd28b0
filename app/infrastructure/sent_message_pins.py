"""Short-lived map from sent message id to the contact it was sent to.

When our own outbound message echoes back through the event stream, the pin
tells ingestion which contact the send was addressed to, so the echo lands on
that contact even if the network reports it under a different identifier.
"""

import logging
import time

from app.infrastructure.redis import RedisClient, redis_client
from app.settings import settings

logger = logging.getLogger(__name__)


class SentMessagePins:
    """Pins kept in Redis when enabled, otherwise in process memory."""

    def __init__(
        self,
        tenant_id: int,
        ttl_seconds: int | None = None,
        redis: RedisClient | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.sent_pin_ttl_seconds
        self._redis = redis or redis_client
        self._local: dict[str, tuple[int, float]] = {}

    def _key(self, message_id: str) -> str:
        return f"sent_pin:{self.tenant_id}:{message_id}"

    def _purge_expired(self) -> None:
        now = time.monotonic()
        for message_id in [m for m, (_, expires) in self._local.items() if expires <= now]:
            del self._local[message_id]

    async def pin(self, message_id: str, contact_id: int) -> None:
        """Remember which contact a sent message belongs to."""
        if not message_id:
            return
        if self._redis.is_enabled:
            try:
                await self._redis.set(self._key(message_id), str(contact_id), ttl=self.ttl_seconds)
                return
            except Exception as e:
                logger.warning(f"Redis pin write failed, keeping pin in memory: {e}")
        self._purge_expired()
        self._local[message_id] = (contact_id, time.monotonic() + self.ttl_seconds)

    async def lookup(self, message_id: str) -> int | None:
        """Return the pinned contact id, or None when unknown or expired."""
        if not message_id:
            return None
        if self._redis.is_enabled:
            try:
                value = await self._redis.get(self._key(message_id))
                if value is not None:
                    return int(value)
            except Exception as e:
                logger.warning(f"Redis pin read failed, falling back to memory: {e}")
        self._purge_expired()
        entry = self._local.get(message_id)
        return entry[0] if entry else None

    async def forget(self, message_id: str) -> None:
        self._local.pop(message_id, None)
        if self._redis.is_enabled:
            await self._redis.delete(self._key(message_id))
