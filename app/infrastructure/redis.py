"""Redis client wrapper for short-lived shared state."""

import logging

import redis.asyncio as aioredis

from app.settings import settings

logger = logging.getLogger(__name__)


class RedisClient:
    """Redis client wrapper for async operations.

    When Redis is disabled or unreachable every read misses and every write
    reports success, so callers keep an in-process fallback.
    """

    def __init__(self, key_prefix: str = "leadbridge:") -> None:
        """Initialize Redis client."""
        self._client: aioredis.Redis | None = None
        self._enabled: bool = settings.redis_enabled
        self._key_prefix = key_prefix

    @property
    def is_enabled(self) -> bool:
        return self._enabled and self._client is not None

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def connect(self) -> None:
        """Connect to Redis."""
        if not self._enabled:
            logger.info("Redis disabled - skipping connection")
            return
        if self._client is None:
            try:
                self._client = aioredis.from_url(
                    settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                await self._client.ping()
                logger.info("Redis connected successfully")
            except Exception as e:
                logger.warning(f"Redis connection failed: {e}. Continuing without Redis.")
                self._client = None
                self._enabled = False

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get(self, key: str) -> str | None:
        """Get value from Redis.

        Args:
            key: Key without the namespace prefix

        Returns:
            Value or None if not found
        """
        if not self.is_enabled:
            return None
        return await self._client.get(self._key(key))

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        """Set value in Redis.

        Args:
            key: Key without the namespace prefix
            value: Value to set
            ttl: Optional time-to-live in seconds

        Returns:
            True if successful
        """
        if not self.is_enabled:
            return True  # Pretend success when disabled
        if ttl:
            return await self._client.setex(self._key(key), ttl, value)
        return await self._client.set(self._key(key), value)

    async def delete(self, key: str) -> int:
        """Delete key from Redis.

        Returns:
            Number of keys deleted
        """
        if not self.is_enabled:
            return 0
        return await self._client.delete(self._key(key))


# Global Redis client instance
redis_client = RedisClient()
