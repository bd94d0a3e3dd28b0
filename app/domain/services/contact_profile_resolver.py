"""Display name and avatar lookup for contacts.

Names come from an ordered list of named strategies; the first one that
returns a non-empty name wins.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from app.infrastructure.protocol.base import ProtocolSession
from app.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class NameLookup:
    """Inputs available for a name lookup."""

    remote_id: str
    push_name: str | None = None  # Display name embedded in the message


@dataclass
class NameResult:
    """A resolved name and the strategy that produced it."""

    name: str
    strategy: str


class NameStrategy(ABC):
    """One source of contact display names."""

    name: str = ""

    @abstractmethod
    async def lookup(self, protocol: ProtocolSession, request: NameLookup) -> str | None:
        pass


class ContactsCacheStrategy(NameStrategy):
    """Protocol client's local contacts cache."""

    name = "contacts_cache"

    async def lookup(self, protocol: ProtocolSession, request: NameLookup) -> str | None:
        info = protocol.cached_contact(request.remote_id)
        return info.best_name if info else None


class DirectLookupStrategy(NameStrategy):
    """Ask the network for the contact's metadata."""

    name = "direct_lookup"

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout if timeout is not None else settings.profile_lookup_timeout_seconds

    async def lookup(self, protocol: ProtocolSession, request: NameLookup) -> str | None:
        info = await asyncio.wait_for(protocol.lookup_contact(request.remote_id), timeout=self.timeout)
        return info.best_name if info else None


class PushNameStrategy(NameStrategy):
    """Name the sender attached to the message."""

    name = "push_name"

    async def lookup(self, protocol: ProtocolSession, request: NameLookup) -> str | None:
        return request.push_name


class ContactProfileResolver:
    """Resolves display names and avatars through the protocol session."""

    def __init__(
        self,
        strategies: list[NameStrategy] | None = None,
        avatar_timeout: float | None = None,
    ) -> None:
        self.strategies = strategies if strategies is not None else [
            ContactsCacheStrategy(),
            DirectLookupStrategy(),
            PushNameStrategy(),
        ]
        self.avatar_timeout = (
            avatar_timeout if avatar_timeout is not None else settings.profile_lookup_timeout_seconds
        )

    async def resolve_name(self, protocol: ProtocolSession, request: NameLookup) -> NameResult | None:
        """Run strategies in priority order.

        A failing strategy is logged and skipped.

        Returns:
            The first non-empty name, or None
        """
        for strategy in self.strategies:
            try:
                name = await strategy.lookup(protocol, request)
            except Exception as e:
                logger.debug(f"Name strategy {strategy.name} failed for {request.remote_id}: {e}")
                continue
            if name and name.strip():
                return NameResult(name=name.strip(), strategy=strategy.name)
        return None

    async def resolve_avatar(self, protocol: ProtocolSession, remote_id: str) -> str | None:
        """Fetch a profile picture URL; None when hidden, absent or slow."""
        try:
            return await asyncio.wait_for(protocol.profile_picture_url(remote_id), timeout=self.avatar_timeout)
        except Exception as e:
            logger.debug(f"Profile picture lookup failed for {remote_id}: {e}")
            return None
