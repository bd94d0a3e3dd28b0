"""Duplicate message detection.

The protocol client may deliver the same event more than once, most often
our own outbound message echoing back after it was already stored at send
time. Detectors answer "is this already stored?" for a candidate message.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.persistence.models.message import Message
from app.persistence.repositories.message_repository import MessageRepository
from app.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class MessageCandidate:
    """A message about to be stored."""

    tenant_id: int
    contact_id: int
    direction: str
    body: str
    timestamp: datetime
    external_id: str | None = None


class DuplicateDetector(ABC):
    """Finds an already-stored message equivalent to a candidate."""

    @abstractmethod
    async def find_duplicate(self, session: AsyncSession, candidate: MessageCandidate) -> Message | None:
        pass


class ExternalIdDetector(DuplicateDetector):
    """Exact match on the provider message id."""

    async def find_duplicate(self, session: AsyncSession, candidate: MessageCandidate) -> Message | None:
        if not candidate.external_id:
            return None
        return await MessageRepository(session).get_by_external_id(candidate.tenant_id, candidate.external_id)


class TimeWindowDetector(DuplicateDetector):
    """Same contact, body and direction within a time window.

    This is a heuristic, not a guarantee: two genuinely separate identical
    messages inside the window collapse into one.
    """

    def __init__(self, window_seconds: float | None = None) -> None:
        self.window_seconds = window_seconds if window_seconds is not None else settings.dedup_window_seconds

    async def find_duplicate(self, session: AsyncSession, candidate: MessageCandidate) -> Message | None:
        return await MessageRepository(session).find_in_window(
            candidate.tenant_id,
            candidate.contact_id,
            candidate.body,
            candidate.direction,
            candidate.timestamp,
            self.window_seconds,
        )


class ChainedDuplicateDetector(DuplicateDetector):
    """Tries detectors in order and returns the first hit."""

    def __init__(self, detectors: list[DuplicateDetector]) -> None:
        self.detectors = detectors

    async def find_duplicate(self, session: AsyncSession, candidate: MessageCandidate) -> Message | None:
        for detector in self.detectors:
            existing = await detector.find_duplicate(session, candidate)
            if existing is not None:
                logger.debug(
                    f"Duplicate of message {existing.id} found by {type(detector).__name__}",
                    extra={"tenant_id": candidate.tenant_id, "message_id": existing.id},
                )
                return existing
        return None


def default_duplicate_detector() -> DuplicateDetector:
    """Provider message id first, then the time-window heuristic."""
    return ChainedDuplicateDetector([ExternalIdDetector(), TimeWindowDetector()])
