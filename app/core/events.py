"""Typed in-process event bus.

Each tenant owns one bus for domain events (status, new message, contacts
changed) and each protocol session owns one for protocol events. Handlers
subscribe per event type; ``publish`` awaits them in subscription order.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

E = TypeVar("E")
Handler = Callable[[Any], Awaitable[None]]


class EventDispatchError(Exception):
    """Raised by ``publish`` when one or more handlers failed."""

    def __init__(self, event: Any, errors: list[BaseException]) -> None:
        self.event = event
        self.errors = errors
        super().__init__(
            f"{len(errors)} handler(s) failed for {type(event).__name__}: {errors[0]!r}"
        )


class Subscription:
    """Handle returned by ``EventBus.subscribe``; cancel to detach."""

    def __init__(self, bus: "EventBus", event_type: type, handler: Handler) -> None:
        self._bus = bus
        self.event_type = event_type
        self.handler = handler
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._bus._remove(self)


class EventBus:
    """Publish/subscribe keyed by event class."""

    def __init__(self, name: str = "events") -> None:
        self.name = name
        self._subscriptions: dict[type, list[Subscription]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Callable[[E], Awaitable[None]]) -> Subscription:
        """Attach a handler for one event type."""
        subscription = Subscription(self, event_type, handler)
        self._subscriptions[event_type].append(subscription)
        return subscription

    def subscriber_count(self, event_type: type) -> int:
        return len(self._subscriptions.get(event_type, []))

    def _remove(self, subscription: Subscription) -> None:
        handlers = self._subscriptions.get(subscription.event_type, [])
        if subscription in handlers:
            handlers.remove(subscription)

    async def publish(self, event: Any) -> None:
        """Deliver an event to every handler of its type.

        All handlers run even when one fails; failures are logged and then
        raised together as ``EventDispatchError``.

        Raises:
            EventDispatchError: If any handler raised
        """
        errors: list[BaseException] = []
        # Snapshot so handlers may (un)subscribe while we iterate
        for subscription in list(self._subscriptions.get(type(event), [])):
            if not subscription.active:
                continue
            try:
                await subscription.handler(event)
            except Exception as e:
                logger.error(
                    f"Event handler failed on bus {self.name} for {type(event).__name__}: {e}",
                    exc_info=True,
                )
                errors.append(e)
        if errors:
            raise EventDispatchError(event, errors)

    async def stream(self, *event_types: type, max_queue: int = 1000) -> AsyncIterator[Any]:
        """Iterate over events of the given types as they are published.

        Events are dropped for a slow consumer once ``max_queue`` is reached.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)

        async def _enqueue(event: Any) -> None:
            if queue.full():
                logger.warning(f"Event stream on bus {self.name} is full, dropping {type(event).__name__}")
                return
            queue.put_nowait(event)

        subscriptions = [self.subscribe(event_type, _enqueue) for event_type in event_types]
        try:
            while True:
                yield await queue.get()
        finally:
            for subscription in subscriptions:
                subscription.cancel()
