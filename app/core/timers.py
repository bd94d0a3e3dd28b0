"""Cancellable timers grouped per owner.

Reconnect backoff, QR refresh and similar delayed actions are scheduled on a
``TimerGroup`` so that tearing an owner down cancels everything still
pending for it.
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class Timer:
    """A single scheduled callback."""

    def __init__(self, name: str, delay: float, task: asyncio.Task) -> None:
        self.name = name
        self.delay = delay
        self._task = task

    @property
    def pending(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        self._task.cancel()


class TimerGroup:
    """Set of named timers that can be cancelled together."""

    def __init__(self, owner: str = "") -> None:
        self.owner = owner
        self._timers: dict[str, Timer] = {}
        # Callbacks past their delay and still executing
        self._running: set[asyncio.Task] = set()

    def schedule(self, name: str, delay: float, callback: Callable[[], Awaitable[None]]) -> Timer:
        """Run ``callback`` after ``delay`` seconds.

        Scheduling a name that is already pending replaces the earlier timer.
        Errors raised by the callback are logged.
        """
        self.cancel(name)

        async def _run() -> None:
            await asyncio.sleep(max(delay, 0))
            # Drop our own entry before running so the callback may reschedule
            if self._timers.get(name) is timer:
                del self._timers[name]
            current = asyncio.current_task()
            self._running.add(current)
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Timer {self.owner}/{name} failed: {e}", exc_info=True)
            finally:
                self._running.discard(current)

        task = asyncio.get_running_loop().create_task(_run(), name=f"timer:{self.owner}:{name}")
        timer = Timer(name, delay, task)
        self._timers[name] = timer
        return timer

    def cancel(self, name: str) -> bool:
        """Cancel one timer by name. Returns True if it was pending."""
        timer = self._timers.pop(name, None)
        if timer is None or not timer.pending:
            return False
        timer.cancel()
        return True

    def cancel_all(self) -> int:
        """Cancel every pending timer and every callback still running.

        A callback that calls ``cancel_all`` itself is left to finish. Returns
        how many timers were cancelled.
        """
        cancelled = 0
        for name in list(self._timers):
            if self.cancel(name):
                cancelled += 1
        current = asyncio.current_task()
        for task in list(self._running):
            if task is not current and not task.done():
                task.cancel()
                cancelled += 1
        return cancelled

    @property
    def running_count(self) -> int:
        return sum(1 for task in self._running if not task.done())

    def is_pending(self, name: str) -> bool:
        timer = self._timers.get(name)
        return timer is not None and timer.pending

    @property
    def pending_names(self) -> list[str]:
        return [name for name, timer in self._timers.items() if timer.pending]
