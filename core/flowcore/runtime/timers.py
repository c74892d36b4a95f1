"""
Timer services - Future wake-ups for timeouts, escalation, expiry and retries.

The engine never sleeps on behalf of an instance. It persists each
pending timer in the instance snapshot and asks a TimerService to call
back at ``fire_at``. After a restart, ``WorkflowEngine.recover()`` re-arms
every persisted timer; timers already due fire immediately.

- AsyncioTimerService: production service on the running event loop
- ManualTimerService: deterministic clock for tests and simulations
"""

import asyncio
import heapq
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class TimerService(ABC):
    """Clock plus scheduled callbacks, keyed by caller-chosen unique keys."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time (timezone-aware UTC)."""

    @abstractmethod
    def schedule(self, key: str, fire_at: datetime, callback: TimerCallback) -> None:
        """Call ``callback`` at ``fire_at``. Re-scheduling a key replaces it."""

    @abstractmethod
    def cancel(self, key: str) -> bool:
        """Cancel a pending timer. Returns True if it was pending."""

    @property
    @abstractmethod
    def pending(self) -> int:
        """Number of timers not yet fired."""

    async def shutdown(self) -> None:
        """Cancel everything still pending."""


class AsyncioTimerService(TimerService):
    """Timers on the running event loop via ``loop.call_later``."""

    def __init__(self):
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    def now(self) -> datetime:
        return datetime.now(UTC)

    def schedule(self, key: str, fire_at: datetime, callback: TimerCallback) -> None:
        self.cancel(key)
        loop = asyncio.get_running_loop()
        delay = max(0.0, (fire_at - self.now()).total_seconds())
        self._handles[key] = loop.call_later(delay, self._fire, key, callback)
        logger.debug(f"Timer {key} armed in {delay:.1f}s")

    def _fire(self, key: str, callback: TimerCallback) -> None:
        self._handles.pop(key, None)
        task = asyncio.get_running_loop().create_task(self._run(key, callback))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, key: str, callback: TimerCallback) -> None:
        try:
            await callback()
        except Exception as e:
            logger.error(f"Timer {key} callback failed: {e}")

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    @property
    def pending(self) -> int:
        return len(self._handles)

    async def shutdown(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


class ManualTimerService(TimerService):
    """
    Deterministic timers driven by ``advance``.

    Example:
        timers = ManualTimerService()
        engine = WorkflowEngine(timers=timers)
        ...
        await timers.advance(timedelta(hours=24))  # fires escalation timers
    """

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2025, 1, 1, tzinfo=UTC)
        self._heap: list[tuple[datetime, int, str]] = []
        self._callbacks: dict[str, tuple[datetime, int, TimerCallback]] = {}
        self._counter = 0

    def now(self) -> datetime:
        return self._now

    def schedule(self, key: str, fire_at: datetime, callback: TimerCallback) -> None:
        self._counter += 1
        self._callbacks[key] = (fire_at, self._counter, callback)
        heapq.heappush(self._heap, (fire_at, self._counter, key))

    def cancel(self, key: str) -> bool:
        return self._callbacks.pop(key, None) is not None

    @property
    def pending(self) -> int:
        return len(self._callbacks)

    def next_fire_at(self) -> datetime | None:
        while self._heap:
            fire_at, seq, key = self._heap[0]
            entry = self._callbacks.get(key)
            if entry is not None and entry[1] == seq:
                return fire_at
            heapq.heappop(self._heap)
        return None

    async def advance(self, delta: timedelta | float) -> int:
        """Move the clock forward, firing due timers in order. Returns how many fired."""
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        return await self.advance_to(self._now + delta)

    async def advance_to(self, target: datetime) -> int:
        fired = 0
        while True:
            fire_at = self.next_fire_at()
            if fire_at is None or fire_at > target:
                break
            _, seq, key = heapq.heappop(self._heap)
            _, _, callback = self._callbacks.pop(key)
            self._now = max(self._now, fire_at)
            await callback()
            fired += 1
        self._now = max(self._now, target)
        return fired

    async def shutdown(self) -> None:
        self._callbacks.clear()
        self._heap.clear()
