"""
Debounced push scheduling.

    IDLE --schedule(d)--> PENDING(deadline) --deadline--> RUNNING --done--> IDLE
                              |  ^
                              +--+ schedule(d) again: cancel, new deadline

Only the last schedule() before a quiet period of ``d`` fires. Runs never
overlap; a schedule() during RUNNING installs a new deadline and the next
run waits for the current one.

The clock is injectable so tests can advance time without sleeping.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)

PushAction = Callable[[], Awaitable[Any]]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    def now(self) -> float: ...

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopClock:
    """The running event loop's monotonic clock."""

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay_s, callback)


class _VirtualTimer:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualClock:
    """Manually advanced clock.

    >>> clock = VirtualClock()
    >>> clock.call_later(3.0, fire)
    >>> clock.advance(3.0)   # fire() runs here
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._timers: list[tuple[float, int, _VirtualTimer, Callable[[], None]]] = []
        self._counter = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _VirtualTimer()
        heapq.heappush(self._timers, (self._now + delay_s, next(self._counter), timer, callback))
        return timer

    def advance(self, seconds: float) -> None:
        """Move time forward, running due callbacks in deadline order."""
        target = self._now + seconds
        while self._timers and self._timers[0][0] <= target:
            deadline, _, timer, callback = heapq.heappop(self._timers)
            self._now = deadline
            if not timer.cancelled:
                callback()
        self._now = target

    @property
    def pending(self) -> int:
        return sum(1 for _, _, timer, _ in self._timers if not timer.cancelled)


class SchedulerState(Enum):
    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"


class PushScheduler:
    """Single-slot debounce timer around an async action."""

    def __init__(self, action: PushAction, clock: Clock | None = None, name: str = "push"):
        self._action = action
        self._clock = clock or LoopClock()
        self.name = name
        self._handle: TimerHandle | None = None
        self._deadline: float | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._run_lock = asyncio.Lock()
        self.runs = 0

    @property
    def state(self) -> SchedulerState:
        if self._handle is not None:
            return SchedulerState.PENDING
        if self._tasks:
            return SchedulerState.RUNNING
        return SchedulerState.IDLE

    @property
    def deadline(self) -> float | None:
        return self._deadline

    def schedule(self, delay_ms: int) -> None:
        """(Re)arm the timer; any earlier pending deadline is dropped."""
        self._disarm()
        self._deadline = self._clock.now() + delay_ms / 1000
        self._handle = self._clock.call_later(delay_ms / 1000, self._fire)
        logger.debug(f"{self.name} scheduled in {delay_ms}ms")

    def cancel(self) -> None:
        """Drop a pending deadline. A run already in progress continues."""
        self._disarm()

    def _disarm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._deadline = None

    def _fire(self) -> None:
        # Entered from the timer or from flush(); either way the timer is spent
        self._disarm()
        task = asyncio.ensure_future(self._run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self) -> None:
        async with self._run_lock:
            self.runs += 1
            try:
                await self._action()
            except Exception as e:
                # Nobody awaits a debounced run; the log is the only report
                logger.warning(f"Scheduled {self.name} failed: {e}", exc_info=True)

    async def flush(self) -> None:
        """Run a pending action now instead of at its deadline."""
        if self._handle is not None:
            self._fire()
        await self.wait_idle()

    async def wait_idle(self) -> None:
        """Wait for in-flight runs, if any."""
        while self._tasks:
            await asyncio.wait(set(self._tasks))

    async def close(self) -> None:
        """Cancel any pending deadline and let a running action finish."""
        self.cancel()
        await self.wait_idle()
