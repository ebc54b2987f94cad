"""
Timer scheduling for client-side loops.

Callbacks may be plain functions or coroutine functions. ``AsyncioScheduler``
runs them on the current event loop; ``VirtualScheduler`` runs them against a
virtual millisecond clock that only moves when ``advance`` is awaited.
"""
import abc
import asyncio
import heapq
import inspect
import itertools
import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

Callback = Callable[[], Any]

class TimerHandle:
    """Opaque handle returned by the ``schedule_*`` methods."""

    _ids = itertools.count(1)

    def __init__(self, repeating: bool, interval_ms: int):
        self.id = next(self._ids)
        self.repeating = repeating
        self.interval_ms = interval_ms
        self.cancelled = False

    def __repr__(self):
        kind = "repeating" if self.repeating else "once"
        return f"<TimerHandle {self.id} {kind} {self.interval_ms}ms{' cancelled' if self.cancelled else ''}>"

class Scheduler(abc.ABC):

    @abc.abstractmethod
    def schedule_repeating(self, interval_ms: int, callback: Callback) -> TimerHandle:
        """Call ``callback`` every ``interval_ms`` until cancelled."""

    @abc.abstractmethod
    def schedule_once(self, delay_ms: int, callback: Callback) -> TimerHandle:
        """Call ``callback`` once after ``delay_ms``."""

    @abc.abstractmethod
    def cancel(self, handle: Optional[TimerHandle]) -> None:
        """Cancel a timer. Cancelling ``None`` or a cancelled handle is a no-op."""

    @abc.abstractmethod
    def now(self) -> float:
        """Current time in milliseconds."""

    @property
    @abc.abstractmethod
    def active_count(self) -> int:
        pass

class AsyncioScheduler(Scheduler):
    """
    Real timers on the running asyncio loop.

    A coroutine callback that raises is logged; the timer keeps running.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._timers: Dict[int, asyncio.TimerHandle] = {}
        # Coroutines started by callbacks; they run to completion even if
        # their timer is cancelled.
        self._inflight: Set[asyncio.Task] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time() * 1000

    @property
    def active_count(self) -> int:
        return len(self._timers)

    def schedule_repeating(self, interval_ms: int, callback: Callback) -> TimerHandle:
        handle = TimerHandle(True, interval_ms)
        self._arm(handle, callback)
        return handle

    def schedule_once(self, delay_ms: int, callback: Callback) -> TimerHandle:
        handle = TimerHandle(False, delay_ms)
        self._arm(handle, callback)
        return handle

    def cancel(self, handle: Optional[TimerHandle]) -> None:
        if handle is None or handle.cancelled:
            return
        handle.cancelled = True
        timer = self._timers.pop(handle.id, None)
        if timer is not None:
            timer.cancel()

    def _arm(self, handle: TimerHandle, callback: Callback) -> None:
        self._timers[handle.id] = self.loop.call_later(
            handle.interval_ms / 1000, self._fire, handle, callback
        )

    def _fire(self, handle: TimerHandle, callback: Callback) -> None:
        self._timers.pop(handle.id, None)
        if handle.cancelled:
            return
        if handle.repeating:
            self._arm(handle, callback)
        else:
            handle.cancelled = True
        result = callback()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._inflight.add(task)
            task.add_done_callback(self._finish)

    def _finish(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Timer callback failed", exc_info=error)

class VirtualScheduler(Scheduler):
    """
    Deterministic scheduler driven by a virtual clock.

    Nothing fires until ``advance`` is awaited. Timers due within the advanced
    window fire in time order (ties in scheduling order), each at its own
    virtual fire time, and coroutine callbacks are awaited before the next
    timer fires. A callback that raises aborts ``advance``.
    """

    def __init__(self, start_ms: float = 0):
        self._now = start_ms
        self._queue: List[Tuple[float, int, TimerHandle, Callback]] = []
        self._seq = itertools.count()
        self._active: Set[int] = set()

    def now(self) -> float:
        return self._now

    @property
    def active_count(self) -> int:
        return len(self._active)

    def schedule_repeating(self, interval_ms: int, callback: Callback) -> TimerHandle:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        handle = TimerHandle(True, interval_ms)
        self._push(self._now + interval_ms, handle, callback)
        return handle

    def schedule_once(self, delay_ms: int, callback: Callback) -> TimerHandle:
        handle = TimerHandle(False, delay_ms)
        self._push(self._now + max(delay_ms, 0), handle, callback)
        return handle

    def cancel(self, handle: Optional[TimerHandle]) -> None:
        if handle is None or handle.cancelled:
            return
        handle.cancelled = True
        self._active.discard(handle.id)

    def _push(self, due: float, handle: TimerHandle, callback: Callback) -> None:
        self._active.add(handle.id)
        heapq.heappush(self._queue, (due, next(self._seq), handle, callback))

    async def advance(self, ms: float) -> None:
        """Move the clock forward by ``ms``, firing everything that falls due."""
        target = self._now + ms
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = due
            if handle.repeating:
                self._push(due + handle.interval_ms, handle, callback)
            else:
                handle.cancelled = True
                self._active.discard(handle.id)
            result = callback()
            if inspect.isawaitable(result):
                await result
        self._now = target
