"""
One scheduling abstraction for every time-driven callback in a participant:
escalation ticks, animation frames and deferred bus deliveries all register
through ``every``/``after`` and are stopped through the returned TickHandle.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
from typing import Callable, List, Optional, Tuple

Callback = Callable[[], None]


class TickHandle:
    """Cancellation token for a registered tick."""

    _ids = itertools.count(1)

    def __init__(self, interval: Optional[float]):
        self.token = next(TickHandle._ids)
        self.interval = interval
        self._cancelled = False
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def __repr__(self):
        kind = f"every {self.interval}s" if self.interval else "once"
        state = "cancelled" if self._cancelled else "armed"
        return f"<TickHandle #{self.token} {kind} {state}>"


class Scheduler:
    def now(self) -> float:
        raise NotImplementedError

    def every(self, interval: float, callback: Callback) -> TickHandle:
        raise NotImplementedError

    def after(self, delay: float, callback: Callback) -> TickHandle:
        raise NotImplementedError


class AsyncioScheduler(Scheduler):
    """Scheduler on a running asyncio loop. Periodic ticks re-arm after each call."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def every(self, interval: float, callback: Callback) -> TickHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = TickHandle(interval)

        def fire():
            if handle.cancelled:
                return
            # re-arm first so a callback that cancels its own handle wins
            handle._timer = self.loop.call_later(interval, fire)
            callback()

        handle._timer = self.loop.call_later(interval, fire)
        return handle

    def after(self, delay: float, callback: Callback) -> TickHandle:
        handle = TickHandle(None)

        def fire():
            if handle.cancelled:
                return
            handle._cancelled = True
            handle._timer = None
            callback()

        handle._timer = self.loop.call_later(max(delay, 0.0), fire)
        return handle


class SimulatedScheduler(Scheduler):
    """
    Virtual clock. Nothing happens until advance()/run_pending() is called;
    due callbacks then run in (due time, registration order).
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._seq = itertools.count()
        self._queue: List[Tuple[float, int, TickHandle, Callback]] = []

    def now(self) -> float:
        return self._now

    def every(self, interval: float, callback: Callback) -> TickHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = TickHandle(interval)
        self._push(self._now + interval, handle, callback)
        return handle

    def after(self, delay: float, callback: Callback) -> TickHandle:
        handle = TickHandle(None)
        self._push(self._now + max(delay, 0.0), handle, callback)
        return handle

    def _push(self, due: float, handle: TickHandle, callback: Callback) -> None:
        heapq.heappush(self._queue, (due, next(self._seq), handle, callback))

    def pending(self) -> int:
        return sum(1 for _, _, h, _ in self._queue if not h.cancelled)

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("cannot move the clock backwards")
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = due
            if handle.interval is None:
                handle._cancelled = True
            else:
                self._push(due + handle.interval, handle, callback)
            callback()
        self._now = target

    def run_pending(self) -> None:
        self.advance(0.0)

    def run_until(self, predicate: Callable[[], bool], step: float, limit: float) -> bool:
        """Advance in `step` increments until predicate() holds or `limit` seconds pass."""
        waited = 0.0
        while not predicate():
            if waited >= limit:
                return False
            self.advance(step)
            waited += step
        return True
