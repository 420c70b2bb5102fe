"""
ride_monitor/clock.py

Clock + timer abstraction used by every time-dependent component.

VirtualClock   — manual time, timers fire inside advance(); used by tests and
                 by the trace-replay CLI.
SystemClock    — wall-clock time, timers run on threading.Timer and are handed
                 to a dispatch callable (normally RideMonitor.post_call) so the
                 callback executes on the monitor's single processing thread.

Every timer returns a TimerHandle. cancel() is idempotent and a cancelled
callback never runs.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)


class TimerHandle:
    """Cancellable reference to a scheduled (possibly repeating) callback."""

    def __init__(self):
        self.cancelled = False
        self.fired = False
        self._on_cancel: Callable[[], None] | None = None

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()

    @property
    def active(self) -> bool:
        return not self.cancelled and not self.fired


class _BaseClock:

    def now(self) -> float:
        raise NotImplementedError

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        raise NotImplementedError

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        """
        Run callback every `interval` seconds until the returned handle is
        cancelled. The first call happens one interval from now.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")

        handle = TimerHandle()
        pending: list[TimerHandle] = []

        def _tick():
            if handle.cancelled:
                return
            callback()
            if not handle.cancelled:
                pending[0] = self.call_later(interval, _tick)

        pending.append(self.call_later(interval, _tick))
        handle._on_cancel = lambda: pending[0].cancel()
        return handle


class VirtualClock(_BaseClock):
    """
    Deterministic clock for tests and trace replay.

    Usage
    -----
        clock = VirtualClock(start=1_700_000_000.0)
        clock.call_later(5, lambda: print("five seconds later"))
        clock.advance(5)    # prints
    """

    def __init__(self, start: float = 0.0):
        self._now = float(start)
        self._queue: list[tuple[float, int, TimerHandle, Callable[[], None]]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle()
        due = self._now + max(0.0, float(delay))
        heapq.heappush(self._queue, (due, next(self._seq), handle, callback))
        return handle

    def advance(self, seconds: float) -> None:
        """Move time forward, firing every due timer in deadline order."""
        target = self._now + float(seconds)
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._queue)
            self._now = max(self._now, due)
            if handle.cancelled:
                continue
            handle.fired = True
            callback()
        self._now = target

    def advance_to(self, timestamp: float) -> None:
        if timestamp > self._now:
            self.advance(timestamp - self._now)

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, _, h, _ in self._queue if not h.cancelled)


class SystemClock(_BaseClock):
    """
    Wall-clock time backed by threading.Timer.

    Parameters
    ----------
    dispatch : Callable[[Callable[[], None]], None] | None
        Where fired callbacks are sent. Pass the monitor's post_call so timer
        work is serialized with sensor work. If None, callbacks run directly
        on the timer thread.
    """

    def __init__(self, dispatch: Callable[[Callable[[], None]], None] | None = None):
        self.dispatch = dispatch

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle()

        def _guarded():
            # re-checked on the consuming thread: cancel may land after dispatch
            if handle.cancelled:
                return
            handle.fired = True
            callback()

        def _fire():
            if handle.cancelled:
                return
            if self.dispatch is not None:
                self.dispatch(_guarded)
            else:
                _guarded()

        timer = threading.Timer(max(0.0, float(delay)), _fire)
        timer.daemon = True
        handle._on_cancel = timer.cancel
        timer.start()
        return handle
