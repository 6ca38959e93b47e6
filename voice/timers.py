"""
voice/timers.py — Clock + owned timer handles

Every delay in the engine (silence, final debounce, unmute delay, capture
restart, gain ramp steps) goes through a Scheduler, and every pending
delay lives in a Timer slot owned by exactly one component. Cancelling a
component's timers is therefore just cancelling its slots.

Two schedulers:
  - LoopScheduler   — the running asyncio loop (loop.time / loop.call_later)
  - ManualScheduler — a hand-driven clock; advance(ms) fires due callbacks
                      in order. Used by the test suite and offline replays.

All times are milliseconds.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from typing import Callable, Optional, Protocol

from observability.logger import get_logger

log = get_logger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def now(self) -> float:
        """Current time in milliseconds (monotonic)."""
        ...

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        ...


# ─────────────────────────────────────────────────────────────────────────────
# asyncio-backed scheduler
# ─────────────────────────────────────────────────────────────────────────────


class LoopScheduler:
    """Scheduler on top of an asyncio event loop (the running one by default)."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time() * 1000.0

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        return self.loop.call_later(max(0.0, delay_ms) / 1000.0, callback)


# ─────────────────────────────────────────────────────────────────────────────
# Manual clock
# ─────────────────────────────────────────────────────────────────────────────


class _ManualHandle:

    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """
    Deterministic scheduler. Time only moves when advance() is called.

    Callbacks scheduled for the same instant run in scheduling order.
    Callbacks may schedule further callbacks; those also fire within the
    same advance() if they fall due before its end.
    """

    def __init__(self, start_ms: float = 0.0):
        self._now = start_ms
        self._queue: list[tuple[float, int, _ManualHandle, Callable[[], None]]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        handle = _ManualHandle()
        due = self._now + max(0.0, delay_ms)
        heapq.heappush(self._queue, (due, next(self._seq), handle, callback))
        return handle

    def advance(self, ms: float) -> None:
        target = self._now + ms
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = due
            callback()
        self._now = target

    @property
    def pending(self) -> int:
        return sum(1 for _, _, h, _ in self._queue if not h.cancelled)


# ─────────────────────────────────────────────────────────────────────────────
# Timer slot
# ─────────────────────────────────────────────────────────────────────────────


class Timer:
    """
    A named, cancellable slot holding at most one pending callback.

    arm() replaces whatever was pending. The handle is released before the
    callback runs, so the callback may re-arm its own slot.
    """

    def __init__(self, scheduler: Scheduler, name: str):
        self._scheduler = scheduler
        self.name = name
        self._handle: Optional[TimerHandle] = None
        self.due_at: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def arm(self, delay_ms: float, callback: Callable[[], None]) -> None:
        self.cancel()

        def _fire() -> None:
            self._handle = None
            self.due_at = None
            callback()

        self.due_at = self._scheduler.now() + delay_ms
        self._handle = self._scheduler.call_later(delay_ms, _fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            self.due_at = None

    def __repr__(self) -> str:
        return f"<Timer {self.name} pending={self.pending}>"
