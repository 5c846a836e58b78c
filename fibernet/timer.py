"""Timers kept in deadline order by a manager."""

from __future__ import annotations

import bisect
import functools
import itertools
import threading
import time
import weakref
from typing import Any, Callable, Optional

_ROLLOVER_SECONDS = 60 * 60

_sequence = itertools.count()


class Timer:
    """A callback due after ``ms`` milliseconds, optionally recurring."""

    def __init__(
        self,
        ms: int,
        cb: Optional[Callable[[], Any]],
        recurring: bool,
        manager: "TimerManager",
    ) -> None:
        self._ms = ms
        self._cb = cb
        self._recurring = recurring
        self._manager = manager
        self._seq = next(_sequence)
        self._next = manager._clock() + ms / 1000

    def __repr__(self) -> str:
        return f"Timer(ms={self._ms}, recurring={self._recurring}, deadline={self._next})"

    def _sort_key(self) -> tuple[float, int]:
        return (self._next, self._seq)

    @property
    def ms(self) -> int:
        return self._ms

    @property
    def recurring(self) -> bool:
        return self._recurring

    @property
    def deadline(self) -> float:
        return self._next

    def cancel(self) -> bool:
        """Remove the timer; False if it was already cancelled or has fired."""
        manager = self._manager
        with manager._lock:
            if self._cb is None:
                return False
            self._cb = None
            manager._discard(self)
            return True

    def refresh(self) -> bool:
        """Restart the countdown from now."""
        manager = self._manager
        with manager._lock:
            if self._cb is None or self not in manager._timers:
                return False
            manager._timers.remove(self)
            self._next = manager._clock() + self._ms / 1000
            bisect.insort(manager._timers, self, key=Timer._sort_key)
            return True

    def reset(self, ms: int, from_now: bool) -> bool:
        """Change the period, counting from now or from the original start."""
        if ms == self._ms and not from_now:
            return True
        manager = self._manager
        with manager._lock:
            if self._cb is None or self not in manager._timers:
                return False
            manager._timers.remove(self)
        start = manager._clock() if from_now else self._next - self._ms / 1000
        self._ms = ms
        self._next = start + ms / 1000
        manager._insert(self)
        return True


def _on_timer(weak_cond: "weakref.ref[Any]", cb: Callable[[], Any]) -> None:
    if weak_cond() is not None:
        cb()


class TimerManager:
    """Holds timers ordered by deadline and hands out expired callbacks."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        on_front: Optional[Callable[[], Any]] = None,
    ) -> None:
        self._clock = clock
        self._on_front = on_front
        self._lock = threading.Lock()
        self._timers: list[Timer] = []
        self._tickled = False
        self._previous_time = clock()

    def add_timer(
        self, ms: int, cb: Callable[[], Any], recurring: bool = False
    ) -> Timer:
        """Create a timer firing ``cb`` after ``ms`` milliseconds."""
        timer = Timer(ms, cb, recurring, self)
        self._insert(timer)
        return timer

    def add_condition_timer(
        self,
        ms: int,
        cb: Callable[[], Any],
        weak_cond: "weakref.ref[Any]",
        recurring: bool = False,
    ) -> Timer:
        """Create a timer whose callback runs only while ``weak_cond`` is alive."""
        return self.add_timer(ms, functools.partial(_on_timer, weak_cond, cb), recurring)

    def get_next_timer(self) -> Optional[int]:
        """Milliseconds until the earliest deadline, 0 if overdue, None if no timers."""
        with self._lock:
            self._tickled = False
            if not self._timers:
                return None
            now = self._clock()
            deadline = self._timers[0]._next
            if now >= deadline:
                return 0
            return int((deadline - now) * 1000)

    def list_expired_cb(self) -> list[Callable[[], Any]]:
        """Remove expired timers and return their callbacks in deadline order."""
        now = self._clock()
        callbacks: list[Callable[[], Any]] = []
        with self._lock:
            rollover = self._detect_clock_rollover()
            if rollover:
                expired, self._timers = self._timers, []
            else:
                count = bisect.bisect_right(self._timers, now, key=lambda t: t._next)
                expired, self._timers = self._timers[:count], self._timers[count:]
            for timer in expired:
                callbacks.append(timer._cb)
                if timer._recurring:
                    timer._next = now + timer._ms / 1000
                    bisect.insort(self._timers, timer, key=Timer._sort_key)
                else:
                    timer._cb = None
        return callbacks

    def has_timer(self) -> bool:
        """Whether any timer is pending."""
        with self._lock:
            return bool(self._timers)

    def on_timer_inserted_at_front(self) -> None:
        """Called when a new timer becomes the earliest one; runs the ``on_front`` hook."""
        if self._on_front is not None:
            self._on_front()

    def _insert(self, timer: Timer) -> None:
        with self._lock:
            bisect.insort(self._timers, timer, key=Timer._sort_key)
            at_front = self._timers[0] is timer and not self._tickled
            if at_front:
                self._tickled = True
        if at_front:
            self.on_timer_inserted_at_front()

    def _discard(self, timer: Timer) -> None:
        try:
            self._timers.remove(timer)
        except ValueError:
            pass

    def _detect_clock_rollover(self) -> bool:
        now = self._clock()
        rollover = now < self._previous_time - _ROLLOVER_SECONDS
        self._previous_time = now
        return rollover