"""Per-thread pools of reusable fibers."""

from __future__ import annotations

import collections
import threading
from typing import Any, Callable, Optional

from .fiber import Fiber
from .thread import _context

DEFAULT_POOL_SIZE = 256
_POOL_KEY = "fiber_pool"


def _noop() -> None:
    return None


class FiberPool:
    """A pool of idle fibers handed out for callbacks and taken back when done."""

    def __init__(self, fibers: int = DEFAULT_POOL_SIZE) -> None:
        self._pool_size = fibers
        self._idle: collections.deque[Fiber] = collections.deque()
        self._all: list[Fiber] = []
        self._lock = threading.Lock()
        self._create_fibers(fibers)

    def __repr__(self) -> str:
        return f"FiberPool(idle={self.idle_count()}, total={self.total_count()})"

    @property
    def pool_size(self) -> int:
        return self._pool_size

    @staticmethod
    def get_local_fiber_pool() -> "FiberPool":
        """Return the pool of the calling thread, creating it on first use."""
        values = _context().values
        pool = values.get(_POOL_KEY)
        if pool is None:
            pool = FiberPool(DEFAULT_POOL_SIZE)
            values[_POOL_KEY] = pool
        return pool

    def acquire(self, cb: Optional[Callable[[], Any]]) -> Fiber:
        """Take an idle fiber, growing the pool by half when none is left."""
        with self._lock:
            if not self._idle:
                total = len(self._all)
                self._create_fibers(max(int(total * 1.5) - total, 1))
            fiber = self._idle.popleft()
            fiber.reset(cb)
            return fiber

    def release(self, fiber: Fiber) -> None:
        """Clear a finished fiber and put it back among the idle ones."""
        with self._lock:
            fiber.reset(None)
            self._idle.append(fiber)

    def resize(self, new_size: int) -> None:
        """Grow the pool, or shrink it by dropping idle fibers."""
        with self._lock:
            total = len(self._all)
            if new_size > total:
                self._create_fibers(new_size - total)
            elif new_size < total:
                remove_count = total - new_size
                while remove_count > 0 and self._idle:
                    remove_count -= 1
                    fiber = self._idle.popleft()
                    try:
                        self._all.remove(fiber)
                    except ValueError:
                        pass
            self._pool_size = new_size

    def idle_count(self) -> int:
        """Number of fibers ready to be handed out."""
        with self._lock:
            return len(self._idle)

    def total_count(self) -> int:
        """Number of fibers the pool created and still owns."""
        with self._lock:
            return len(self._all)

    def _create_fibers(self, count: int) -> None:
        for _ in range(count):
            fiber = Fiber(_noop, 0, True)
            fiber.reset(None)
            self._idle.append(fiber)
            self._all.append(fiber)