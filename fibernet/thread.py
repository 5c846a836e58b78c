"""Named worker threads, a counting semaphore and per-thread context."""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional


class _ThreadContext:
    """State that belongs to one logical thread, shared by the fibers it runs."""

    __slots__ = ("tid", "thread", "name", "values")

    def __init__(self) -> None:
        self.tid: int = threading.get_native_id()
        self.thread: Optional["Thread"] = None
        self.name: str = "UNKNOWN"
        self.values: dict[str, Any] = {}


_local = threading.local()


def _context() -> _ThreadContext:
    """Return the context of the calling logical thread, creating it if needed."""
    ctx = getattr(_local, "ctx", None)
    if ctx is None:
        ctx = _ThreadContext()
        _local.ctx = ctx
    return ctx


def _bind_context(ctx: _ThreadContext) -> None:
    """Make the calling OS thread act on behalf of ``ctx``."""
    _local.ctx = ctx


class Semaphore:
    """A counting semaphore used to synchronise thread start-up."""

    def __init__(self, count: int = 0) -> None:
        self._count = count
        self._cond = threading.Condition()

    def wait(self) -> None:
        """Block until the count is positive, then decrement it."""
        with self._cond:
            while self._count == 0:
                self._cond.wait()
            self._count -= 1

    def signal(self) -> None:
        """Increment the count and wake one waiter."""
        with self._cond:
            self._count += 1
            self._cond.notify()


class Thread:
    """A named thread that runs ``cb`` and is ready once the constructor returns."""

    def __init__(self, cb: Callable[[], Any], name: str) -> None:
        self._cb: Optional[Callable[[], Any]] = cb
        self.name = name
        self.id = -1
        self._semaphore = Semaphore()
        self._thread: Optional[threading.Thread] = threading.Thread(
            target=self._run, name=name, daemon=True
        )
        self._thread.start()
        self._semaphore.wait()

    def __repr__(self) -> str:
        return f"Thread(name={self.name!r}, id={self.id})"

    def join(self) -> None:
        """Wait for the thread to finish."""
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _run(self) -> None:
        ctx = _context()
        ctx.thread = self
        ctx.name = self.name
        self.id = ctx.tid
        cb, self._cb = self._cb, None
        self._semaphore.signal()
        if cb is not None:
            cb()

    @staticmethod
    def get_thread_id() -> int:
        """Return the system id of the calling logical thread."""
        return _context().tid

    @staticmethod
    def get_this() -> Optional["Thread"]:
        """Return the Thread object running the caller, or None."""
        return _context().thread

    @staticmethod
    def get_name() -> str:
        """Return the name of the calling thread."""
        return _context().name

    @staticmethod
    def set_name(name: str) -> None:
        """Rename the calling thread."""
        ctx = _context()
        if ctx.thread is not None:
            ctx.thread.name = name
        ctx.name = name