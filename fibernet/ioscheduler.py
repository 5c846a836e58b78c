"""A scheduler that also waits on descriptor readiness and timers."""

from __future__ import annotations

import enum
import logging
import os
import selectors
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .fiber import Fiber, FiberState
from .scheduler import Scheduler
from .timer import TimerManager

logger = logging.getLogger(__name__)

MAX_TIMEOUT_MS = 5000
_DRAIN_CHUNK = 256


class Event(enum.IntFlag):
    """Readiness kinds a descriptor can be watched for."""

    NONE = 0x0
    READ = 0x1
    WRITE = 0x4


def _as_fd(fd: Any) -> int:
    if isinstance(fd, int):
        return fd
    return fd.fileno()


def _selector_mask(events: int) -> int:
    mask = 0
    if events & Event.READ:
        mask |= selectors.EVENT_READ
    if events & Event.WRITE:
        mask |= selectors.EVENT_WRITE
    return mask


def _without(events: int, removed: int) -> Event:
    return Event(int(events) & ~int(removed) & int(Event.READ | Event.WRITE))


@dataclass
class _EventContext:
    """What to run when one event of a descriptor becomes ready."""

    scheduler: Optional[Scheduler] = None
    fiber: Optional[Fiber] = None
    cb: Optional[Callable[[], Any]] = None

    def clear(self) -> None:
        self.scheduler = None
        self.fiber = None
        self.cb = None

    @property
    def empty(self) -> bool:
        return self.scheduler is None and self.fiber is None and self.cb is None


class _FdContext:
    """Registered events of one descriptor and the work bound to each."""

    def __init__(self, fd: int) -> None:
        self.fd = fd
        self.read = _EventContext()
        self.write = _EventContext()
        self.events = Event.NONE
        self.lock = threading.Lock()

    def context(self, event: Event) -> _EventContext:
        if event == Event.READ:
            return self.read
        if event == Event.WRITE:
            return self.write
        raise ValueError(f"unsupported event type: {event!r}")

    def trigger(self, event: Event) -> None:
        """Drop ``event`` and hand its fiber or callback to its scheduler."""
        self.events = _without(self.events, event)
        ctx = self.context(event)
        scheduler = ctx.scheduler
        task: Any = ctx.cb if ctx.cb is not None else ctx.fiber
        ctx.clear()
        if scheduler is not None and task is not None:
            scheduler.schedule(task)


class IOManager(Scheduler, TimerManager):
    """Scheduler whose idle threads wait for descriptor events and timers."""

    def __init__(self, threads: int = 1, use_caller: bool = True, name: str = "IOManager") -> None:
        TimerManager.__init__(self)
        Scheduler.__init__(self, threads, use_caller, name)
        self._closed = False
        self._selector = selectors.DefaultSelector()
        self._tickle_r, self._tickle_w = os.pipe()
        os.set_blocking(self._tickle_r, False)
        os.set_blocking(self._tickle_w, False)
        self._selector.register(self._tickle_r, selectors.EVENT_READ, None)
        self._contexts: dict[int, _FdContext] = {}
        self._contexts_lock = threading.Lock()
        self._pending = 0
        self._pending_lock = threading.Lock()
        self.start()

    def __exit__(self, *exc_info: Any) -> None:
        super().__exit__(*exc_info)
        self._release()

    def close(self) -> None:
        """Stop the scheduler and release the selector and wake-up pipe."""
        self.stop()
        self._release()

    def _release(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._selector.close()
        os.close(self._tickle_r)
        os.close(self._tickle_w)

    @property
    def pending_event_count(self) -> int:
        with self._pending_lock:
            return self._pending

    def _add_pending(self, delta: int) -> None:
        with self._pending_lock:
            self._pending += delta

    @staticmethod
    def get_this() -> Optional["IOManager"]:
        """Return the calling thread's scheduler if it is an IOManager."""
        current = Scheduler.get_this()
        return current if isinstance(current, IOManager) else None

    def _get_context(self, fd: int, create: bool) -> Optional[_FdContext]:
        with self._contexts_lock:
            ctx = self._contexts.get(fd)
            if ctx is None and create:
                ctx = _FdContext(fd)
                self._contexts[fd] = ctx
            return ctx

    def _apply(self, fd_ctx: _FdContext, new_events: int) -> None:
        """Make the selector watch exactly ``new_events`` for the descriptor."""
        old = fd_ctx.events
        if not new_events:
            if old:
                self._selector.unregister(fd_ctx.fd)
        elif old:
            self._selector.modify(fd_ctx.fd, _selector_mask(new_events), fd_ctx)
        else:
            self._selector.register(fd_ctx.fd, _selector_mask(new_events), fd_ctx)

    def add_event(self, fd: Any, event: Event, cb: Optional[Callable[[], Any]] = None) -> None:
        """Watch ``fd`` for ``event``; without ``cb`` the running fiber is resumed."""
        fd = _as_fd(fd)
        fd_ctx = self._get_context(fd, True)
        with fd_ctx.lock:
            if fd_ctx.events & event:
                raise ValueError(f"event {event!r} already registered for fd {fd}")
            event_ctx = fd_ctx.context(event)
            fiber: Optional[Fiber] = None
            if cb is None:
                fiber = Fiber.get_this()
                if fiber.state is not FiberState.RUNNING:
                    raise RuntimeError("only a running fiber can wait for an event")
            self._apply(fd_ctx, fd_ctx.events | event)
            self._add_pending(1)
            fd_ctx.events = Event(fd_ctx.events | event)
            event_ctx.scheduler = Scheduler.get_this() or self
            if cb is not None:
                event_ctx.cb = cb
            else:
                event_ctx.fiber = fiber

    def _remove(self, fd: Any, event: Event, trigger: bool) -> bool:
        fd_ctx = self._get_context(_as_fd(fd), False)
        if fd_ctx is None:
            return False
        with fd_ctx.lock:
            if not fd_ctx.events & event:
                return False
            event_ctx = fd_ctx.context(event)
            self._apply(fd_ctx, _without(fd_ctx.events, event))
            self._add_pending(-1)
            if trigger:
                fd_ctx.trigger(event)
            else:
                fd_ctx.events = _without(fd_ctx.events, event)
                event_ctx.clear()
            return True

    def del_event(self, fd: Any, event: Event) -> bool:
        """Stop watching ``event`` on ``fd`` without running its work."""
        return self._remove(fd, event, trigger=False)

    def cancel_event(self, fd: Any, event: Event) -> bool:
        """Stop watching ``event`` on ``fd`` and run its work now."""
        return self._remove(fd, event, trigger=True)

    def cancel_all(self, fd: Any) -> bool:
        """Stop watching every event on ``fd`` and run all their work."""
        fd_ctx = self._get_context(_as_fd(fd), False)
        if fd_ctx is None:
            return False
        with fd_ctx.lock:
            if not fd_ctx.events:
                return False
            self._apply(fd_ctx, Event.NONE)
            for event in (Event.READ, Event.WRITE):
                if fd_ctx.events & event:
                    self._add_pending(-1)
                    fd_ctx.trigger(event)
            return True

    def tickle(self) -> None:
        """Wake a thread blocked waiting for events."""
        if self._closed or not self.has_idle_threads():
            return
        try:
            os.write(self._tickle_w, b"T")
        except BlockingIOError:
            pass

    def stopping(self) -> bool:
        """Stopped, with no timers and no pending events left."""
        return (
            self.get_next_timer() is None
            and self.pending_event_count == 0
            and Scheduler.stopping(self)
        )

    def _drain_tickle(self) -> None:
        while True:
            try:
                data = os.read(self._tickle_r, _DRAIN_CHUNK)
            except BlockingIOError:
                return
            if not data:
                return

    def _dispatch(self, fd_ctx: _FdContext, mask: int) -> None:
        with fd_ctx.lock:
            real = Event.NONE
            if mask & selectors.EVENT_READ:
                real |= Event.READ
            if mask & selectors.EVENT_WRITE:
                real |= Event.WRITE
            real = Event(real & fd_ctx.events)
            if not real:
                return
            try:
                self._apply(fd_ctx, _without(fd_ctx.events, real))
            except (OSError, KeyError, ValueError):
                logger.exception("failed to update watched events of fd %d", fd_ctx.fd)
                return
            for event in (Event.READ, Event.WRITE):
                if real & event:
                    self._add_pending(-1)
                    fd_ctx.trigger(event)

    def idle(self) -> None:
        """Wait for ready descriptors and expired timers, scheduling their work."""
        while not self.stopping():
            next_timeout = self.get_next_timer()
            if next_timeout is None:
                next_timeout = MAX_TIMEOUT_MS
            next_timeout = min(next_timeout, MAX_TIMEOUT_MS)
            ready = self._selector.select(next_timeout / 1000)

            for cb in self.list_expired_cb():
                if cb is not None:
                    self.schedule(cb)

            for key, mask in ready:
                if key.data is None:
                    self._drain_tickle()
                    continue
                self._dispatch(key.data, mask)

            Fiber.get_this().yield_control()

    def on_timer_inserted_at_front(self) -> None:
        """A new earliest timer wakes a waiting thread so it can recompute its timeout."""
        self.tickle()