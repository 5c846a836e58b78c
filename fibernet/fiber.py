"""Stackful fibers with explicit resume and yield.

Each child fiber runs its callback on a dedicated OS thread, but only one
fiber of a logical thread runs at a time: control is handed over explicitly
and every fiber sees the context of the logical thread that resumed it.
"""

from __future__ import annotations

import enum
import itertools
import threading
from typing import Any, Callable, Optional

from .thread import _bind_context, _context, _ThreadContext

DEFAULT_STACK_SIZE = 128000

_FIBER = "fiber"
_THREAD_FIBER = "thread_fiber"
_SCHEDULER_FIBER = "scheduler_fiber"

_ids = itertools.count()
_ids_lock = threading.Lock()


def _next_id() -> int:
    with _ids_lock:
        return next(_ids)


class FiberState(enum.Enum):
    READY = "ready"
    RUNNING = "running"
    SUSPEND = "suspend"
    TERM = "term"


class _Abandoned(BaseException):
    """Unwinds the thread of a fiber whose parked run was discarded by reset()."""


class _Run:
    """One execution of a fiber: the OS thread and the baton it waits on."""

    __slots__ = ("event", "ctx", "started", "abandoned")

    def __init__(self, ctx: Optional[_ThreadContext] = None, started: bool = False) -> None:
        self.event = threading.Event()
        self.ctx = ctx
        self.started = started
        self.abandoned = False


def _hand_over(target: "Fiber", ctx: _ThreadContext) -> None:
    run = target._run
    if run is None:
        run = _Run()
        target._run = run
    run.ctx = ctx
    if run.started:
        run.event.set()
        return
    run.started = True
    threading.Thread(
        target=target._bootstrap, args=(run,), name=f"fiber-{target._id}", daemon=True
    ).start()


def _switch(current: "Fiber", target: "Fiber") -> None:
    run = current._run
    if run is None:
        raise RuntimeError("the current fiber has no execution to suspend")
    _hand_over(target, _context())
    run.event.wait()
    run.event.clear()
    if run.abandoned:
        raise _Abandoned()
    if run.ctx is not None:
        _bind_context(run.ctx)


class Fiber:
    """A unit of cooperative execution."""

    def __init__(
        self,
        cb: Optional[Callable[[], Any]],
        stacksize: int = 0,
        run_in_scheduler: bool = True,
    ) -> None:
        self._cb = cb
        self._stacksize = stacksize or DEFAULT_STACK_SIZE
        self._run_in_scheduler = run_in_scheduler
        self._is_main = False
        self._state = FiberState.READY
        self._run: Optional[_Run] = None
        self._error: Optional[BaseException] = None
        self.lock = threading.Lock()
        self._id = _next_id()

    @classmethod
    def _create_main(cls) -> "Fiber":
        fiber = cls.__new__(cls)
        fiber._cb = None
        fiber._stacksize = 0
        fiber._run_in_scheduler = False
        fiber._is_main = True
        fiber._state = FiberState.RUNNING
        fiber._run = _Run(_context(), started=True)
        fiber._error = None
        fiber.lock = threading.Lock()
        fiber._id = _next_id()
        Fiber.set_this(fiber)
        return fiber

    def __repr__(self) -> str:
        kind = "main" if self._is_main else "child"
        return f"Fiber(id={self._id}, {kind}, state={self._state.name})"

    @property
    def id(self) -> int:
        return self._id

    @property
    def state(self) -> FiberState:
        return self._state

    @property
    def stacksize(self) -> int:
        return self._stacksize

    def reset(self, cb: Optional[Callable[[], Any]]) -> None:
        """Reuse this fiber for a new callback."""
        if self._is_main or self._state not in (FiberState.TERM, FiberState.READY):
            raise RuntimeError("only an idle or finished child fiber can be reset")
        old, self._run = self._run, None
        if old is not None and old.started and self._state is FiberState.READY:
            old.abandoned = True
            old.event.set()
        self._state = FiberState.READY
        self._cb = cb
        self._error = None

    def _return_target(self) -> "Fiber":
        values = _context().values
        key = _SCHEDULER_FIBER if self._run_in_scheduler else _THREAD_FIBER
        target = values.get(key)
        if target is None:
            raise RuntimeError("no fiber to hand control back to")
        return target

    def resume(self) -> None:
        """Run this fiber until it yields or finishes."""
        if self._state not in (FiberState.READY, FiberState.SUSPEND):
            raise RuntimeError(f"cannot resume a fiber in state {self._state.name}")
        if _context().values.get(_THREAD_FIBER) is None:
            Fiber.get_this()
        back = self._return_target()
        self._state = FiberState.RUNNING
        Fiber.set_this(self)
        _switch(back, self)
        error, self._error = self._error, None
        if error is not None:
            raise error

    def yield_control(self) -> None:
        """Give control back to the fiber that resumed this one."""
        if self._state not in (FiberState.RUNNING, FiberState.SUSPEND, FiberState.TERM):
            raise RuntimeError(f"cannot yield a fiber in state {self._state.name}")
        if self._state is FiberState.RUNNING:
            self._state = FiberState.READY
        back = self._return_target()
        if back is self:
            return
        Fiber.set_this(back)
        if self._state is FiberState.TERM:
            _hand_over(back, _context())
            return
        _switch(self, back)

    def suspend(self) -> None:
        """Yield and mark this fiber as waiting for an external event."""
        if self._state is not FiberState.RUNNING:
            raise RuntimeError("only a running fiber can be suspended")
        self._state = FiberState.SUSPEND
        self.yield_control()

    def _bootstrap(self, run: _Run) -> None:
        if run.ctx is not None:
            _bind_context(run.ctx)
        try:
            if self._cb is not None:
                self._cb()
        except _Abandoned:
            return
        except BaseException as exc:  # noqa: BLE001 - handed to the resumer
            self._error = exc
        self._cb = None
        self._state = FiberState.TERM
        self.yield_control()

    @staticmethod
    def set_this(fiber: Optional["Fiber"]) -> None:
        """Record the fiber now running on the calling thread."""
        _context().values[_FIBER] = fiber

    @staticmethod
    def get_this() -> "Fiber":
        """Return the running fiber, creating the thread's main fiber first if needed."""
        values = _context().values
        current = values.get(_FIBER)
        if current is not None:
            return current
        main = Fiber._create_main()
        values[_THREAD_FIBER] = main
        values[_SCHEDULER_FIBER] = main
        return main

    @staticmethod
    def set_scheduler_fiber(fiber: Optional["Fiber"]) -> None:
        """Choose the fiber that scheduled fibers yield back to."""
        _context().values[_SCHEDULER_FIBER] = fiber

    @staticmethod
    def get_fiber_id() -> Optional[int]:
        """Return the id of the running fiber, or None if there is none."""
        current = _context().values.get(_FIBER)
        return None if current is None else current.id