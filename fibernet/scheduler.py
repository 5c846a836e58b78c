"""A task scheduler running callbacks and fibers on a set of threads."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from .fiber import Fiber, FiberState
from .fiberpool import FiberPool
from .hookflag import set_hook_enable
from .thread import Thread, _context

logger = logging.getLogger(__name__)

_SCHEDULER_KEY = "scheduler"

Task = Union[Fiber, Callable[[], Any]]


@dataclass
class _ScheduleTask:
    fiber: Optional[Fiber] = None
    cb: Optional[Callable[[], Any]] = None
    thread: Optional[int] = None


class Scheduler:
    """Runs scheduled fibers and callbacks on worker threads and, optionally, the caller."""

    idle_sleep: float = 1.0

    def __init__(self, threads: int = 1, use_caller: bool = True, name: str = "Scheduler") -> None:
        if threads <= 0:
            raise ValueError("a scheduler needs at least one thread")
        if Scheduler.get_this() is not None:
            raise RuntimeError("this thread already has a scheduler")
        self._name = name
        self._use_caller = use_caller
        self._lock = threading.Lock()
        self._threads: list[Thread] = []
        self._tasks: list[_ScheduleTask] = []
        self._thread_ids: list[int] = []
        self._active_threads = 0
        self._idle_threads = 0
        self._stopping = False
        self._scheduler_fiber: Optional[Fiber] = None
        self._root_thread = -1

        self._set_this()
        Thread.set_name(name)

        if use_caller:
            threads -= 1
            Fiber.get_this()
            self._scheduler_fiber = Fiber(self.run, 0, False)
            Fiber.set_scheduler_fiber(self._scheduler_fiber)
            self._root_thread = Thread.get_thread_id()
            self._thread_ids.append(self._root_thread)

        self._thread_count = threads

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self._name!r}, threads={self._thread_count})"

    def __enter__(self) -> "Scheduler":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()
        self._detach()

    @property
    def name(self) -> str:
        return self._name

    @property
    def thread_ids(self) -> list[int]:
        with self._lock:
            return list(self._thread_ids)

    @staticmethod
    def get_this() -> Optional["Scheduler"]:
        """Return the scheduler of the calling thread, or None."""
        return _context().values.get(_SCHEDULER_KEY)

    def _set_this(self) -> None:
        _context().values[_SCHEDULER_KEY] = self

    def _detach(self) -> None:
        values = _context().values
        if values.get(_SCHEDULER_KEY) is self:
            values[_SCHEDULER_KEY] = None
            if self._use_caller:
                Fiber.set_scheduler_fiber(Fiber.get_this())

    def schedule(self, task: Optional[Task], thread: Optional[int] = None) -> None:
        """Queue a fiber or callback, optionally pinned to one thread id."""
        with self._lock:
            need_tickle = not self._tasks
            if isinstance(task, Fiber):
                self._tasks.append(_ScheduleTask(fiber=task, thread=thread))
            elif task is not None:
                if not callable(task):
                    raise TypeError("a task must be a Fiber or a callable")
                self._tasks.append(_ScheduleTask(cb=task, thread=thread))
        if need_tickle:
            self.tickle()

    def start(self) -> None:
        """Start the worker threads."""
        with self._lock:
            if self._stopping:
                raise RuntimeError("Scheduler is stopped")
            if self._threads:
                raise RuntimeError("Scheduler is already started")
            for index in range(self._thread_count):
                worker = Thread(self.run, f"{self._name}_{index}")
                self._threads.append(worker)
                self._thread_ids.append(worker.id)

    def _take_task(self, thread_id: int) -> tuple[Optional[_ScheduleTask], bool]:
        with self._lock:
            skipped = False
            for index, task in enumerate(self._tasks):
                if task.thread is not None and task.thread != thread_id:
                    skipped = True
                    continue
                del self._tasks[index]
                self._active_threads += 1
                return task, skipped or index < len(self._tasks)
            return None, skipped

    @staticmethod
    def _run_fiber(fiber: Fiber) -> None:
        with fiber.lock:
            if fiber.state is not FiberState.TERM:
                try:
                    fiber.resume()
                except Exception:
                    logger.exception("scheduled task failed")
        if fiber.state is FiberState.TERM:
            FiberPool.get_local_fiber_pool().release(fiber)

    def run(self) -> None:
        """Worker loop: take tasks and run them, idling when there are none."""
        thread_id = Thread.get_thread_id()
        set_hook_enable(True)
        self._set_this()
        if thread_id != self._root_thread:
            Fiber.get_this()

        idle_fiber = Fiber(self.idle)
        while True:
            task, tickle_me = self._take_task(thread_id)
            if tickle_me:
                self.tickle()

            if task is None:
                if idle_fiber.state is FiberState.TERM:
                    break
                with self._lock:
                    self._idle_threads += 1
                try:
                    idle_fiber.resume()
                finally:
                    with self._lock:
                        self._idle_threads -= 1
                continue

            try:
                if task.fiber is not None:
                    fiber = task.fiber
                else:
                    fiber = FiberPool.get_local_fiber_pool().acquire(task.cb)
                self._run_fiber(fiber)
            finally:
                with self._lock:
                    self._active_threads -= 1

    def stop(self) -> None:
        """Finish queued work and wait for all threads to leave."""
        if self.stopping():
            return
        if self._use_caller and Scheduler.get_this() is not self:
            raise RuntimeError("stop() must be called from the thread that created the scheduler")
        self._stopping = True

        for _ in range(self._thread_count):
            self.tickle()
        if self._scheduler_fiber is not None:
            self.tickle()
            self._scheduler_fiber.resume()

        with self._lock:
            workers, self._threads = self._threads, []
        for worker in workers:
            worker.join()

    def tickle(self) -> None:
        """Wake an idle thread; the base scheduler polls instead."""

    def idle(self) -> None:
        """Wait for work until the scheduler stops."""
        while not self.stopping():
            time.sleep(self.idle_sleep)
            Fiber.get_this().yield_control()

    def stopping(self) -> bool:
        """Whether stop was requested and all work is done."""
        with self._lock:
            return self._stopping and not self._tasks and self._active_threads == 0

    def has_idle_threads(self) -> bool:
        """Whether any thread is currently idling."""
        with self._lock:
            return self._idle_threads > 0