import functools
import threading

import pytest

from fibernet.fiber import Fiber, FiberState
from fibernet.scheduler import Scheduler
from fibernet.thread import Thread

FAST_IDLE = 0.005


def _isolated(fn):
    outcome = {}

    def target():
        try:
            outcome["value"] = fn()
        except BaseException as exc:  # noqa: BLE001
            outcome["error"] = exc

    worker = threading.Thread(target=target, daemon=True)
    worker.start()
    worker.join(60)
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


def test_caller_thread_runs_tasks_on_stop():
    def body():
        ran = []
        with Scheduler() as sched:
            sched.idle_sleep = FAST_IDLE
            for i in range(3):
                sched.schedule(functools.partial(ran.append, i))
            before = list(ran)
            sched.stop()
        return before, ran

    before, ran = _isolated(body)
    assert before == []
    assert ran == [0, 1, 2]


def test_get_this_while_attached():
    def body():
        with Scheduler() as sched:
            sched.idle_sleep = FAST_IDLE
            inside = Scheduler.get_this() is sched
        return inside, Scheduler.get_this()

    inside, after = _isolated(body)
    assert inside
    assert after is None


def test_second_scheduler_in_same_thread_rejected():
    def body():
        with Scheduler() as sched:
            sched.idle_sleep = FAST_IDLE
            with pytest.raises(RuntimeError):
                Scheduler()
            still_current = Scheduler.get_this() is sched
        return still_current

    assert _isolated(body) is True


def test_zero_threads_rejected():
    with pytest.raises(ValueError):
        Scheduler(0)


def test_worker_threads_run_tasks():
    def body():
        seen = []
        with Scheduler(2, use_caller=False, name="pool") as sched:
            sched.idle_sleep = FAST_IDLE
            sched.start()
            ids = sched.thread_ids
            for _ in range(10):
                sched.schedule(lambda: seen.append(Thread.get_thread_id()))
            sched.stop()
        return ids, seen

    ids, seen = _isolated(body)
    assert len(ids) == 2
    assert len(seen) == 10
    assert set(seen) <= set(ids)


def test_caller_counts_as_a_thread():
    def body():
        with Scheduler(3, use_caller=True, name="mixed") as sched:
            sched.idle_sleep = FAST_IDLE
            sched.start()
            ids = sched.thread_ids
            caller = Thread.get_thread_id()
            sched.stop()
        return ids, caller

    ids, caller = _isolated(body)
    assert len(ids) == 3
    assert ids[0] == caller


def test_task_pinned_to_thread():
    def body():
        seen = []
        with Scheduler(2, use_caller=False, name="pinned") as sched:
            sched.idle_sleep = FAST_IDLE
            sched.start()
            target = sched.thread_ids[0]
            for _ in range(6):
                sched.schedule(lambda: seen.append(Thread.get_thread_id()), thread=target)
            sched.stop()
        return target, seen

    target, seen = _isolated(body)
    assert len(seen) == 6
    assert set(seen) == {target}


def test_fiber_task_runs_and_is_recycled():
    def body():
        ran = []
        with Scheduler() as sched:
            sched.idle_sleep = FAST_IDLE
            fiber = Fiber(lambda: ran.append("x"))
            sched.schedule(fiber)
            sched.stop()
        return ran, fiber.state

    ran, state = _isolated(body)
    assert ran == ["x"]
    assert state is FiberState.READY


def test_failing_task_does_not_stop_scheduler():
    def failing():
        raise ValueError("boom")

    def body():
        ran = []
        with Scheduler() as sched:
            sched.idle_sleep = FAST_IDLE
            sched.schedule(failing)
            sched.schedule(lambda: ran.append("after"))
            sched.stop()
        return ran

    assert _isolated(body) == ["after"]


def test_stopping_state():
    def body():
        with Scheduler() as sched:
            sched.idle_sleep = FAST_IDLE
            before = sched.stopping()
            sched.stop()
            after = sched.stopping()
            idle = sched.has_idle_threads()
        return before, after, idle

    before, after, idle = _isolated(body)
    assert before is False
    assert after is True
    assert idle is False


def test_start_after_stop_rejected():
    def body():
        with Scheduler() as sched:
            sched.idle_sleep = FAST_IDLE
            sched.stop()
            with pytest.raises(RuntimeError):
                sched.start()
            return sched.stopping()

    assert _isolated(body) is True


def test_schedule_rejects_non_callable():
    def body():
        ran = []
        with Scheduler() as sched:
            sched.idle_sleep = FAST_IDLE
            with pytest.raises(TypeError):
                sched.schedule(42)
            sched.schedule(lambda: ran.append("ok"))
            sched.stop()
        return ran

    assert _isolated(body) == ["ok"]