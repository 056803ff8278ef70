import threading

import pytest

from twolevel.scheduler import Scheduler
from twolevel.thread import InvalidThreadError, ThreadState, UThread
from twolevel.waitqueue import ThreadQueue


def spawn(sched, uid, func, *args, prio=0):
    thread = UThread(uid, state=ThreadState.TRANSITION)
    sched.make_context(thread, func, *args)
    sched.start_on_runq(thread, prio)
    return thread


def run(sched, timeout=20):
    errors = []

    def target():
        try:
            sched.run_lwp()
        except Exception as exc:
            errors.append(exc)

    worker = threading.Thread(target=target, daemon=True)
    worker.start()
    worker.join(timeout)
    assert not worker.is_alive(), "scheduler did not stop"
    return errors


def stop_after(sched, count):
    done = []
    guard = threading.Lock()

    def hook(result):
        with guard:
            done.append(result)
            last = len(done) == count
        if last:
            sched.stop()

    sched.on_return = hook
    return done


def test_needs_at_least_one_lwp():
    with pytest.raises(ValueError):
        Scheduler(0)


def test_higher_priority_runs_first():
    sched = Scheduler(1)
    log = []
    low = spawn(sched, 1, lambda: log.append("p0") or "low", prio=0)
    high = spawn(sched, 2, lambda: log.append("p5") or "high", prio=5)
    mid = spawn(sched, 3, lambda: log.append("p3") or "mid", prio=3)
    spawn(sched, 4, sched.stop, prio=0)
    assert sched.runnable_count() == 4
    assert run(sched) == []
    assert log == ["p5", "p3", "p0"]
    for thread, value in ((low, "low"), (high, "high"), (mid, "mid")):
        assert thread.state is ThreadState.ZOMBIE
        assert thread.exit_value == value


def test_yield_round_robin_within_priority():
    sched = Scheduler(1)
    log = []

    def worker(name):
        for i in range(3):
            log.append(f"{name}{i}")
            sched.yield_()
        return name

    spawn(sched, 1, worker, "a")
    spawn(sched, 2, worker, "b")
    finished = stop_after(sched, 2)
    assert run(sched) == []
    assert log == ["a0", "b0", "a1", "b1", "a2", "b2"]
    assert finished == ["a", "b"]


def test_current_names_running_thread():
    sched = Scheduler(1)
    seen = []
    thread = spawn(sched, 7, lambda: seen.append(sched.current()))
    stop_after(sched, 1)
    assert sched.current() is None
    assert run(sched) == []
    assert seen == [thread]


def test_switch_to_queue_and_wake():
    sched = Scheduler(1)
    queue = ThreadQueue()
    log = []

    def sleeper():
        log.append("a-wait")
        sched.current().state = ThreadState.WAIT
        sched.switch(queue, False, None)
        log.append("a-woken")

    def waker():
        log.append("b")
        sched.wake(queue.dequeue())
        log.append("b-done")

    spawn(sched, 1, sleeper)
    spawn(sched, 2, waker)
    stop_after(sched, 2)
    assert run(sched) == []
    assert log == ["a-wait", "b", "b-done", "a-woken"]
    assert len(queue) == 0


def test_switch_releases_lock_after_leaving():
    sched = Scheduler(1)
    lock = threading.Lock()
    states = []

    def body():
        lock.acquire()
        sched.switch(None, True, lock)
        states.append(lock.locked())

    spawn(sched, 1, body)
    stop_after(sched, 1)
    assert run(sched) == []
    assert states == [False]


def test_set_priority_requeues_runnable_thread():
    sched = Scheduler(1)
    log = []
    first = spawn(sched, 1, lambda: log.append("A"), prio=0)
    spawn(sched, 2, lambda: log.append("B"), prio=3)
    sched.set_priority(first, 7)
    assert first.prio == 7
    assert first in sched._runq[7] if False else first.link is not None
    stop_after(sched, 2)
    assert run(sched) == []
    assert log == ["A", "B"]


def test_set_priority_same_value_keeps_queue():
    sched = Scheduler(1)
    thread = spawn(sched, 1, lambda: None, prio=4)
    queue = thread.link
    sched.set_priority(thread, 4)
    assert thread.link is queue
    assert sched.runnable_count() == 1


@pytest.mark.parametrize("prio", [-1, 8])
def test_set_priority_rejects_out_of_range(prio):
    sched = Scheduler(1)
    thread = spawn(sched, 1, lambda: None)
    with pytest.raises(InvalidThreadError):
        sched.set_priority(thread, prio)


@pytest.mark.parametrize(
    "state", [ThreadState.NO_STATE, ThreadState.TRANSITION, ThreadState.ZOMBIE]
)
def test_set_priority_rejects_inactive_thread(state):
    sched = Scheduler(1)
    with pytest.raises(InvalidThreadError):
        sched.set_priority(UThread(3, state=state), 2)


def test_start_on_runq_requires_transition_state():
    sched = Scheduler(1)
    thread = UThread(1)
    sched.make_context(thread, lambda: None)
    with pytest.raises(RuntimeError):
        sched.start_on_runq(thread, 0)
    assert sched.runnable_count() == 0


def test_wake_ignores_threads_not_waiting():
    sched = Scheduler(1)
    thread = spawn(sched, 1, lambda: None)
    sched.wake(thread)
    assert sched.runnable_count() == 1
    assert thread.state is ThreadState.RUNNABLE


def test_wake_rejects_missing_thread():
    sched = Scheduler(1)
    with pytest.raises(InvalidThreadError):
        sched.wake(UThread(5))


def test_switch_outside_user_thread_fails():
    sched = Scheduler(1)
    with pytest.raises(RuntimeError):
        sched.switch(None, True, None)
    with pytest.raises(RuntimeError):
        sched.yield_()


def test_enqueue_runnable_uses_thread_priority():
    sched = Scheduler(1)
    log = []
    thread = UThread(1, state=ThreadState.RUNNABLE, prio=6)
    sched.make_context(thread, lambda: log.append("ran"))
    sched.enqueue_runnable(thread)
    assert sched.runnable_count() == 1
    stop_after(sched, 1)
    assert run(sched) == []
    assert log == ["ran"]


def test_failing_function_is_recorded():
    sched = Scheduler(1)

    def broken():
        raise ValueError("boom")

    thread = spawn(sched, 1, broken, prio=7)
    spawn(sched, 2, sched.stop, prio=0)
    assert run(sched) == []
    assert thread.state is ThreadState.ZOMBIE
    assert thread.exit_value is None
    assert [(t, type(e)) for t, e in sched.failures] == [(thread, ValueError)]


def test_all_lwps_parked_is_reported():
    sched = Scheduler(1)
    queue = ThreadQueue()

    def stuck():
        sched.current().state = ThreadState.WAIT
        sched.switch(queue, False, None)

    thread = spawn(sched, 1, stuck)
    errors = run(sched)
    assert [type(e) for e in errors] == [RuntimeError]
    assert list(queue) == [thread]


def test_many_lwps_run_every_thread():
    sched = Scheduler(3)
    count = 20
    total = []
    guard = threading.Lock()

    def body(n):
        sched.yield_()
        with guard:
            total.append(n)
        return n

    for uid in range(count):
        spawn(sched, uid, body, uid, prio=uid % 4)
    finished = stop_after(sched, count)
    sched.start_lwps()
    with pytest.raises(RuntimeError):
        sched.start_lwps()
    assert run(sched) == []
    assert sorted(total) == list(range(count))
    assert sorted(finished) == list(range(count))