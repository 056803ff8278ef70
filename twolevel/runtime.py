"""Thread creation, exit, join, detach and reaping on top of the scheduler."""

from __future__ import annotations

import itertools
import threading
from typing import Any, Callable, List, Optional

from twolevel.scheduler import Scheduler
from twolevel.sync import Condition, Mutex
from twolevel.thread import (
    DEFAULT_LWPS,
    MAX_PRIO,
    MAX_THREADS,
    InvalidThreadError,
    NoSuchThreadError,
    ResourceError,
    ThreadState,
    UThread,
)
from twolevel.waitqueue import ThreadQueue


class Runtime:
    """A two-level thread system: user threads multiplexed on ``lwps`` workers.

    :meth:`start` turns the calling host thread into one of the workers and
    runs ``func`` as the first user thread. It returns once every user
    thread has finished and been reaped. If a thread function raised, the
    first such exception is raised again from :meth:`start`.
    """

    def __init__(self, lwps: int = DEFAULT_LWPS, max_threads: int = MAX_THREADS) -> None:
        if max_threads < 2:
            raise ValueError("at least two thread slots are required")
        self.max_threads = max_threads
        self.scheduler = Scheduler(lwps)
        self.threads: List[UThread] = [UThread(uid) for uid in range(max_threads)]
        self._slots_lock = threading.Lock()
        self._prev_id = -1
        self._reap_queue = ThreadQueue()
        self._reap_mtx = Mutex(self.scheduler)
        self._reap_cond = Condition(self.scheduler)
        self._reaper_id: Optional[int] = None
        self._started = False

    # ------------------------------------------------------------ start-up

    def start(self, func: Callable[..., Any], *args: Any) -> None:
        """Run ``func(*args)`` as the first thread and serve until all threads end."""
        if self._started:
            raise RuntimeError("runtime already started")
        self._started = True
        self.scheduler.on_return = self.exit

        with self._slots_lock:
            first = self.threads[0]
            first.state = ThreadState.TRANSITION
        self._launch(first, func, args, MAX_PRIO, detached=True)

        self._reaper_id = self._alloc()
        self._launch(self.threads[self._reaper_id], self._reaper, (), MAX_PRIO,
                     detached=True)

        self.scheduler.start_lwps()
        self.scheduler.run_lwp()
        if self.scheduler.failures:
            raise self.scheduler.failures[0][1]

    # ------------------------------------------------------ thread control

    def create(self, func: Callable[..., Any], *args: Any, prio: int = 0) -> int:
        """Create a runnable thread calling ``func(*args)``; return its id."""
        if not 0 <= prio <= MAX_PRIO:
            raise InvalidThreadError(f"priority {prio} out of range 0..{MAX_PRIO}")
        uid = self._alloc()
        self._launch(self.threads[uid], func, args, prio, detached=None)
        return uid

    def exit(self, status: Any = None) -> None:
        """End the calling thread with ``status``; never returns."""
        me = self._me("exit")
        self._reap_mtx.lock()
        lock = me.lock
        lock.acquire()
        me.state = ThreadState.ZOMBIE
        me.exit_value = status
        if me.detached:
            self._make_reapable(me, lock)
        else:
            waiter = me.waiters.dequeue()
            if waiter is not None:
                self.scheduler.wake(waiter)
            self._reap_mtx.unlock()
            self.scheduler.switch(None, False, lock)
        raise RuntimeError("returned to a dead thread")

    def join(self, uid: int) -> Any:
        """Wait for thread ``uid`` to end and return its exit value."""
        thread = self._slot(uid)
        me = self._me("join")
        if thread is me:
            raise InvalidThreadError("a thread cannot join itself")
        lock = thread.lock
        lock.acquire()
        if thread.state is ThreadState.NO_STATE:
            lock.release()
            raise NoSuchThreadError(f"thread {uid} does not exist")
        if thread.waiters or thread.detached:
            lock.release()
            raise InvalidThreadError(f"thread {uid} is not joinable")

        if thread.state is not ThreadState.ZOMBIE:
            me.state = ThreadState.WAIT
            # The worker queues us as the waiter and only then drops the lock,
            # so the exiting thread cannot wake us while we still run.
            self.scheduler.switch(thread.waiters, False, lock)
            lock.acquire()

        if thread.state is not ThreadState.ZOMBIE:
            lock.release()
            raise InvalidThreadError(f"thread {uid} woke a joiner without exiting")

        value = thread.exit_value
        thread.detached = True
        lock.release()

        self._reap_mtx.lock()
        lock.acquire()
        if thread.state is not ThreadState.ZOMBIE:
            lock.release()
            self._reap_mtx.unlock()
            return value
        self._make_reapable(thread, lock)
        return value

    def detach(self, uid: int) -> None:
        """Mark thread ``uid`` so that it is reaped as soon as it ends."""
        thread = self._slot(uid)
        lock = thread.lock
        lock.acquire()
        if thread.state is ThreadState.NO_STATE:
            lock.release()
            raise NoSuchThreadError(f"thread {uid} does not exist")
        if thread.waiters or thread.detached:
            lock.release()
            raise InvalidThreadError(f"thread {uid} is not joinable")
        thread.detached = True
        if thread.state is not ThreadState.ZOMBIE:
            lock.release()
            return
        # Respect the lock order: the reap mutex before the thread's lock.
        lock.release()
        self._reap_mtx.lock()
        lock.acquire()
        if thread.state is not ThreadState.ZOMBIE:
            lock.release()
            self._reap_mtx.unlock()
            return
        self._make_reapable(thread, lock)

    def current_id(self) -> int:
        """Return the id of the calling thread."""
        return self._me("current_id").uid

    def set_priority(self, uid: int, prio: int) -> None:
        """Change the priority of thread ``uid``."""
        if not 0 <= prio <= MAX_PRIO:
            raise InvalidThreadError(f"priority {prio} out of range 0..{MAX_PRIO}")
        self.scheduler.set_priority(self._slot(uid), prio)

    def yield_(self) -> None:
        """Give up the processor to another runnable thread."""
        self.scheduler.yield_()

    def mutex(self) -> Mutex:
        """Return a new mutex for this runtime's threads."""
        return Mutex(self.scheduler)

    def condition(self) -> Condition:
        """Return a new condition variable for this runtime's threads."""
        return Condition(self.scheduler)

    # ------------------------------------------------------------- private

    def _me(self, what: str) -> UThread:
        thread = self.scheduler.current()
        if thread is None:
            raise RuntimeError(f"{what} called outside a user thread")
        return thread

    def _slot(self, uid: int) -> UThread:
        if not 0 <= uid < self.max_threads:
            raise NoSuchThreadError(f"no thread slot {uid}")
        return self.threads[uid]

    def _alloc(self) -> int:
        with self._slots_lock:
            start = self._prev_id + 1
            if start >= self.max_threads:
                start = 0
            for uid in itertools.chain(range(start, self.max_threads), range(start)):
                thread = self.threads[uid]
                if thread.state is ThreadState.NO_STATE:
                    thread.state = ThreadState.TRANSITION
                    self._prev_id = uid
                    return uid
        raise ResourceError("no free thread slot")

    def _launch(self, thread: UThread, func: Callable[..., Any], args: tuple,
                prio: int, detached: Optional[bool]) -> None:
        thread.prio = -1
        thread.exit_value = None
        thread.waiters.clear()
        if detached is not None:
            thread.detached = detached
        self.scheduler.make_context(thread, func, *args)
        self.scheduler.start_on_runq(thread, prio)

    def _make_reapable(self, thread: UThread, lock: threading.Lock) -> None:
        # Called with the reap mutex and the thread's lock held; drops both.
        if thread.state is not ThreadState.ZOMBIE:
            lock.release()
            self._reap_mtx.unlock()
            return
        self._reap_queue.enqueue(thread)
        self._reap_cond.signal()
        if thread is self.scheduler.current():
            self._reap_mtx.unlock()
            # The worker releases the lock once this thread is off the processor.
            self.scheduler.switch(None, False, lock)
            raise RuntimeError("zombie thread returned from context switch")
        lock.release()
        self._reap_mtx.unlock()

    def _reaper(self) -> None:
        self._reap_mtx.lock()
        while True:
            while not self._reap_queue:
                self._reap_cond.wait(self._reap_mtx)
            while True:
                thread = self._reap_queue.dequeue()
                if thread is None:
                    break
                if thread.state is not ThreadState.ZOMBIE:
                    raise RuntimeError(f"reaping live thread {thread.uid}")
                # Wait until the thread is fully off its processor.
                with thread.lock:
                    pass
                thread.reset()
            alive = any(
                thread.state is not ThreadState.NO_STATE
                for thread in self.threads
                if thread.uid != self._reaper_id
            )
            if not alive:
                self.scheduler.stop()