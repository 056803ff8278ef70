"""Mutexes and condition variables for user threads."""

from __future__ import annotations

import threading
from typing import Optional

from twolevel.scheduler import Scheduler
from twolevel.thread import ThreadState, UThread
from twolevel.waitqueue import ThreadQueue


def _caller(scheduler: Scheduler, what: str) -> UThread:
    thread = scheduler.current()
    if thread is None:
        raise RuntimeError(f"{what} called outside a user thread")
    return thread


class Mutex:
    """A blocking mutual-exclusion lock owned by one user thread at a time.

    On unlock, ownership passes straight to the longest-waiting thread, so a
    thread woken from :meth:`lock` already owns the mutex.
    """

    def __init__(self, scheduler: Scheduler) -> None:
        self.scheduler = scheduler
        self.owner: Optional[UThread] = None
        self.waiters = ThreadQueue()
        self._guard = threading.Lock()

    def lock(self) -> None:
        """Acquire the mutex, blocking while another thread holds it."""
        me = _caller(self.scheduler, "Mutex.lock")
        self._guard.acquire()
        if self.owner is None:
            self.owner = me
            self._guard.release()
            return
        me.state = ThreadState.WAIT
        # The worker queues this thread and drops the guard once it is off
        # this thread, so an unlock cannot wake it while it still runs.
        self.scheduler.switch(self.waiters, False, self._guard)
        if self.owner is not me:
            raise RuntimeError("woken from Mutex.lock without owning the mutex")

    def trylock(self) -> bool:
        """Acquire the mutex if it is free; return whether it was acquired."""
        me = _caller(self.scheduler, "Mutex.trylock")
        with self._guard:
            if self.owner is None:
                self.owner = me
                return True
            return False

    def unlock(self) -> None:
        """Release the mutex, handing it to the next waiter if there is one."""
        with self._guard:
            successor = self.waiters.dequeue()
            self.owner = successor
        if successor is not None:
            self.scheduler.wake(successor)

    def __enter__(self) -> "Mutex":
        self.lock()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unlock()

    def __repr__(self) -> str:
        owner = None if self.owner is None else self.owner.uid
        return f"Mutex(owner={owner}, waiters={len(self.waiters)})"


class Condition:
    """A condition variable used together with a :class:`Mutex`."""

    def __init__(self, scheduler: Scheduler) -> None:
        self.scheduler = scheduler
        self.waiters = ThreadQueue()
        self._guard = threading.Lock()

    def wait(self, mutex: Mutex) -> None:
        """Release ``mutex`` and block until signalled, then re-acquire it."""
        me = _caller(self.scheduler, "Condition.wait")
        self._guard.acquire()
        mutex.unlock()
        me.state = ThreadState.WAIT
        # Releasing the mutex and going to sleep happen as one step: the
        # guard is dropped only after the worker has queued this thread.
        self.scheduler.switch(self.waiters, False, self._guard)
        mutex.lock()
        if me.link is not None:
            raise RuntimeError("thread still queued after Condition.wait")

    def signal(self) -> None:
        """Wake one waiting thread, if any."""
        with self._guard:
            waiter = self.waiters.dequeue()
            if waiter is not None:
                self.scheduler.wake(waiter)

    def broadcast(self) -> None:
        """Wake every waiting thread."""
        with self._guard:
            while True:
                waiter = self.waiters.dequeue()
                if waiter is None:
                    break
                self.scheduler.wake(waiter)

    def __repr__(self) -> str:
        return f"Condition(waiters={len(self.waiters)})"