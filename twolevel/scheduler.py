"""Priority scheduler that runs user threads on a pool of kernel-level workers.

Every user thread is backed by its own host thread, but only while a worker
(an "LWP") has handed the processor to it does that host thread run. A user
thread gives the processor back through :meth:`Scheduler.switch`. The worker
then finishes the bookkeeping the thread asked for and picks the next
runnable thread, so no thread is ever queued or woken while it is still
running.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, List, Optional, Set, Tuple

from twolevel.thread import (
    DEFAULT_LWPS,
    MAX_PRIO,
    InvalidThreadError,
    ThreadState,
    UThread,
)
from twolevel.waitqueue import ThreadQueue


class _ThreadExit(BaseException):
    """Unwinds the host thread of a user thread that will never run again."""


class _Lwp:
    """A worker's private state: the requests left by the thread it just ran."""

    def __init__(self) -> None:
        self.back = threading.Semaphore(0)
        self.queue: Optional[ThreadQueue] = None
        self.save_on_runq = False
        self.lock: Any = None

    def take_requests(self) -> Tuple[Optional[ThreadQueue], bool, Any]:
        requests = (self.queue, self.save_on_runq, self.lock)
        self.queue, self.save_on_runq, self.lock = None, False, None
        return requests


class _Context:
    """Execution context of one user thread."""

    def __init__(self, scheduler: "Scheduler", thread: UThread,
                 func: Callable[..., Any], args: Tuple[Any, ...]) -> None:
        self.thread = thread
        self.func = func
        self.args = args
        self.resume = threading.Semaphore(0)
        self.lwp: Optional[_Lwp] = None
        self.cancelled = False
        self.started = False
        self._host = threading.Thread(
            target=scheduler._bootstrap,
            args=(self,),
            name=f"uthread-{thread.uid}",
            daemon=True,
        )

    def dispatch(self) -> None:
        """Let the thread run, starting its host thread the first time."""
        if self.started:
            self.resume.release()
        else:
            self.started = True
            self._host.start()


class Scheduler:
    """Run queues by priority, plus the workers that run the threads on them.

    ``on_return`` may be set to a callable that is invoked, inside the user
    thread, with the value its function returned; it is expected to end the
    thread. Without it, a returning thread becomes a zombie holding its
    return value. Exceptions escaping a thread function are recorded in
    ``failures`` and the thread ends with the value None.
    """

    def __init__(self, lwps: int = DEFAULT_LWPS) -> None:
        if lwps < 1:
            raise ValueError("at least one LWP is required")
        self.lwps = lwps
        self.on_return: Optional[Callable[[Any], None]] = None
        self.failures: List[Tuple[UThread, Exception]] = []
        self._runq_lock = threading.Lock()
        self._wakeup = threading.Condition(self._runq_lock)
        self._runq = [ThreadQueue() for _ in range(MAX_PRIO + 1)]
        self._runq_size = 0
        self._parked = 0
        self._started = 0
        self._stopped = False
        self._deadlocked = False
        self._contexts: Set[_Context] = set()
        self._workers: List[threading.Thread] = []
        self._local = threading.local()

    # ------------------------------------------------------------ queries

    def current(self) -> Optional[UThread]:
        """Return the user thread calling this, or None outside user threads."""
        ctx = getattr(self._local, "context", None)
        return ctx.thread if ctx is not None else None

    def runnable_count(self) -> int:
        """Return how many threads wait on the run queues."""
        with self._runq_lock:
            return self._runq_size

    # ------------------------------------------------------ thread set-up

    def make_context(self, thread: UThread, func: Callable[..., Any], *args: Any) -> None:
        """Give ``thread`` a fresh context that will call ``func(*args)``."""
        ctx = _Context(self, thread, func, args)
        thread.context = ctx
        # A new thread starts with preemption off until it begins running.
        thread.no_preempt_count = 1
        with self._runq_lock:
            self._contexts.add(ctx)

    def start_on_runq(self, thread: UThread, prio: int) -> None:
        """Make a newly created thread runnable at priority ``prio``."""
        if not 0 <= prio <= MAX_PRIO:
            raise InvalidThreadError(f"priority {prio} out of range 0..{MAX_PRIO}")
        with self._runq_lock:
            if thread.state is not ThreadState.TRANSITION:
                raise RuntimeError("new thread not in TRANSITION state")
            thread.prio = prio
            thread.state = ThreadState.RUNNABLE
            self._runq_put(thread)

    def enqueue_runnable(self, thread: UThread) -> None:
        """Put ``thread`` on the run queue of its current priority."""
        with self._runq_lock:
            self._runq_put(thread)

    # ---------------------------------------------------- thread control

    def wake(self, thread: UThread) -> None:
        """Make a waiting thread runnable; threads not waiting are left alone."""
        if thread.state is ThreadState.NO_STATE:
            raise InvalidThreadError(f"thread {thread.uid} does not exist")
        with self._runq_lock:
            if thread.state is ThreadState.WAIT:
                thread.state = ThreadState.RUNNABLE
                self._runq_put(thread)

    def yield_(self) -> None:
        """Give up the processor, staying runnable."""
        self.switch(None, True, None)

    def set_priority(self, thread: UThread, prio: int) -> None:
        """Change the priority of a live thread, moving it between run queues.

        If the caller is a user thread and ``thread`` is runnable with a
        higher priority than the caller, the caller yields.
        """
        if not 0 <= prio <= MAX_PRIO:
            raise InvalidThreadError(f"priority {prio} out of range 0..{MAX_PRIO}")
        with self._runq_lock:
            if thread.state in (ThreadState.NO_STATE, ThreadState.TRANSITION,
                                ThreadState.ZOMBIE):
                raise InvalidThreadError(f"thread {thread.uid} is not active")
            if thread.prio == prio:
                return
            old = thread.prio
            thread.prio = prio
            runnable = thread.state is ThreadState.RUNNABLE
            if runnable:
                self._runq[old].remove(thread)
                self._runq[prio].enqueue(thread)
            caller = self.current()
            should_yield = caller is not None and runnable and prio > caller.prio
        if should_yield:
            self.yield_()

    def switch(self, queue: Optional[ThreadQueue], save_on_runq: bool, lock: Any) -> None:
        """Leave the processor to this thread's worker.

        Once off this thread, the worker puts it on ``queue`` if given, back
        on the run queue if ``save_on_runq`` is true (never for a zombie),
        and releases ``lock`` if given. Returns when the thread is next run;
        a zombie never returns.
        """
        ctx = getattr(self._local, "context", None)
        if ctx is None:
            raise RuntimeError("switch called outside a user thread")
        thread = ctx.thread
        self._runq_lock.acquire()
        zombie = thread.state is ThreadState.ZOMBIE
        leaving = zombie or ctx.cancelled
        lwp = ctx.lwp
        ctx.lwp = None
        lwp.queue = None if ctx.cancelled else queue
        lwp.save_on_runq = bool(save_on_runq) and not leaving
        lwp.lock = lock
        # The worker now owns the run-queue lock.
        lwp.back.release()
        if leaving:
            raise _ThreadExit
        ctx.resume.acquire()
        if ctx.cancelled:
            raise _ThreadExit
        if thread.state is ThreadState.ZOMBIE:
            raise RuntimeError("zombie thread returned from context switch")

    def stop(self) -> None:
        """Stop all workers; when called by a user thread, that thread ends too."""
        with self._runq_lock:
            self._stop_locked()
        if self.current() is not None:
            self.switch(None, False, None)

    # ----------------------------------------------------------- workers

    def start_lwps(self) -> None:
        """Start the workers other than the one that will call :meth:`run_lwp`."""
        if self._workers:
            raise RuntimeError("LWPs already started")
        for number in range(1, self.lwps):
            worker = threading.Thread(target=self._worker_main,
                                      name=f"lwp-{number}", daemon=True)
            self._workers.append(worker)
            worker.start()

    def run_lwp(self) -> None:
        """Turn the calling host thread into a worker until the scheduler stops.

        Raises RuntimeError if every worker ended up idle with nothing left
        to run, which means no thread can ever make progress again.
        """
        if self.current() is not None:
            raise RuntimeError("run_lwp called from a user thread")
        lwp = _Lwp()
        self._runq_lock.acquire()
        held = True
        try:
            self._started += 1
            while True:
                thread = self._pick()
                if thread is None:
                    break
                ctx: _Context = thread.context
                ctx.lwp = lwp
                self._runq_lock.release()
                held = False
                ctx.dispatch()
                lwp.back.acquire()
                held = True
                self._settle(thread, lwp)
        finally:
            if held:
                self._runq_lock.release()
        if self._deadlocked:
            raise RuntimeError("all LWPs parked -- stuck")

    # ----------------------------------------------------------- private

    def _worker_main(self) -> None:
        try:
            self.run_lwp()
        except RuntimeError:
            if not self._deadlocked:
                raise

    def _bootstrap(self, ctx: _Context) -> None:
        self._local.context = ctx
        thread = ctx.thread
        try:
            thread.no_preempt_count = 0
            try:
                result = ctx.func(*ctx.args)
            except Exception as exc:
                self.failures.append((thread, exc))
                result = None
            if self.on_return is not None:
                try:
                    self.on_return(result)
                except Exception as exc:
                    self.failures.append((thread, exc))
            thread.exit_value = result
            thread.state = ThreadState.ZOMBIE
            self.switch(None, False, None)
        except _ThreadExit:
            pass
        finally:
            with self._runq_lock:
                self._contexts.discard(ctx)

    def _runq_put(self, thread: UThread) -> None:
        self._runq[thread.prio].enqueue(thread)
        self._runq_size += 1
        if self._runq_size == 1:
            self._wakeup.notify()

    def _pick(self) -> Optional[UThread]:
        while True:
            if self._stopped:
                return None
            for queue in reversed(self._runq):
                thread = queue.dequeue()
                if thread is not None:
                    self._runq_size -= 1
                    thread.state = ThreadState.ON_CPU
                    return thread
            self._park()

    def _park(self) -> None:
        self._parked += 1
        if self._parked >= self.lwps and self._started >= self.lwps:
            self._deadlocked = True
            self._stop_locked()
        while self._runq_size == 0 and not self._stopped:
            self._wakeup.wait()
        self._parked -= 1

    def _settle(self, thread: UThread, lwp: _Lwp) -> None:
        queue, save_on_runq, lock = lwp.take_requests()
        if queue is not None:
            queue.enqueue(thread)
        if save_on_runq and thread.state is not ThreadState.ZOMBIE:
            thread.state = ThreadState.RUNNABLE
            self._runq_put(thread)
        if lock is not None:
            lock.release()

    def _stop_locked(self) -> None:
        self._stopped = True
        for ctx in list(self._contexts):
            ctx.cancelled = True
            if ctx.started and ctx.lwp is None:
                ctx.resume.release()
        self._wakeup.notify_all()