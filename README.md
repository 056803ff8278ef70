# twolevel

`twolevel` is a two-level threading library. It runs many user threads on a
small, fixed pool of worker LWPs (lightweight processes). Each user thread
has a priority from 0 to 7. A free worker always takes the highest-priority
runnable thread, and threads of equal priority run in first-in first-out
order. Threads can be joined or detached. A reaper thread frees the slots of
threads that have finished.

## Modules

- `twolevel.runtime.Runtime` creates threads and ends them (`exit`). It also
  joins and detaches threads, changes priorities, yields, and makes mutexes
  and condition variables (`mutex()`, `condition()`).
- `twolevel.sync.Mutex` is a blocking mutex. On unlock it hands ownership
  directly to the thread that has waited longest. It can be used in a `with`
  statement, and it also has `lock`, `trylock` and `unlock`.
- `twolevel.sync.Condition` is a condition variable. It has `wait(mutex)`,
  `signal` and `broadcast`.
- `twolevel.scheduler.Scheduler` holds the per-priority run queues and the
  worker loop (`start_lwps`, `run_lwp`). It provides `switch`, `yield_`,
  `wake`, `set_priority` and `runnable_count`.
- `twolevel.waitqueue.ThreadQueue` is a FIFO of threads. Mutex, condition
  and join waiters are kept in it, and so is the run queue.
- `twolevel.thread` defines:
  - the `UThread` record and the `ThreadState` enum;
  - the limits `MAX_PRIO`, `MAX_THREADS`, `STACK_SIZE` and `DEFAULT_LWPS`;
  - the errors `UThreadError`, `NoSuchThreadError`, `InvalidThreadError`
    and `ResourceError`. Each error has an `errno` attribute.
- `twolevel.demo` holds the demonstration workload (`run_demo`, `main`).

## Installing

```
pip install .
```

## Using it

Create a `Runtime` and pass `start` the function that the first thread will
run. `start` turns the calling thread into one of the workers. It returns
once every user thread has finished and been reaped. If a thread function
raised an exception, `start` raises the first such exception again.

```python
from twolevel.runtime import Runtime

rt = Runtime(lwps=4, max_threads=64)

def worker(n):
    return n * n

def first():
    ids = [rt.create(worker, n, prio=3) for n in range(10)]
    print([rt.join(uid) for uid in ids])

rt.start(first)
```

The `Runtime` methods:

- `create(func, *args, prio=0)` returns the new thread's id.
- `join(uid)` waits for that thread to end and returns its exit value. The
  exit value is what its function returned, or the status it gave to `exit`.
- `detach(uid)` lets a thread be reclaimed without a join. If the thread has
  already finished, it is reclaimed at once.
- `exit(status)` ends the calling thread with the given status.
- `current_id()` returns the caller's own id.
- `set_priority(uid, prio)` moves a live thread to another run queue. If
  that thread is runnable and now has a higher priority than the caller, the
  caller yields.
- `yield_()` gives the worker to another runnable thread.

Errors are raised as exceptions. All of them derive from `UThreadError`.

- `NoSuchThreadError`: an id outside the thread table, or a join or detach
  of an empty slot.
- `InvalidThreadError`:
  - a priority outside 0 to 7;
  - joining or detaching a thread that is detached, or that another thread
    is already joining;
  - a thread joining itself;
  - changing the priority of a thread that has not started or has already
    ended.
- `ResourceError`: every thread slot is in use.

Mutexes work as context managers:

```python
lock = rt.mutex()
ready = rt.condition()
items = []

def consumer():
    with lock:
        while not items:
            ready.wait(lock)
        return items.pop()

def producer(value):
    with lock:
        items.append(value)
        ready.signal()
```

Most thread operations raise `RuntimeError` when called from outside a user
thread: `exit`, `join`, `current_id`, `Mutex.lock`, `Mutex.trylock` and
`Condition.wait`.

## Scheduling limits

- Threads are not preempted on a timer. A thread gives up its worker only
  when it does one of the following:
  - yields;
  - blocks on a mutex, a condition or a join;
  - ends;
  - raises another runnable thread above its own priority.

  A thread that spins without doing any of these keeps its worker.
- Each user thread is backed by its own host thread. Only the threads that
  a worker has dispatched actually run.
- If every worker is idle while threads remain blocked, no thread can ever
  run again. In that case `start` raises `RuntimeError` ("all LWPs parked --
  stuck").

## Demo

The demo starts a number of threads that take turns in a fixed order,
guarded by a mutex and a condition variable. While they run, two detached
threads keep shuffling priorities. The first thread joins each worker in
order and prints its exit value.

```
twolevel-demo
twolevel-demo --threads 20 --rounds 3
```

From Python, `twolevel.demo.run_demo(num_threads, rounds, out)` runs the same
workload. It returns the workers' exit values in join order.

## Running the tests

```
pip install .[test]
pytest
```