"""Demonstration workload: threads taking turns under a mutex and condition.

A set of worker threads each print a greeting, spin for a while (shuffling
priorities as they go), and then wait until it is their turn to advance a
shared counter. Two detached threads stir up priorities in the background.
The first thread joins every worker in order and reports its exit value.
"""

from __future__ import annotations

import argparse
import random
import sys
import threading
from typing import List, Optional, Sequence, TextIO

from twolevel.runtime import Runtime
from twolevel.thread import MAX_PRIO, MAX_THREADS, UThreadError

NUM_THREADS = 100
"""Number of turn-taking threads created by default."""

ROUNDS = 10
"""Number of turns each thread takes by default."""

_SPIN_LIMIT = 200
_STRESS_ITERATIONS = 1000
# The first thread, the reaper and the two background threads need slots too.
_RESERVED_SLOTS = 4


def _try_set_priority(runtime: Runtime, uid: int, prio: int) -> None:
    """Change a priority, ignoring threads that are gone or not yet running."""
    try:
        runtime.set_priority(uid, prio)
    except UThreadError:
        pass


def run_demo(num_threads: int = NUM_THREADS, rounds: int = ROUNDS,
             out: Optional[TextIO] = None) -> List[int]:
    """Run the workload and return the exit values of the workers, in join order."""
    if num_threads < 1:
        raise ValueError("at least one thread is required")
    if num_threads > MAX_THREADS - _RESERVED_SLOTS:
        raise ValueError(
            f"at most {MAX_THREADS - _RESERVED_SLOTS} threads are supported")
    if rounds < 1:
        raise ValueError("at least one round is required")
    stream = sys.stdout if out is None else out

    runtime = Runtime()
    mtx = runtime.mutex()
    cond = runtime.condition()
    background = runtime.mutex()
    write_lock = threading.Lock()
    results: List[int] = []
    turn = 0

    def emit(text: str) -> None:
        with write_lock:
            stream.write(text)

    def tester(index: int) -> int:
        nonlocal turn
        me = runtime.current_id()
        rng = random.Random(me)
        for i in range(rounds):
            emit(f"thread {me}: hello! ({i})\n")
            runtime.yield_()

            k = 100000000
            for j in range(rng.randrange(_SPIN_LIMIT)):
                if k % 101 == 0:
                    _try_set_priority(runtime, j % num_threads, j % MAX_PRIO)
                k //= 3

            with mtx:
                runtime.yield_()
                while turn != index:
                    cond.wait(mtx)
                turn += 1
                if turn == num_threads:
                    turn = 0
                cond.broadcast()

        emit(f"thread {me} exiting.\n")
        return index

    def different_tester(_tag: int) -> int:
        runtime.yield_()
        for j in range(100):
            _try_set_priority(runtime, j % num_threads, j % MAX_PRIO)
        for i in range(10):
            with background:
                if i % 4 == 0:
                    _try_set_priority(runtime, runtime.current_id(), i % MAX_PRIO)
        runtime.yield_()
        for j in range(_STRESS_ITERATIONS):
            _try_set_priority(runtime, j % num_threads, j % MAX_PRIO)
        return 0

    def first_thread() -> None:
        ids = [runtime.create(tester, i) for i in range(num_threads)]
        _try_set_priority(runtime, ids[0], 2)
        for tag in (0, 1):
            uid = runtime.create(different_tester, tag, prio=1)
            runtime.detach(uid)

        for uid in ids:
            value = runtime.join(uid)
            emit(f"joined with thread {uid}, exited {value}.\n")
            results.append(value)
            with mtx:
                cond.signal()

        runtime.exit(0)

    runtime.start(first_thread)
    return results


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command-line entry point: run the demonstration workload."""
    parser = argparse.ArgumentParser(
        prog="twolevel-demo",
        description="Run turn-taking user threads on a pool of workers.")
    parser.add_argument("--threads", type=int, default=NUM_THREADS,
                        help="number of turn-taking threads")
    parser.add_argument("--rounds", type=int, default=ROUNDS,
                        help="turns taken by each thread")
    args = parser.parse_args(argv)
    try:
        run_demo(args.threads, args.rounds, sys.stdout)
    except ValueError as exc:
        parser.error(str(exc))
    sys.stdout.flush()
    print("mthreads: no more threads.", file=sys.stderr)
    print("mthreads: bye!", file=sys.stderr)
    return 0