"""Thread records, states, limits and errors shared by the runtime."""

from __future__ import annotations

import errno
import threading
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Optional

from twolevel.waitqueue import ThreadQueue

MAX_PRIO = 7
"""Highest thread priority; priorities run from 0 to MAX_PRIO."""

MAX_THREADS = 512
"""Number of thread slots in a runtime by default."""

STACK_SIZE = 128 * 1024
"""Nominal stack size of a user thread."""

DEFAULT_LWPS = 8
"""Number of kernel-level workers that run user threads by default."""


class ThreadState(Enum):
    """Life-cycle state of a user thread."""

    NO_STATE = auto()
    ON_CPU = auto()
    RUNNABLE = auto()
    WAIT = auto()
    ZOMBIE = auto()
    TRANSITION = auto()


class UThreadError(Exception):
    """Base class of errors reported by thread operations."""

    errno: int = 0


class NoSuchThreadError(UThreadError):
    """The thread id does not name a thread slot."""

    errno = errno.ESRCH


class InvalidThreadError(UThreadError):
    """The thread or argument is not valid for the requested operation."""

    errno = errno.EINVAL


class ResourceError(UThreadError):
    """No thread slot or stack could be obtained."""

    errno = errno.EAGAIN


@dataclass(eq=False)
class UThread:
    """One user-level thread slot.

    ``link`` names the queue the thread currently sits on, if any; a thread
    is on at most one queue at a time.
    """

    uid: int
    state: ThreadState = ThreadState.NO_STATE
    prio: int = -1
    exit_value: Any = None
    detached: bool = False
    waiters: ThreadQueue = field(default_factory=ThreadQueue)
    no_preempt_count: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)
    context: Any = None
    link: Optional[ThreadQueue] = None

    def reset(self) -> None:
        """Release the thread's resources and return the slot to the free state."""
        self.context = None
        self.detached = False
        self.exit_value = None
        self.waiters.clear()
        self.lock = threading.Lock()
        self.no_preempt_count = 0
        self.state = ThreadState.NO_STATE

    def __repr__(self) -> str:
        return f"UThread(uid={self.uid}, state={self.state.name}, prio={self.prio})"