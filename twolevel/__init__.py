"""Two-level user threads with priorities, mutexes and condition variables, scheduled over a pool of worker LWPs."""

__version__ = "0.1.0"
__all__ = ["__version__"]