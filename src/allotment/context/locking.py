from __future__ import annotations

import threading
import time

from contextlib import contextmanager
from weakref import WeakValueDictionary

from allotment.modules import errors


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Iterable
    from collections.abc import Iterator


class ResourceLock:
    """ Re-entrant lock of a single resource. """

    __slots__ = ('key', 'lock', '__weakref__')

    def __init__(self, key: str):
        self.key = key
        self.lock = threading.RLock()

    def acquire(self, timeout: float) -> bool:
        return self.lock.acquire(timeout=max(timeout, 0))

    def release(self) -> None:
        self.lock.release()


class LockManager:
    """ Hands out one lock per resource key to the threads of this process.

    Locks live as long as somebody holds or waits on them, after which they
    are dropped from the arena. Several keys are always acquired in sorted
    order, so two threads asking for overlapping key sets cannot deadlock.

    The lock manager is a cached service of the context, so all allocators
    of a context share it::

        with allocator.lock_manager.hold(['a', 'b'], timeout=5.0):
            ...

    """

    def __init__(self) -> None:
        self.thread_lock = threading.Lock()
        self.locks: WeakValueDictionary[str, ResourceLock]
        self.locks = WeakValueDictionary()

    def lock_for(self, key: str) -> ResourceLock:
        with self.thread_lock:
            lock = self.locks.get(key)

            if lock is None:
                lock = self.locks[key] = ResourceLock(key)

            return lock

    @contextmanager
    def hold(
        self,
        keys: Iterable[str],
        timeout: float | None = None
    ) -> Iterator[None]:
        """ Holds the locks of all given keys for the duration of the with
        block. Raises :class:`~allotment.modules.errors.LockTimeout` if the
        locks could not be acquired within ``timeout`` seconds (in total).

        """
        keys = sorted(set(keys))
        deadline = None if timeout is None else time.monotonic() + timeout
        held: list[ResourceLock] = []

        try:
            for key in keys:
                lock = self.lock_for(key)

                if deadline is None:
                    lock.lock.acquire()
                elif not lock.acquire(deadline - time.monotonic()):
                    raise errors.LockTimeout(keys)

                held.append(lock)

            yield

        finally:
            for lock in reversed(held):
                lock.release()
