"""Per-partition write locks.

Two writes touching the same partition must not interleave their
read-recompute-persist sequences, or one of them persists values computed
from rows the other has already changed. Writes on different partitions run
in parallel.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from rapengine.core.types import PartitionKey


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class PartitionLocks:
    """One lock per partition key, alive only while a writer holds or waits for it."""

    def __init__(self) -> None:
        self._locks: dict[PartitionKey, _Entry] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: PartitionKey) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _Entry()
            entry.users += 1
            return entry.lock

    def _checkin(self, key: PartitionKey) -> None:
        with self._guard:
            entry = self._locks[key]
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, keys: Iterable[PartitionKey]) -> Iterator[list[PartitionKey]]:
        """Acquire the locks of ``keys`` for the duration of the block.

        Locks are taken in a stable order so two writers sharing several
        partitions cannot deadlock.
        """
        ordered = sorted(set(keys), key=lambda k: (k.entity_type, str(k.attribute), repr(k.value)))
        acquired: list[tuple[PartitionKey, threading.Lock]] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                try:
                    lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append((key, lock))
            yield ordered
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)

    def __len__(self) -> int:
        """Number of partitions currently held or waited for."""
        return len(self._locks)
