"""Per-group mutual exclusion for read-modify-write on the store."""

import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class GroupLocks:
    """
    Registry of one lock per group id.

    Holding the locks for a set of group ids serializes every other holder of
    any of those ids, while work on disjoint ids proceeds in parallel. Ids are
    always acquired in sorted order so overlapping sets cannot deadlock.
    """

    def __init__(self):
        """Initialize an empty registry."""
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def lock_for(self, group_id: str) -> threading.RLock:
        """Get (creating if needed) the lock for a group id."""
        with self._guard:
            lock = self._locks.get(group_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[group_id] = lock
            return lock

    @contextmanager
    def hold(self, group_ids: Iterable[str]) -> Iterator[list[str]]:
        """
        Hold the locks of several group ids for the duration of a block.

        Args:
            group_ids: Ids to lock; duplicates are ignored

        Yields:
            The ids actually locked, in acquisition order
        """
        ordered = sorted(set(group_ids))
        acquired: list[threading.RLock] = []
        try:
            for group_id in ordered:
                lock = self.lock_for(group_id)
                lock.acquire()
                acquired.append(lock)
            logger.debug(f"Holding group locks: {ordered}")
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
