"""Per-key async mutual exclusion for the payment write path."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List

logger = logging.getLogger(__name__)


class KeyedLocks:
    """A registry of ``asyncio.Lock`` objects keyed by string.

    Locks are created on first use and dropped once no coroutine holds or
    waits on them, so the registry only ever contains contended keys.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refcounts: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _acquire_ref(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
            self._refcounts[key] = 0
        self._refcounts[key] += 1
        return lock

    def _release_ref(self, key: str) -> None:
        self._refcounts[key] -= 1
        if self._refcounts[key] == 0:
            del self._refcounts[key]
            del self._locks[key]

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        """Hold the locks for all ``keys`` at once.

        Keys are de-duplicated and taken in sorted order so two callers
        asking for overlapping sets cannot deadlock.
        """
        ordered: List[str] = sorted(set(k for k in keys if k))
        acquired: List[str] = []
        try:
            for key in ordered:
                lock = self._acquire_ref(key)
                try:
                    await lock.acquire()
                except BaseException:
                    self._release_ref(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._release_ref(key)


def payment_lock_keys(external_request_ref: str, external_transaction_ref=None) -> Iterable[str]:
    keys = [f"request:{external_request_ref}"]
    if external_transaction_ref:
        keys.append(f"transaction:{external_transaction_ref}")
    return keys
