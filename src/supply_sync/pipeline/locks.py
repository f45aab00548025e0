"""Per-user locks serialising concurrent sync passes for the same user."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from supply_sync.core.exceptions import SyncInProgressError

logger = logging.getLogger(__name__)


class UserLockRegistry:
    """Hands out one lock per user id; different users never contend."""

    def __init__(self, timeout: float = 60.0) -> None:
        self._timeout = timeout
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, user_id: str, timeout: float | None = None) -> Iterator[None]:
        """Hold the user's lock for the duration of the block.

        Raises:
            SyncInProgressError: If the lock is not acquired within the timeout.
        """
        lock = self._lock_for(user_id)
        wait = self._timeout if timeout is None else timeout
        if not lock.acquire(timeout=wait):
            raise SyncInProgressError(f"Sync already running for user {user_id}")
        logger.debug("Acquired sync lock for %s", user_id)
        try:
            yield
        finally:
            lock.release()

    def is_locked(self, user_id: str) -> bool:
        return self._lock_for(user_id).locked()
