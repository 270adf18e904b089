"""Per-user mutual exclusion for drains within one process."""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from ..errors import DrainInProgressError

logger = logging.getLogger(__name__)


class UserLockRegistry:
    """Hands out one lock per user while anyone holds or waits on it.

    Drains for the same user serialize on that lock; different users never
    share one. Entries are dropped once the last holder or waiter leaves,
    so the registry only grows with concurrently active users.
    """

    def __init__(self):
        # user_id -> [lock, holders + waiters]
        self._locks: dict[str, list] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, user_id: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(user_id)
            if entry is None:
                entry = self._locks[user_id] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, user_id: str) -> None:
        with self._guard:
            entry = self._locks[user_id]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[user_id]

    @contextmanager
    def hold(self, user_id: str, timeout: float | None = None) -> Iterator[None]:
        """Hold the user's lock for the duration of the block.

        Args:
            user_id: Queue owner.
            timeout: Seconds to wait. None waits forever, 0 does not wait.

        Raises:
            DrainInProgressError: The lock was not acquired in time.
        """
        lock = self._checkout(user_id)
        try:
            if timeout is None:
                acquired = lock.acquire()
            elif timeout <= 0:
                acquired = lock.acquire(blocking=False)
            else:
                acquired = lock.acquire(timeout=timeout)

            if not acquired:
                logger.warning(f"Rejected concurrent drain for {user_id}")
                raise DrainInProgressError(user_id)

            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(user_id)

    def is_held(self, user_id: str) -> bool:
        with self._guard:
            entry = self._locks.get(user_id)
        return entry is not None and entry[0].locked()
