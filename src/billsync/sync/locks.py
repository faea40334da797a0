# ABOUTME: Per-household serialization of sync operations
# ABOUTME: Keyed asyncio locks that either wait or reject when a household is busy

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from billsync.exceptions import SyncInProgressError

logger = logging.getLogger(__name__)


class HouseholdLocks:
    """One asyncio.Lock per household id, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, household_id: str) -> asyncio.Lock:
        lock = self._locks.get(household_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[household_id] = lock
        return lock

    def is_busy(self, household_id: str) -> bool:
        return self._lock_for(household_id).locked()

    @asynccontextmanager
    async def hold(self, household_id: str, wait: bool = True) -> AsyncIterator[None]:
        """
        Hold the household's lock for the duration of the block.

        Args:
            household_id: Household to serialize on
            wait: Queue behind a running sync if True, otherwise raise

        Raises:
            SyncInProgressError: wait is False and the household is busy
        """
        lock = self._lock_for(household_id)
        if not wait and lock.locked():
            raise SyncInProgressError(f"A sync is already running for household {household_id}")

        if lock.locked():
            logger.debug(f"Waiting for running sync on household {household_id}")
        async with lock:
            yield
