# calsync/services/locks.py
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from calsync.core.config import settings

logger = logging.getLogger(__name__)


class SyncLockTimeout(Exception):
    """Waiting for another sync of the same account took too long."""

    def __init__(self, account_id: int, timeout: float):
        self.account_id = account_id
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout}s waiting for sync lock on account {account_id}"
        )


class AccountLockRegistry:
    """
    One ``asyncio.Lock`` per calendar account.

    Overlapping passes for the same account queue behind each other; the wait
    is bounded so a hung pass cannot block the account forever.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = settings.SYNC_LOCK_TIMEOUT if timeout is None else timeout
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock_for(self, account_id: int) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    def is_locked(self, account_id: int) -> bool:
        lock = self._locks.get(account_id)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, account_id: int) -> AsyncIterator[None]:
        lock = self._lock_for(account_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Sync lock wait timed out for account {account_id}")
            raise SyncLockTimeout(account_id, self.timeout)
        try:
            yield
        finally:
            lock.release()


# Shared by the webhook, manual and bulk sync paths
account_locks = AccountLockRegistry()
