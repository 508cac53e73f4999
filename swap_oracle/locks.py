"""Per-swap locking.

Reconciliation for one swap can be triggered from the push channel and the
polling loop at the same time, and status updates are read-modify-write
against the secret store. Both need to be serialised per swap id, while
different swaps proceed independently.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog

logger = structlog.get_logger()


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""


class KeyedLock:
    """
    A registry of asyncio locks keyed by swap id.

    Locks are reference counted and dropped once nobody holds or waits for
    them, so the registry does not grow with every swap ever seen.
    """

    def __init__(self, name: str = "swap", timeout: Optional[float] = 30.0):
        self.name = name
        self.timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    async def _acquire(self, lock: asyncio.Lock, timeout: Optional[float]) -> bool:
        """
        Acquire ``lock`` within ``timeout``.

        The acquire runs as its own shielded task so a timeout or a
        cancellation can tell whether it actually got the lock; if it did
        the lock is either kept (timeout) or released again (cancellation).
        """
        if not timeout:
            await lock.acquire()
            return True

        acquire = asyncio.ensure_future(lock.acquire())
        try:
            await asyncio.wait_for(asyncio.shield(acquire), timeout=timeout)
        except asyncio.TimeoutError:
            if acquire.done() and not acquire.cancelled():
                return True
            acquire.cancel()
            return False
        except BaseException:
            if acquire.done() and not acquire.cancelled():
                lock.release()
            else:
                acquire.cancel()
            raise
        return True

    @asynccontextmanager
    async def hold(
        self, key: str, operation: str = "update", timeout: Optional[float] = None
    ) -> AsyncIterator[None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Example:
            async with locks.hold(swap_id, "reconcile"):
                record = await vault.get(swap_id)
                ...
        """
        timeout = self.timeout if timeout is None else timeout
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1

        try:
            if not await self._acquire(lock, timeout):
                logger.warning(
                    "Lock timeout",
                    lock=self.name,
                    key=key,
                    operation=operation,
                    timeout=timeout,
                )
                raise LockTimeoutError(
                    f"Could not acquire {self.name} lock for {key} within {timeout}s"
                )

            logger.debug("Lock acquired", lock=self.name, key=key, operation=operation)
            try:
                yield
            finally:
                lock.release()
                logger.debug("Lock released", lock=self.name, key=key, operation=operation)
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]
