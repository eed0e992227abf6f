"""Per-request exclusivity within one worker process.

Two jobs referencing the same request are serialized here before they touch
the chain. This only covers jobs running in the same process; across
processes the durable episode owner on the request row applies.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


class RequestLocks:
    """Registry of asyncio locks keyed by (kind, request id)."""

    def __init__(self):
        self._locks: dict[tuple[str, int], asyncio.Lock] = {}
        self._users: dict[tuple[str, int], int] = {}
        self._registry_lock = asyncio.Lock()

    async def get_lock(self, kind: str, request_id: int) -> asyncio.Lock:
        """Get or create the lock for one request and register interest in it."""
        async with self._registry_lock:
            key = (kind, request_id)
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            self._users[key] = self._users.get(key, 0) + 1
            return self._locks[key]

    @asynccontextmanager
    async def hold(
        self,
        kind: str,
        request_id: int,
        timeout: Optional[float] = None,
        operation: str = "process",
    ) -> AsyncIterator[None]:
        """Hold the request lock for the duration of the block.

        Args:
            kind: Entity kind ("withdrawal", "broadcast")
            request_id: Internal request id
            timeout: Maximum time to wait (None = wait forever)
            operation: Description for logging

        Raises:
            LockTimeoutError: if the lock was not acquired in time
        """
        key = (kind, request_id)
        lock = await self.get_lock(kind, request_id)
        acquired = False

        try:
            if timeout:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            else:
                await lock.acquire()
            acquired = True
            logger.debug(f"Lock acquired for {kind} {request_id}: {operation}")
            yield

        except asyncio.TimeoutError:
            if acquired:
                raise
            logger.warning(f"Lock timeout for {kind} {request_id} after {timeout}s: {operation}")
            raise LockTimeoutError(
                f"Could not acquire lock for {kind} {request_id} within {timeout}s"
            )

        finally:
            if acquired:
                lock.release()
                logger.debug(f"Lock released for {kind} {request_id}: {operation}")
            await self._discard(key)

    async def _discard(self, key: tuple[str, int]) -> None:
        """Drop the lock once no coroutine is interested in it."""
        async with self._registry_lock:
            if key not in self._users:
                return
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)

    def clear(self) -> None:
        """Clear all locks (useful for testing)."""
        self._locks.clear()
        self._users.clear()
