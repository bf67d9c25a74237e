"""Concurrency control for per-sender nonce assignment.

Provides per-address locking so that two requests for the same sender never
read the pending nonce at the same time. A sender's lock is dropped from the
registry once nobody holds or waits for it.
"""

import asyncio
import logging
from typing import Optional

from kaiarelay.errors import LockTimeoutError

logger = logging.getLogger(__name__)

# Global lock registry: lowercase address -> asyncio.Lock
_sender_locks: dict[str, asyncio.Lock] = {}
# Number of SenderLock contexts holding or waiting for each lock
_lock_users: dict[str, int] = {}
_registry_lock = asyncio.Lock()


async def get_sender_lock(address: str) -> asyncio.Lock:
    """Get or create the lock for a sender address.

    Addresses are compared case-insensitively.
    """
    key = address.lower()
    async with _registry_lock:
        if key not in _sender_locks:
            _sender_locks[key] = asyncio.Lock()
        return _sender_locks[key]


def active_sender_locks() -> int:
    """Number of senders currently in the lock registry."""
    return len(_sender_locks)


def _checkin(key: str) -> None:
    remaining = _lock_users.get(key, 0) - 1
    if remaining > 0:
        _lock_users[key] = remaining
        return

    _lock_users.pop(key, None)
    lock = _sender_locks.get(key)
    if lock is not None and not lock.locked():
        del _sender_locks[key]


class SenderLock:
    """Context manager for exclusive access to a sender's nonce state.

    Example:
        async with SenderLock(address, operation="reserve_nonce"):
            pending = await client.get_transaction_count(address)
            ...
    """

    def __init__(
        self,
        address: str,
        timeout: Optional[float] = 30.0,
        operation: str = "nonce_operation",
    ):
        self.address = address
        self.timeout = timeout
        self.operation = operation
        self._key = address.lower()
        self._lock: Optional[asyncio.Lock] = None
        self._acquired = False

    async def __aenter__(self) -> "SenderLock":
        self._lock = await get_sender_lock(self.address)
        _lock_users[self._key] = _lock_users.get(self._key, 0) + 1

        try:
            if self.timeout:
                await asyncio.wait_for(self._lock.acquire(), timeout=self.timeout)
            else:
                await self._lock.acquire()
            self._acquired = True
        except asyncio.TimeoutError:
            _checkin(self._key)
            logger.warning(
                f"Lock timeout for sender {self.address} after {self.timeout}s: {self.operation}"
            )
            raise LockTimeoutError(
                f"Could not acquire lock for sender {self.address} within {self.timeout}s"
            )
        except BaseException:
            _checkin(self._key)
            raise

        logger.debug(f"Lock acquired for sender {self.address}: {self.operation}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._acquired and self._lock:
            self._lock.release()
            self._acquired = False
            _checkin(self._key)
            logger.debug(f"Lock released for sender {self.address}: {self.operation}")
        return False


def clear_sender_locks() -> None:
    """Clear all sender locks (useful for testing)."""
    _sender_locks.clear()
    _lock_users.clear()
