"""Per-sender nonce reservations.

A nonce is reserved at prepare time and consumed when the delegated
transaction is broadcast. Reservation is serialized per sender, and the
tracker remembers a floor above the last reserved nonce so that two requests
prepared before either is broadcast get sequential nonces instead of both
reading the same pending count.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from kaiarelay.rpc.client import KaiaRpcClient
from kaiarelay.utils.locks import SenderLock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    """Nonce and gas price handed out for one signing round-trip."""

    sender: str
    nonce: int
    gas_price: int
    created_at: float


class NonceTracker:
    """Assigns nonces per sender and tracks open reservations."""

    def __init__(
        self,
        client: KaiaRpcClient,
        ttl: float = 300.0,
        lock_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.ttl = ttl
        self.lock_timeout = lock_timeout
        self._clock = clock
        self._floors: dict[str, int] = {}
        self._reserved: dict[str, dict[int, Reservation]] = {}
        self._completed_at: dict[str, float] = {}

    async def reserve(self, sender: str, gas_price: int) -> Reservation:
        """Reserve the next usable nonce for `sender`.

        Raises:
            LockTimeoutError: If another reservation holds the sender too long
            RpcError: If the pending transaction count cannot be read
        """
        key = sender.lower()
        async with SenderLock(sender, timeout=self.lock_timeout, operation="reserve_nonce"):
            self._sweep()
            pending = await self.client.get_transaction_count(sender, "pending")

            floor = self._floors.get(key, 0)
            if pending >= floor:
                # chain caught up; the floor no longer adds anything
                self._floors.pop(key, None)
                floor = 0

            nonce = max(pending, floor)
            reserved = self._reserved.setdefault(key, {})
            while nonce in reserved:
                nonce += 1

            reservation = Reservation(
                sender=sender, nonce=nonce, gas_price=gas_price, created_at=self._clock()
            )
            reserved[nonce] = reservation
            self._floors[key] = nonce + 1

        logger.debug(f"Reserved nonce {nonce} for {sender} (pending={pending})")
        return reservation

    def lookup(self, sender: str, nonce: Optional[int] = None) -> Optional[Reservation]:
        """Open reservation for `sender`; the lowest one when `nonce` is None."""
        reserved = self.reservations(sender)
        if not reserved:
            return None
        if nonce is None:
            return reserved[0]
        return next((r for r in reserved if r.nonce == nonce), None)

    def reservations(self, sender: str) -> list[Reservation]:
        """Open reservations for `sender`, lowest nonce first."""
        key = sender.lower()
        self._prune(key)
        reserved = self._reserved.get(key, {})
        return [reserved[n] for n in sorted(reserved)]

    def complete(self, sender: str, nonce: int) -> None:
        """The nonce was consumed by a broadcast.

        The floor stays above it for one TTL so a lagging pending count does
        not hand the nonce out again.
        """
        key = sender.lower()
        reserved = self._reserved.get(key, {})
        reserved.pop(nonce, None)
        if not reserved:
            self._reserved.pop(key, None)
        self._completed_at[key] = self._clock()

    def release(self, sender: str, nonce: int) -> None:
        """The nonce was not consumed; allow it to be handed out again."""
        key = sender.lower()
        reserved = self._reserved.get(key, {})
        reserved.pop(nonce, None)
        if not reserved:
            self._reserved.pop(key, None)
            self._floors.pop(key, None)
            self._completed_at.pop(key, None)
        elif key in self._floors:
            self._floors[key] = min(self._floors[key], nonce)
        logger.debug(f"Released nonce {nonce} for {sender}")

    def open_reservations(self, sender: str) -> list[int]:
        return [r.nonce for r in self.reservations(sender)]

    def tracked_senders(self) -> int:
        """Number of senders with any nonce state held in memory."""
        return len(set(self._reserved) | set(self._floors) | set(self._completed_at))

    def _sweep(self) -> None:
        for key in set(self._reserved) | set(self._floors) | set(self._completed_at):
            self._prune(key)

    def _prune(self, key: str) -> None:
        cutoff = self._clock() - self.ttl
        reserved = self._reserved.get(key)
        if reserved:
            expired = [n for n, r in reserved.items() if r.created_at < cutoff]
            for n in expired:
                del reserved[n]
            if expired:
                logger.debug(f"Expired {len(expired)} nonce reservation(s) for {key}")
            if reserved:
                return
        self._reserved.pop(key, None)

        # nothing outstanding: the floor only covers recent completions
        completed_at = self._completed_at.get(key)
        if completed_at is not None and completed_at > cutoff:
            return
        self._floors.pop(key, None)
        self._completed_at.pop(key, None)
