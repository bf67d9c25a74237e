"""Tests for sender locks and nonce reservations."""

import asyncio

import pytest

from kaiarelay.delegation.nonces import NonceTracker
from kaiarelay.errors import LockTimeoutError
from kaiarelay.utils.locks import (
    SenderLock,
    active_sender_locks,
    clear_sender_locks,
    get_sender_lock,
)

from tests.conftest import OTHER, SENDER


class TestSenderLocks:
    """Tests for the per-sender lock registry."""

    @pytest.mark.asyncio
    async def test_same_sender_same_lock(self):
        """Addresses are compared case-insensitively."""
        lock1 = await get_sender_lock(SENDER)
        lock2 = await get_sender_lock(SENDER.lower())

        assert lock1 is lock2

    @pytest.mark.asyncio
    async def test_different_senders_get_different_locks(self):
        assert await get_sender_lock(SENDER) is not await get_sender_lock(OTHER)

    @pytest.mark.asyncio
    async def test_lock_prevents_concurrent_access(self):
        results = []

        async def task(name, delay):
            async with SenderLock(SENDER, timeout=10.0, operation=f"task_{name}"):
                results.append(f"{name}_start")
                await asyncio.sleep(delay)
                results.append(f"{name}_end")

        await asyncio.gather(task("A", 0.05), task("B", 0.05))

        assert results in [
            ["A_start", "A_end", "B_start", "B_end"],
            ["B_start", "B_end", "A_start", "A_end"],
        ]

    @pytest.mark.asyncio
    async def test_lock_timeout_raises_error(self):
        async def hold_lock():
            async with SenderLock(SENDER, timeout=5.0):
                await asyncio.sleep(0.5)

        hold_task = asyncio.create_task(hold_lock())
        await asyncio.sleep(0.05)

        with pytest.raises(LockTimeoutError):
            async with SenderLock(SENDER, timeout=0.1):
                pass

        await hold_task
        assert active_sender_locks() == 0

    @pytest.mark.asyncio
    async def test_idle_lock_is_evicted(self):
        async with SenderLock(SENDER, operation="test"):
            lock = await get_sender_lock(SENDER)
            assert lock.locked()
            assert active_sender_locks() == 1

        assert not lock.locked()
        assert active_sender_locks() == 0

    @pytest.mark.asyncio
    async def test_lock_survives_while_waited_on(self):
        """The lock stays registered until the last waiter has released it."""
        order = []

        async def holder():
            async with SenderLock(SENDER):
                order.append("holder")
                await asyncio.sleep(0.05)

        async def waiter():
            async with SenderLock(SENDER):
                order.append("waiter")
                assert active_sender_locks() == 1

        first = asyncio.create_task(holder())
        await asyncio.sleep(0.01)
        await asyncio.gather(first, waiter())

        assert order == ["holder", "waiter"]
        assert active_sender_locks() == 0

    @pytest.mark.asyncio
    async def test_many_senders_leave_no_locks(self):
        for i in range(50):
            async with SenderLock(f"0x{i + 1:040x}"):
                pass

        assert active_sender_locks() == 0

    @pytest.mark.asyncio
    async def test_clear_sender_locks(self):
        old = await get_sender_lock(SENDER)
        clear_sender_locks()

        assert await get_sender_lock(SENDER) is not old


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestNonceTracker:
    """Tests for NonceTracker."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def tracker(self, rpc_client, clock):
        return NonceTracker(rpc_client, ttl=60.0, clock=clock)

    @pytest.mark.asyncio
    async def test_starts_at_pending_count(self, tracker, mock_node):
        mock_node.used_nonces[SENDER.lower()] = {0, 1, 2}

        reservation = await tracker.reserve(SENDER, gas_price=7)

        assert reservation.nonce == 3
        assert reservation.gas_price == 7
        assert mock_node.methods_called("getTransactionCount")

    @pytest.mark.asyncio
    async def test_sequential_reservations(self, tracker):
        """Reservations made before any broadcast get consecutive nonces."""
        first = await tracker.reserve(SENDER, 1)
        second = await tracker.reserve(SENDER, 1)

        assert (first.nonce, second.nonce) == (0, 1)

    @pytest.mark.asyncio
    async def test_concurrent_reservations(self, tracker):
        reservations = await asyncio.gather(*(tracker.reserve(SENDER, 1) for _ in range(5)))
        assert sorted(r.nonce for r in reservations) == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_senders_are_independent(self, tracker):
        await tracker.reserve(SENDER, 1)
        assert (await tracker.reserve(OTHER, 1)).nonce == 0

    @pytest.mark.asyncio
    async def test_lookup(self, tracker):
        await tracker.reserve(SENDER, 1)
        second = await tracker.reserve(SENDER, 2)

        assert tracker.lookup(SENDER).nonce == 0
        assert tracker.lookup(SENDER.lower(), 1) == second
        assert tracker.lookup(SENDER, 5) is None
        assert tracker.lookup(OTHER) is None

    @pytest.mark.asyncio
    async def test_release_allows_reuse(self, tracker):
        reservation = await tracker.reserve(SENDER, 1)
        tracker.release(SENDER, reservation.nonce)

        assert (await tracker.reserve(SENDER, 1)).nonce == reservation.nonce

    @pytest.mark.asyncio
    async def test_release_fills_gap(self, tracker):
        first = await tracker.reserve(SENDER, 1)
        await tracker.reserve(SENDER, 1)
        tracker.release(SENDER, first.nonce)

        assert (await tracker.reserve(SENDER, 1)).nonce == 0
        assert (await tracker.reserve(SENDER, 1)).nonce == 2

    @pytest.mark.asyncio
    async def test_complete_keeps_floor(self, tracker):
        """A consumed nonce is not handed out again even if the node lags."""
        reservation = await tracker.reserve(SENDER, 1)
        tracker.complete(SENDER, reservation.nonce)

        assert tracker.lookup(SENDER) is None
        assert (await tracker.reserve(SENDER, 1)).nonce == 1

    @pytest.mark.asyncio
    async def test_expired_reservations(self, tracker, clock):
        await tracker.reserve(SENDER, 1)
        clock.now += 61

        assert tracker.lookup(SENDER) is None
        assert tracker.open_reservations(SENDER) == []
        assert (await tracker.reserve(SENDER, 1)).nonce == 0

    @pytest.mark.asyncio
    async def test_floor_expires_after_dropped_transaction(self, tracker, clock):
        """A completed nonce the chain never saw stops blocking after the TTL."""
        reservation = await tracker.reserve(SENDER, 1)
        tracker.complete(SENDER, reservation.nonce)
        clock.now += 61

        assert (await tracker.reserve(SENDER, 1)).nonce == 0

    @pytest.mark.asyncio
    async def test_floor_with_zero_ttl(self, rpc_client, clock):
        tracker = NonceTracker(rpc_client, ttl=0.0, clock=clock)

        reservation = await tracker.reserve(SENDER, 1)
        tracker.complete(SENDER, reservation.nonce)

        assert (await tracker.reserve(SENDER, 1)).nonce == 0

    @pytest.mark.asyncio
    async def test_chain_ahead_of_floor(self, tracker, mock_node):
        reservation = await tracker.reserve(SENDER, 1)
        tracker.complete(SENDER, reservation.nonce)
        mock_node.used_nonces[SENDER.lower()] = {0, 1, 2}

        assert (await tracker.reserve(SENDER, 1)).nonce == 3

    @pytest.mark.asyncio
    async def test_idle_senders_are_forgotten(self, tracker, clock):
        senders = [f"0x{i + 1:040x}" for i in range(50)]
        for sender in senders:
            reservation = await tracker.reserve(sender, 1)
            tracker.complete(sender, reservation.nonce)

        assert tracker.tracked_senders() == 50
        assert active_sender_locks() == 0

        clock.now += 61
        await tracker.reserve(SENDER, 1)

        assert tracker.tracked_senders() == 1

    @pytest.mark.asyncio
    async def test_release_forgets_sender(self, tracker):
        reservation = await tracker.reserve(SENDER, 1)
        tracker.release(SENDER, reservation.nonce)

        assert tracker.tracked_senders() == 0
