"""
Creation Guard Tests.

============================================================
PURPOSE
============================================================
One creation per requester at a time, within active and daily
quotas.

============================================================
"""

import asyncio
from datetime import timedelta

import pytest

from dispatch_engine.config import CreationConfig
from dispatch_engine.creation_guard import (
    CreationGuard,
    MAX_ACTIVE_ORDERS_EXCEEDED,
    DAILY_LIMIT_EXCEEDED,
)
from dispatch_engine.locks import InMemoryLockProvider
from dispatch_engine.types import (
    Order,
    OrderStatus,
    OrderTiming,
    CreationInProgress,
    QuotaExceeded,
)

from conftest import START


def stored_order(requester_id: str, status: OrderStatus, created_at=START) -> Order:
    return Order(
        requester_id=requester_id,
        status=status,
        timing=OrderTiming(created_at=created_at),
    )


@pytest.fixture
def locks(clock):
    return InMemoryLockProvider(clock)


@pytest.fixture
def guard(store, locks, clock):
    return CreationGuard(store, locks, CreationConfig(max_active_orders=2, max_daily_orders=3), clock)


class TestCreationGuard:
    """Tests for CreationGuard.admit."""

    @pytest.mark.asyncio
    async def test_admits_and_releases_lock(self, guard, locks):
        """Test that the lock is held only inside the block."""
        key = CreationGuard.lock_key("req-1")
        async with guard.admit("req-1"):
            assert locks.is_held(key)
        assert not locks.is_held(key)

    @pytest.mark.asyncio
    async def test_concurrent_creation_refused(self, guard):
        """Test that a second creation for the same requester is refused."""
        entered = asyncio.Event()
        release = asyncio.Event()

        async def first():
            async with guard.admit("req-1"):
                entered.set()
                await release.wait()

        task = asyncio.create_task(first())
        await entered.wait()
        with pytest.raises(CreationInProgress):
            async with guard.admit("req-1"):
                pass
        release.set()
        await task

    @pytest.mark.asyncio
    async def test_other_requesters_not_blocked(self, guard):
        """Test that locks are per requester."""
        async with guard.admit("req-1"):
            async with guard.admit("req-2"):
                pass

    @pytest.mark.asyncio
    async def test_active_limit(self, guard, store, locks):
        """Test the active-order quota."""
        await store.insert(stored_order("req-1", OrderStatus.SEARCHING))
        await store.insert(stored_order("req-1", OrderStatus.ON_HOLD))
        await store.insert(stored_order("req-1", OrderStatus.COMPLETED))

        with pytest.raises(QuotaExceeded) as exc_info:
            async with guard.admit("req-1"):
                pass
        assert exc_info.value.code == MAX_ACTIVE_ORDERS_EXCEEDED
        assert exc_info.value.current == 2
        assert exc_info.value.limit == 2
        assert not locks.is_held(CreationGuard.lock_key("req-1"))

    @pytest.mark.asyncio
    async def test_daily_limit(self, guard, store):
        """Test the daily quota counts finished orders too."""
        for _ in range(3):
            await store.insert(stored_order("req-1", OrderStatus.CANCELLED))

        with pytest.raises(QuotaExceeded) as exc_info:
            async with guard.admit("req-1"):
                pass
        assert exc_info.value.code == DAILY_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_yesterday_does_not_count(self, guard, store):
        """Test that the daily quota resets at UTC midnight."""
        yesterday = START - timedelta(days=1)
        for _ in range(3):
            await store.insert(stored_order("req-1", OrderStatus.COMPLETED, yesterday))

        async with guard.admit("req-1"):
            pass

    @pytest.mark.asyncio
    async def test_lock_expires(self, guard, locks, clock):
        """Test that a lock abandoned by a crashed creation expires."""
        key = CreationGuard.lock_key("req-1")
        assert await locks.acquire(key, 10) is not None
        clock.advance(11)
        async with guard.admit("req-1"):
            pass
