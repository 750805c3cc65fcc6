"""
Timer Service Tests.
"""

import asyncio
from datetime import timedelta

import pytest

from dispatch_engine.timers import AsyncioTimerService, ManualTimerService
from dispatch_engine.types import OrderStatus

from conftest import START


class TestAsyncioTimerService:
    """Tests for AsyncioTimerService."""

    @pytest.mark.asyncio
    async def test_fires_bound_handler(self):
        """Test that an armed timer reaches the handler."""
        timers = AsyncioTimerService()
        fired = asyncio.Event()
        received = []

        async def handler(task):
            received.append(task)
            fired.set()

        timers.bind(handler)
        timers.start()
        try:
            timers.schedule("o-1", OrderStatus.ASSIGNED, 0.01, transition_seq=2)
            await asyncio.wait_for(fired.wait(), timeout=2)
        finally:
            await timers.stop()

        assert received[0].order_id == "o-1"
        assert received[0].expected_status == OrderStatus.ASSIGNED
        assert received[0].transition_seq == 2
        assert timers.pending_count == 0

    @pytest.mark.asyncio
    async def test_rescheduling_replaces_timer(self):
        """Test that one order has at most one pending timer."""
        timers = AsyncioTimerService()
        received = []

        async def handler(task):
            received.append(task.expected_status)

        timers.bind(handler)
        timers.start()
        try:
            timers.schedule("o-1", OrderStatus.NEW, 0.01)
            timers.schedule("o-1", OrderStatus.SEARCHING, 0.02)
            assert timers.pending_count == 1
            await asyncio.sleep(0.1)
        finally:
            await timers.stop()

        assert received == [OrderStatus.SEARCHING]

    @pytest.mark.asyncio
    async def test_cancel(self):
        """Test that a cancelled timer never fires."""
        timers = AsyncioTimerService()
        received = []

        async def handler(task):
            received.append(task)

        timers.bind(handler)
        timers.start()
        try:
            timers.schedule("o-1", OrderStatus.NEW, 0.01)
            timers.cancel("o-1")
            await asyncio.sleep(0.05)
        finally:
            await timers.stop()

        assert received == []

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_worker(self):
        """Test that the worker survives a failing handler."""
        timers = AsyncioTimerService()
        done = asyncio.Event()

        async def handler(task):
            if task.order_id == "bad":
                raise RuntimeError("boom")
            done.set()

        timers.bind(handler)
        timers.start()
        try:
            timers.schedule("bad", OrderStatus.NEW, 0.0)
            timers.schedule("good", OrderStatus.NEW, 0.01)
            await asyncio.wait_for(done.wait(), timeout=2)
        finally:
            await timers.stop()


class TestManualTimerService:
    """Tests for ManualTimerService."""

    def test_due_at_uses_clock(self, clock):
        """Test the due time of an armed timer."""
        timers = ManualTimerService(clock)
        task = timers.schedule("o-1", OrderStatus.NEW, 60, 0)
        assert task.due_at == START + timedelta(seconds=60)
        assert timers.pending("o-1") is task

    @pytest.mark.asyncio
    async def test_fire_without_pending_timer(self, clock):
        """Test firing an order with nothing armed."""
        timers = ManualTimerService(clock)
        with pytest.raises(LookupError):
            await timers.fire("o-1")

    @pytest.mark.asyncio
    async def test_fire_removes_pending(self, clock):
        """Test that a fired timer is no longer pending but stays recorded."""
        timers = ManualTimerService(clock)
        received = []

        async def handler(task):
            received.append(task)

        timers.bind(handler)
        task = timers.schedule("o-1", OrderStatus.NEW, 60)
        await timers.fire("o-1")

        assert received == [task]
        assert timers.pending("o-1") is None
        assert timers.armed_for("o-1") == [task]
