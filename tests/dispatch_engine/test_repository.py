"""
SQL Order Store Tests.

============================================================
PURPOSE
============================================================
Runs the SQL store against a file-backed SQLite database so the
guarded UPDATEs, sequences and event audit are exercised for real.

============================================================
"""

from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from dispatch_engine.events import EventBus
from dispatch_engine.lifecycle import LifecycleCoordinator
from dispatch_engine.models import Base
from dispatch_engine.repository import SqlOrderStore
from dispatch_engine.store import OrderPatch, DuplicateOrderError
from dispatch_engine.timers import ManualTimerService
from dispatch_engine.types import (
    Actor,
    Candidate,
    Order,
    OrderStatus,
    OrderTiming,
    SearchAttempt,
    SearchOutcome,
)

from conftest import START, executor_at, order_payload


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        yield SqlOrderStore(session_maker)
    finally:
        await engine.dispose()


def make_order(number: str, requester_id="req-1", status=OrderStatus.SEARCHING, created_at=START) -> Order:
    return Order(
        order_number=number,
        requester_id=requester_id,
        status=status,
        status_changed_at=created_at,
        timing=OrderTiming(created_at=created_at),
    )


class TestSqlOrderStore:
    """Tests for SqlOrderStore."""

    @pytest.mark.asyncio
    async def test_insert_and_load(self, sql_store):
        """Test that the stored document loads back."""
        order = make_order("Y24-20260302-0001")
        await sql_store.insert(order)

        loaded = await sql_store.find_by_id(order.order_id)
        assert loaded.to_document() == order.to_document()
        assert await sql_store.find_by_id("missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_insert(self, sql_store):
        """Test the unique order ID."""
        order = make_order("Y24-20260302-0001")
        await sql_store.insert(order)
        with pytest.raises(DuplicateOrderError):
            await sql_store.insert(order)

    @pytest.mark.asyncio
    async def test_conditional_update_guards(self, sql_store):
        """Test that status and sequence guards hold in SQL."""
        order = make_order("Y24-20260302-0001")
        await sql_store.insert(order)

        patch = OrderPatch().set("status", OrderStatus.EXPIRED).set("transition_seq", 1)
        assert await sql_store.conditional_update(order.order_id, OrderStatus.NEW, patch) is False
        assert await sql_store.conditional_update(
            order.order_id, OrderStatus.SEARCHING, patch, expected_seq=7
        ) is False
        assert await sql_store.conditional_update(
            order.order_id, OrderStatus.SEARCHING, patch, expected_seq=0
        ) is True
        assert await sql_store.conditional_update(
            order.order_id, OrderStatus.SEARCHING, patch, expected_seq=0
        ) is False

        loaded = await sql_store.find_by_id(order.order_id)
        assert loaded.status == OrderStatus.EXPIRED
        assert loaded.transition_seq == 1

    @pytest.mark.asyncio
    async def test_append_with_expected_length(self, sql_store):
        """Test the attempt-slot guard."""
        order = make_order("Y24-20260302-0001")
        await sql_store.insert(order)
        attempt = SearchAttempt(1, 5000, START, SearchOutcome.EMPTY)

        assert await sql_store.append_to_list(
            order.order_id, "search_state.attempts", attempt, expected_length=0
        ) is True
        assert await sql_store.append_to_list(
            order.order_id, "search_state.attempts", attempt, expected_length=0
        ) is False

        loaded = await sql_store.find_by_id(order.order_id)
        assert loaded.search_state.attempts == [attempt]

    @pytest.mark.asyncio
    async def test_counts(self, sql_store):
        """Test quota counters."""
        await sql_store.insert(make_order("n-1"))
        await sql_store.insert(make_order("n-2", status=OrderStatus.COMPLETED))
        await sql_store.insert(make_order("n-3", created_at=START - timedelta(days=1)))
        await sql_store.insert(make_order("n-4", requester_id="req-2"))

        assert await sql_store.count_active("req-1") == 2
        assert await sql_store.count_created_since("req-1", START) == 2

    @pytest.mark.asyncio
    async def test_next_sequence(self, sql_store):
        """Test per-scope counters."""
        assert await sql_store.next_sequence("20260302") == 1
        assert await sql_store.next_sequence("20260302") == 2
        assert await sql_store.next_sequence("20260303") == 1

    @pytest.mark.asyncio
    async def test_find_by_statuses(self, sql_store):
        """Test the recovery query."""
        await sql_store.insert(make_order("n-1", status=OrderStatus.NEW))
        await sql_store.insert(make_order("n-2", status=OrderStatus.CANCELLED))

        live = await sql_store.find_by_statuses([OrderStatus.NEW, OrderStatus.SEARCHING])
        assert [o.order_number for o in live] == ["n-1"]


class TestSqlLifecycle:
    """The coordinator running on the SQL store."""

    @pytest.mark.asyncio
    async def test_order_lifecycle_with_audit(self, sql_store, clock, config, source):
        """Test a full handshake and the persisted event trail."""
        bus = EventBus()
        bus.subscribe(sql_store.save_event)
        coordinator = LifecycleCoordinator(
            sql_store, ManualTimerService(clock), config=config, clock=clock,
            events=bus, candidates=source,
        )
        source.add_executor(executor_at("exec-1", 1.0))

        order = await coordinator.create("req-1", order_payload())
        assert order.order_number == "Y24-20260302-0001"
        await coordinator.start_search(order.order_id)
        await coordinator.assign(
            order.order_id,
            Candidate(executor_id="exec-1", distance_m=1000.0),
            Actor.operator("op-1"),
        )
        clock.advance(10)
        order = await coordinator.accept(order.order_id, "exec-1")
        clock.advance(60)
        order = await coordinator.cancel(order.order_id, Actor.requester("req-1"), "long_wait")
        await bus.drain()

        assert order.status == OrderStatus.CANCELLED
        assert order.transition_seq == 4
        assert order.cancellation.penalty_amount == Decimal("0")

        events = await sql_store.get_events_for_order(order.order_id)
        types = [e.event_type for e in events]
        assert types.count("status_changed") == 4
        assert "order_created" in types
        assert "order_cancelled" in types
