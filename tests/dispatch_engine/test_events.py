"""
Event Bus Tests.

============================================================
PURPOSE
============================================================
Events fan out to subscribers without blocking the publisher;
a failing subscriber never affects the others.

============================================================
"""

import json
import logging
from decimal import Decimal

import pytest

from dispatch_engine.events import (
    EventBus,
    EventJournal,
    DispatchMetrics,
    OrderCreated,
    StatusChanged,
    SearchAttemptCompleted,
    CollaboratorFailure,
    OrderCancelled,
)
from dispatch_engine.types import OrderStatus, ActorRole, SearchOutcome

from conftest import START


def status_changed(order_id, from_status, to_status):
    return StatusChanged(
        order_id=order_id,
        timestamp=START,
        from_status=from_status,
        to_status=to_status,
    )


class TestEventBus:
    """Tests for EventBus."""

    @pytest.mark.asyncio
    async def test_fan_out(self):
        """Test that every subscriber gets the event."""
        bus = EventBus()
        first, second = EventJournal(), EventJournal()
        bus.subscribe(first)
        bus.subscribe(second)

        bus.publish(OrderCreated(order_id="o-1", timestamp=START))
        await bus.drain()

        assert len(first.events) == 1
        assert len(second.events) == 1
        assert bus.pending_count == 0

    @pytest.mark.asyncio
    async def test_type_filter(self):
        """Test subscription to specific event classes."""
        bus = EventBus()
        journal = EventJournal()
        bus.subscribe(journal, [StatusChanged])

        bus.publish(OrderCreated(order_id="o-1", timestamp=START))
        bus.publish(status_changed("o-1", OrderStatus.NEW, OrderStatus.SEARCHING))
        await bus.drain()

        assert [e.event_type for e in journal.events] == ["status_changed"]

    @pytest.mark.asyncio
    async def test_async_handler(self):
        """Test that coroutine handlers are awaited."""
        bus = EventBus()
        seen = []

        async def handler(event):
            seen.append(event.order_id)

        bus.subscribe(handler)
        bus.publish(OrderCreated(order_id="o-1", timestamp=START))
        await bus.drain()

        assert seen == ["o-1"]

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self, caplog):
        """Test that a broken subscriber is logged and others still run."""
        bus = EventBus()
        journal = EventJournal()

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(journal)

        with caplog.at_level(logging.ERROR, logger="dispatch_engine.events"):
            bus.publish(OrderCreated(order_id="o-1", timestamp=START))
            await bus.drain()

        assert len(journal.events) == 1
        assert "boom" in caplog.text


class TestEventJournal:
    """Tests for EventJournal."""

    def test_filters(self):
        """Test lookup by order and type."""
        journal = EventJournal()
        journal(OrderCreated(order_id="o-1", timestamp=START))
        journal(status_changed("o-1", OrderStatus.NEW, OrderStatus.SEARCHING))
        journal(OrderCreated(order_id="o-2", timestamp=START))

        assert len(journal.for_order("o-1")) == 2
        assert len(journal.of_type(OrderCreated)) == 2

    def test_bounded_journal_drops_oldest(self):
        """Test that a full journal evicts its oldest events."""
        journal = EventJournal(max_events=2)
        for n in range(5):
            journal(OrderCreated(order_id=f"o-{n}", timestamp=START))

        assert journal.max_events == 2
        assert [e.order_id for e in journal.events] == ["o-3", "o-4"]
        assert journal.dropped == 3
        assert journal.for_order("o-0") == []

    def test_unbounded_by_default(self):
        """Test that a journal without a limit keeps everything."""
        journal = EventJournal()
        for n in range(50):
            journal(OrderCreated(order_id=f"o-{n}", timestamp=START))

        assert journal.max_events is None
        assert len(journal.events) == 50
        assert journal.dropped == 0

    def test_events_serialize(self):
        """Test that event dicts are JSON-safe."""
        event = OrderCancelled(
            order_id="o-1",
            timestamp=START,
            actor_role=ActorRole.REQUESTER,
            actor_id="req-1",
            reason="long_wait",
            penalty_amount=Decimal("200"),
            reason_code="STANDARD_PENALTY",
        )
        data = json.loads(json.dumps(event.to_dict()))
        assert data["event_type"] == "order_cancelled"
        assert data["penalty_amount"] == "200"
        assert data["actor_role"] == "requester"


class TestDispatchMetrics:
    """Tests for DispatchMetrics.from_events."""

    def test_counters(self):
        """Test counters derived from an event trail."""
        events = [
            OrderCreated(order_id="o-1", timestamp=START),
            OrderCreated(order_id="o-2", timestamp=START),
            status_changed("o-1", OrderStatus.NEW, OrderStatus.SEARCHING),
            status_changed("o-2", OrderStatus.NEW, OrderStatus.SEARCHING),
            SearchAttemptCompleted(order_id="o-1", timestamp=START, outcome=SearchOutcome.EMPTY),
            CollaboratorFailure(order_id="o-1", timestamp=START, collaborator="notifier"),
            status_changed("o-1", OrderStatus.SEARCHING, OrderStatus.EXPIRED),
            status_changed("o-2", OrderStatus.SEARCHING, OrderStatus.CANCELLED),
            OrderCancelled(order_id="o-2", timestamp=START, penalty_amount=Decimal("150")),
        ]
        metrics = DispatchMetrics.from_events(events)

        assert metrics.orders_created == 2
        assert metrics.orders_expired == 1
        assert metrics.orders_cancelled == 1
        assert metrics.searching_now == 0
        assert metrics.search_attempts == 1
        assert metrics.collaborator_failures == 1
        assert metrics.penalties_total == Decimal("150")
