"""
Search Orchestrator Tests.

============================================================
PURPOSE
============================================================
Radius expansion, offers and the claim handshake.

TEST CATEGORIES:
- Candidate source and ranking
- Single attempts
- The search loop
- Worker queue

Offer TTL is 0.05s here so claim waits stay short.

============================================================
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from dispatch_engine.candidates import CandidateRanker, InMemoryCandidateSource, haversine_m
from dispatch_engine.events import (
    OrderSearchFailed,
    CollaboratorFailure,
    SearchAttemptCompleted,
)
from dispatch_engine.notifier import InMemoryNotifier
from dispatch_engine.search import SearchOrchestrator
from dispatch_engine.store import OrderPatch
from dispatch_engine.types import (
    Candidate,
    Location,
    OrderPriority,
    OrderStatus,
    OfferEventKind,
    SearchCriteria,
    SearchOutcome,
    SearchExhausted,
)

from conftest import PICKUP, executor_at, order_payload


async def searching_order(coordinator, **overrides):
    order = await coordinator.create("req-1", order_payload(**overrides))
    return await coordinator.start_search(order.order_id)


# ============================================================
# CANDIDATES
# ============================================================

class TestCandidateSource:
    """Tests for InMemoryCandidateSource."""

    def test_haversine(self):
        """Test distance for one kilometre north."""
        north = executor_at("x", 1.0).location
        assert haversine_m(PICKUP, north) == pytest.approx(1000.0, rel=0.01)

    @pytest.mark.asyncio
    async def test_search_filters_and_sorts(self):
        """Test radius, service type, exclusion and online filters."""
        source = InMemoryCandidateSource([
            executor_at("far", 8.0),
            executor_at("near", 1.0),
            executor_at("mid", 3.0),
            executor_at("offline", 0.5, online=False),
            executor_at("excluded", 0.5),
            executor_at("tow-only", 0.5, service_types=["towing"]),
        ])
        found = await source.search(SearchCriteria(
            location=PICKUP,
            radius_m=5000,
            service_type="tire_change",
            excluded_executor_ids=["excluded"],
        ))
        assert [c.executor_id for c in found] == ["near", "mid"]
        assert found[0].eta_minutes == pytest.approx(1.5, abs=0.1)

    @pytest.mark.asyncio
    async def test_availability(self):
        """Test availability reasons."""
        source = InMemoryCandidateSource([
            executor_at("free", 1.0),
            executor_at("busy", 1.0, active_orders=1),
        ])
        assert (await source.check_availability("free")).available
        assert (await source.check_availability("busy")).reason == "busy"
        assert (await source.check_availability("ghost")).reason == "unknown_executor"


class TestCandidateRanker:
    """Tests for CandidateRanker."""

    def test_closer_ranks_higher(self):
        """Test that distance drives the score."""
        ranker = CandidateRanker()
        near = Candidate(executor_id="near", distance_m=1000.0)
        far = Candidate(executor_id="far", distance_m=4000.0)

        ranked = ranker.rank([far, near], 5000)
        assert [c.executor_id for c, _ in ranked] == ["near", "far"]

    def test_preferred_executor_boost(self):
        """Test that a preferred executor can outrank a closer one."""
        ranker = CandidateRanker()
        near = Candidate(executor_id="near", distance_m=1000.0)
        far = Candidate(executor_id="far", distance_m=4000.0)

        ranked = ranker.rank([near, far], 5000, preferred_ids=["far"])
        assert ranked[0][0].executor_id == "far"

    def test_previously_served_modifier(self):
        """Test the relationship modifier."""
        ranker = CandidateRanker()
        returning = Candidate(executor_id="a", distance_m=1000.0, previously_served=True)
        assert ranker.modifier(returning, []) == 1.3
        assert ranker.modifier(returning, ["a"]) == 1.5

    def test_full_executor_scores_lower(self):
        """Test the availability factor."""
        ranker = CandidateRanker()
        idle = Candidate(executor_id="idle", distance_m=1000.0, max_active_orders=2)
        loaded = Candidate(executor_id="loaded", distance_m=1000.0, active_orders=1, max_active_orders=2)
        assert ranker.score(idle, 5000) > ranker.score(loaded, 5000)


# ============================================================
# SINGLE ATTEMPT
# ============================================================

class TestRunAttempt:
    """Tests for SearchOrchestrator.run_attempt."""

    @pytest.mark.asyncio
    async def test_empty_attempt(self, coordinator, orchestrator, store):
        """Test an attempt with nobody in range."""
        order = await searching_order(coordinator)
        attempt = await orchestrator.run_attempt(order.order_id)

        assert attempt.attempt_number == 1
        assert attempt.radius_m == 5000
        assert attempt.outcome == SearchOutcome.EMPTY
        stored = await store.find_by_id(order.order_id)
        assert stored.search_state.attempts == [attempt]

    @pytest.mark.asyncio
    async def test_found_attempt_offers_candidates(self, coordinator, orchestrator, source, notifier, bus, journal):
        """Test that eligible candidates get offers and are recorded."""
        source.add_executor(executor_at("exec-1", 1.0))
        source.add_executor(executor_at("exec-2", 2.0))
        order = await searching_order(coordinator)

        attempt = await orchestrator.run_attempt(order.order_id)

        assert attempt.outcome == SearchOutcome.FOUND
        assert [c.executor_id for c in attempt.candidates] == ["exec-1", "exec-2"]
        assert attempt.notified_count == 2
        assert notifier.offers_for(order.order_id)[0].summary.attempt_number == 1

        stored = await coordinator.get_order(order.order_id)
        assert [e.kind for e in stored.search_state.offer_log] == [OfferEventKind.OFFERED] * 2

        await bus.drain()
        completed = journal.of_type(SearchAttemptCompleted)
        assert completed[0].candidates_found == 2
        assert completed[0].notified == 2

    @pytest.mark.asyncio
    async def test_excluded_executor_never_offered(self, coordinator, orchestrator, source, notifier, store):
        """Test that exclusions hold for every later attempt."""
        source.add_executor(executor_at("exec-1", 1.0))
        source.add_executor(executor_at("exec-2", 2.0))
        order = await searching_order(coordinator)
        await store.conditional_update(
            order.order_id,
            OrderStatus.SEARCHING,
            OrderPatch().add_to_set("search_state.excluded_executor_ids", "exec-1"),
        )

        await orchestrator.run_attempt(order.order_id)
        assert notifier.recipients(order.order_id) == ["exec-2"]

    @pytest.mark.asyncio
    async def test_ineligible_executors_filtered(self, coordinator, orchestrator, source, notifier):
        """Test the rating and availability filters."""
        source.add_executor(executor_at("low-rated", 1.0, rating=3.0))
        source.add_executor(executor_at("busy", 1.0, active_orders=1))
        order = await searching_order(coordinator)

        attempt = await orchestrator.run_attempt(order.order_id)

        assert attempt.outcome == SearchOutcome.EXPANDED
        assert attempt.candidates == ()
        assert notifier.recipients(order.order_id) == []

    @pytest.mark.asyncio
    async def test_candidate_source_failure(self, coordinator, orchestrator, source, bus, journal):
        """Test that a failing source still consumes an attempt."""
        source.search = AsyncMock(side_effect=RuntimeError("geo index down"))
        order = await searching_order(coordinator)

        attempt = await orchestrator.run_attempt(order.order_id)

        assert attempt.outcome == SearchOutcome.FAILED
        assert attempt.error == "candidate_search_failed"
        await bus.drain()
        failure = journal.of_type(CollaboratorFailure)[0]
        assert failure.collaborator == "candidate_source"
        assert failure.attempt_number == 1
        assert failure.error == "geo index down"

    @pytest.mark.asyncio
    async def test_unreachable_executor(self, coordinator, orchestrator, source, notifier):
        """Test that a failed delivery is logged and the offer is not live."""
        source.add_executor(executor_at("exec-1", 1.0))
        notifier.unreachable.add("exec-1")
        order = await searching_order(coordinator)

        attempt = await orchestrator.run_attempt(order.order_id)

        assert attempt.outcome == SearchOutcome.EXPANDED
        assert attempt.candidates[0].notified is False
        stored = await coordinator.get_order(order.order_id)
        kinds = [e.kind for e in stored.search_state.offer_log]
        assert kinds == [OfferEventKind.OFFERED, OfferEventKind.NOTIFY_FAILED]
        assert stored.search_state.offer_log[-1].detail == "unreachable"
        assert stored.search_state.live_offer("exec-1", stored.status_changed_at) is None

    @pytest.mark.asyncio
    async def test_not_searching(self, coordinator, orchestrator):
        """Test that an order outside SEARCHING gets no attempt."""
        order = await coordinator.create("req-1", order_payload())
        assert await orchestrator.run_attempt(order.order_id) is None


# ============================================================
# SEARCH LOOP
# ============================================================

class TestRunSearch:
    """Tests for SearchOrchestrator.run_search."""

    @pytest.mark.asyncio
    async def test_nobody_available_expires(self, coordinator, orchestrator, bus, journal):
        """Test radius expansion up to the last attempt, then expiry."""
        order = await searching_order(coordinator)

        result = await orchestrator.run_search(order.order_id)

        assert result.final_status == OrderStatus.EXPIRED
        assert result.attempts == 5
        assert result.assigned_executor_id is None

        stored = await coordinator.get_order(order.order_id)
        assert [a.radius_m for a in stored.search_state.attempts] == [5000, 10000, 15000, 20000, 25000]
        assert all(a.outcome == SearchOutcome.EMPTY for a in stored.search_state.attempts)

        await bus.drain()
        failed = journal.of_type(OrderSearchFailed)
        assert len(failed) == 1
        assert failed[0].attempts == 5
        assert failed[0].requester_id == "req-1"

    @pytest.mark.asyncio
    async def test_radius_capped(self, coordinator, orchestrator, config):
        """Test that the radius never passes the order's maximum."""
        config.search.radius_step_m = 20000
        order = await searching_order(coordinator)

        await orchestrator.run_search(order.order_id)

        stored = await coordinator.get_order(order.order_id)
        assert [a.radius_m for a in stored.search_state.attempts] == [5000, 25000, 30000, 30000, 30000]

    @pytest.mark.asyncio
    async def test_executor_found_after_expansion(self, coordinator, store, source, config, clock, bus):
        """Test a claim on the second attempt ends the search."""
        source.add_executor(executor_at("exec-7", 7.0))

        async def accept_offer(sent):
            await coordinator.accept(sent.summary.order_id, sent.executor_id)

        orchestrator = SearchOrchestrator(
            store, coordinator, source, InMemoryNotifier(on_offer=accept_offer),
            config=config, clock=clock, events=bus,
        )
        order = await searching_order(coordinator)

        result = await orchestrator.run_search(order.order_id)

        assert result.final_status == OrderStatus.ACCEPTED
        assert result.assigned_executor_id == "exec-7"
        assert result.attempts == 2
        stored = await coordinator.get_order(order.order_id)
        assert [a.outcome for a in stored.search_state.attempts] == [
            SearchOutcome.EMPTY,
            SearchOutcome.FOUND,
        ]

    @pytest.mark.asyncio
    async def test_unanswered_offer_expires(self, coordinator, orchestrator, source):
        """Test that a silent executor is excluded after the offer TTL."""
        source.add_executor(executor_at("exec-7", 7.0))
        order = await searching_order(coordinator)

        result = await orchestrator.run_search(order.order_id)

        assert result.final_status == OrderStatus.EXPIRED
        stored = await coordinator.get_order(order.order_id)
        assert stored.search_state.is_excluded("exec-7")
        kinds = [e.kind for e in stored.search_state.offer_log if e.executor_id == "exec-7"]
        assert kinds == [OfferEventKind.OFFERED, OfferEventKind.EXPIRED]
        assert [a.outcome for a in stored.search_state.attempts][:2] == [
            SearchOutcome.EMPTY,
            SearchOutcome.FOUND,
        ]

    @pytest.mark.asyncio
    async def test_raise_on_exhausted(self, coordinator, orchestrator):
        """Test the raising variant of search exhaustion."""
        order = await searching_order(coordinator)

        with pytest.raises(SearchExhausted) as exc_info:
            await orchestrator.run_search(order.order_id, raise_on_exhausted=True)
        assert exc_info.value.attempts == 5

        stored = await coordinator.get_order(order.order_id)
        assert stored.status == OrderStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_order_not_searching(self, coordinator, orchestrator):
        """Test that the loop returns at once for other statuses."""
        order = await coordinator.create("req-1", order_payload())
        result = await orchestrator.run_search(order.order_id)

        assert result.final_status == OrderStatus.NEW
        assert result.attempts == 0


# ============================================================
# WORKER QUEUE
# ============================================================

class TestRequestSearch:
    """Tests for the priority worker queue."""

    def test_priority_order(self, orchestrator):
        """Test that higher priorities are served first, FIFO otherwise."""
        orchestrator.request_search("low", OrderPriority.LOW)
        orchestrator.request_search("normal-1", OrderPriority.NORMAL)
        orchestrator.request_search("urgent", OrderPriority.URGENT)
        orchestrator.request_search("normal-2", OrderPriority.NORMAL)

        served = [orchestrator._queue.get_nowait()[2] for _ in range(4)]
        assert served == ["urgent", "normal-1", "normal-2", "low"]

    def test_duplicate_request_ignored(self, orchestrator):
        """Test that an order is queued once."""
        assert orchestrator.request_search("order-1") is True
        assert orchestrator.request_search("order-1", OrderPriority.HIGH) is False
        assert orchestrator.queued_count == 1

    @pytest.mark.asyncio
    async def test_workers_run_queued_searches(self, coordinator, orchestrator):
        """Test that a started pool drains the queue."""
        coordinator.set_search_launcher(orchestrator.request_search)
        orchestrator.start()
        try:
            order = await searching_order(coordinator)
            await asyncio.wait_for(orchestrator._queue.join(), timeout=5)
        finally:
            await orchestrator.stop()

        stored = await coordinator.get_order(order.order_id)
        assert stored.status == OrderStatus.EXPIRED
        assert not orchestrator.is_searching(order.order_id)
