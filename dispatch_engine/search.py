"""
Dispatch Engine - Search Orchestrator.

============================================================
PURPOSE
============================================================
Finds an executor for a SEARCHING order.

ATTEMPT STEPS:
1. Query candidates within the current radius
2. Drop excluded, low-rated and unavailable executors
3. Rank and keep the top N
4. Offer in batches (concurrent inside a batch)
5. Record the attempt (append-only, immutable)

LOOP:
- After offers went out, wait for a claim until the offers expire
- Unanswered offers expire and their executors are excluded
- Otherwise widen the radius, pause, try again
- Expire the order after the last attempt

SAFETY CONSTRAINTS:
- The orchestrator never changes status itself except
  through the LifecycleCoordinator
- No lock is held while waiting
- Collaborator failures count as attempts

============================================================
"""

import asyncio
import itertools
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from .candidates import CandidateSource, CandidateRanker
from .clock import ClockProtocol, SystemClock
from .config import DispatchEngineConfig
from .errors import get_error_info
from .events import (
    EventSink,
    EventBus,
    NullEventSink,
    StatusChanged,
    SearchAttemptCompleted,
    CollaboratorFailure,
)
from .lifecycle import LifecycleCoordinator
from .notifier import DispatchNotifier
from .store import OrderStore, OrderPatch
from .types import (
    Order,
    OrderStatus,
    OrderPriority,
    Candidate,
    CandidateSnapshot,
    SearchAttempt,
    SearchCriteria,
    SearchOutcome,
    SearchResult,
    OfferSummary,
    OfferLogEntry,
    OfferEventKind,
    DispatchResult,
    DispatchEngineError,
    OrderNotFound,
    StaleTransition,
    SearchExhausted,
)


logger = logging.getLogger(__name__)


class SearchOrchestrator:
    """
    Radius-expansion executor search.

    Searches run either directly (`run_search`) or through the
    priority worker pool (`request_search`).
    """

    def __init__(
        self,
        store: OrderStore,
        coordinator: LifecycleCoordinator,
        candidates: CandidateSource,
        notifier: DispatchNotifier,
        config: Optional[DispatchEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        events: Optional[EventSink] = None,
    ):
        self._store = store
        self._coordinator = coordinator
        self._candidates = candidates
        self._notifier = notifier
        self._config = config or DispatchEngineConfig()
        self._clock = clock or SystemClock()
        self._events = events or NullEventSink()
        self._ranker = CandidateRanker(self._config.ranking)

        # Claim waiters, set when an order leaves SEARCHING
        self._waiters: Dict[str, asyncio.Event] = {}

        # Worker pool
        self._queue: "asyncio.PriorityQueue[Tuple[int, int, str]]" = asyncio.PriorityQueue()
        self._sequence = itertools.count()
        self._queued: Set[str] = set()
        self._running: Set[str] = set()
        self._rerun: Dict[str, OrderPriority] = {}
        self._workers: List[asyncio.Task] = []

        if isinstance(self._events, EventBus):
            self._events.subscribe(self._on_status_changed, [StatusChanged])

    # --------------------------------------------------------
    # WORKER POOL
    # --------------------------------------------------------

    def start(self) -> None:
        """Start the search workers."""
        if self._workers:
            return
        for index in range(self._config.search.workers):
            self._workers.append(asyncio.create_task(self._worker(index)))
        logger.info(f"Started {len(self._workers)} search workers")

    async def stop(self) -> None:
        """Cancel the search workers."""
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Search workers stopped")

    def request_search(self, order_id: str, priority: OrderPriority = OrderPriority.NORMAL) -> bool:
        """
        Queue a search for an order.

        Higher priority first, FIFO within a priority. An order already
        queued is not queued twice; an order being searched is queued
        again once its current loop ends.

        Returns:
            True if queued
        """
        if order_id in self._running:
            # Searched again once the current loop ends
            self._rerun[order_id] = priority
            return False
        if order_id in self._queued:
            logger.debug(f"Search for order {order_id} already queued")
            return False
        self._queued.add(order_id)
        self._queue.put_nowait((-int(priority), next(self._sequence), order_id))
        logger.debug(f"Queued search for order {order_id} (priority {priority.name})")
        return True

    @property
    def queued_count(self) -> int:
        return self._queue.qsize()

    def is_searching(self, order_id: str) -> bool:
        return order_id in self._running

    async def _worker(self, index: int) -> None:
        while True:
            _, _, order_id = await self._queue.get()
            self._queued.discard(order_id)
            self._running.add(order_id)
            try:
                result = await self.run_search(order_id)
                logger.debug(f"Worker {index} finished order {order_id}: {result.final_status}")
            except asyncio.CancelledError:
                raise
            except DispatchEngineError as e:
                info = get_error_info(e.code)
                logger.error(
                    f"Search for order {order_id} failed [{e.code}]: {e} "
                    f"({info.recommended_action})"
                )
            except Exception as e:
                logger.exception(f"Search worker {index} failed on order {order_id}: {e}")
            finally:
                self._running.discard(order_id)
                self._queue.task_done()
                if order_id in self._rerun:
                    self.request_search(order_id, self._rerun.pop(order_id))

    # --------------------------------------------------------
    # SEARCH LOOP
    # --------------------------------------------------------

    async def run_search(self, order_id: str, raise_on_exhausted: bool = False) -> SearchResult:
        """
        Run attempts until the order is claimed, leaves SEARCHING or expires.

        Args:
            order_id: Order to search for
            raise_on_exhausted: Raise SearchExhausted instead of returning

        Returns:
            SearchResult
        """
        search_cfg = self._config.search
        waiter = self._waiters.setdefault(order_id, asyncio.Event())
        try:
            while True:
                order = await self._load(order_id)
                if order.status != OrderStatus.SEARCHING:
                    return self._result(order)
                if len(order.search_state.attempts) >= search_cfg.max_attempts:
                    return await self.handle_search_failed(order_id, raise_on_exhausted)

                waiter.clear()
                attempt = await self.run_attempt(order_id)
                if attempt is None:
                    # Order moved on or another loop recorded this attempt
                    return self._result(await self._load(order_id))

                if attempt.outcome == SearchOutcome.FOUND:
                    order = await self._load(order_id)
                    if order.status == OrderStatus.SEARCHING:
                        await self._await_claim(waiter)
                        order = await self._load(order_id)
                    if order.status != OrderStatus.SEARCHING:
                        return self._result(order)
                    await self._expire_unanswered(order_id, attempt.attempt_number)

                if attempt.attempt_number >= search_cfg.max_attempts:
                    return await self.handle_search_failed(order_id, raise_on_exhausted)

                await self._expand_radius(order_id)
                if search_cfg.inter_attempt_delay_seconds > 0:
                    await asyncio.sleep(search_cfg.inter_attempt_delay_seconds)
        finally:
            self._waiters.pop(order_id, None)

    async def handle_search_failed(
        self,
        order_id: str,
        raise_on_exhausted: bool = False,
    ) -> SearchResult:
        """Expire an order whose search ran out of attempts."""
        try:
            order = await self._coordinator.expire_search(order_id)
        except StaleTransition:
            return self._result(await self._load(order_id))

        attempts = len(order.search_state.attempts)
        logger.warning(
            f"No executor found for order {order.order_number or order_id} "
            f"after {attempts} attempts"
        )
        if raise_on_exhausted:
            raise SearchExhausted(order_id, attempts)
        return self._result(order)

    async def _await_claim(self, waiter: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(waiter.wait(), timeout=self._config.offers.offer_ttl_seconds)
        except asyncio.TimeoutError:
            pass

    def _on_status_changed(self, event: StatusChanged) -> None:
        if event.from_status != OrderStatus.SEARCHING:
            return
        waiter = self._waiters.get(event.order_id)
        if waiter is not None:
            waiter.set()

    async def _expire_unanswered(self, order_id: str, attempt_number: int) -> None:
        order = await self._load(order_id)
        if order.status != OrderStatus.SEARCHING:
            return
        unanswered = order.search_state.unanswered_offers(attempt_number)
        if not unanswered:
            return

        now = self._clock.now()
        patch = OrderPatch()
        for executor_id in unanswered:
            patch.append("search_state.offer_log", OfferLogEntry(
                attempt_number=attempt_number,
                executor_id=executor_id,
                kind=OfferEventKind.EXPIRED,
                at=now,
            ))
            patch.add_to_set("search_state.excluded_executor_ids", executor_id)

        if await self._store.conditional_update(order_id, OrderStatus.SEARCHING, patch):
            logger.info(
                f"Expired {len(unanswered)} unanswered offers for order {order_id} "
                f"(attempt {attempt_number})"
            )

    async def _expand_radius(self, order_id: str) -> None:
        order = await self._load(order_id)
        state = order.search_state
        new_radius = min(state.radius_m + self._config.search.radius_step_m, state.max_radius_m)
        if new_radius == state.radius_m:
            return
        patch = OrderPatch().set("search_state.radius_m", new_radius)
        if await self._store.conditional_update(order_id, OrderStatus.SEARCHING, patch):
            logger.info(f"Search radius for order {order_id}: {state.radius_m} -> {new_radius} m")

    # --------------------------------------------------------
    # SINGLE ATTEMPT
    # --------------------------------------------------------

    async def run_attempt(self, order_id: str) -> Optional[SearchAttempt]:
        """
        Run one search attempt.

        Returns:
            The recorded attempt, or None if the order is not searching
            or the attempt slot was taken concurrently
        """
        order = await self._store.find_by_id(order_id)
        if order is None or order.status != OrderStatus.SEARCHING:
            return None

        state = order.search_state
        attempt_number = len(state.attempts) + 1
        if attempt_number > self._config.search.max_attempts:
            return None

        radius = state.radius_m
        snapshots: List[CandidateSnapshot] = []
        error: Optional[str] = None

        candidates = await self._find_candidates(order, radius, attempt_number)
        if candidates is None:
            outcome = SearchOutcome.FAILED
            error = "candidate_search_failed"
        elif not candidates:
            outcome = SearchOutcome.EMPTY
        else:
            eligible = await self._filter(order, candidates, attempt_number)
            ranked = self._ranker.rank(eligible, radius, order.preferred_executor_ids)
            ranked = ranked[:self._config.offers.max_notify]
            notified = await self._dispatch_offers(order, attempt_number, ranked) if ranked else {}
            snapshots = [
                CandidateSnapshot(
                    executor_id=candidate.executor_id,
                    distance_m=candidate.distance_m,
                    eta_minutes=candidate.eta_minutes,
                    rating=candidate.rating,
                    score=score,
                    notified=candidate.executor_id in notified,
                    notified_at=notified.get(candidate.executor_id),
                )
                for candidate, score in ranked
            ]
            outcome = SearchOutcome.FOUND if notified else SearchOutcome.EXPANDED

        attempt = SearchAttempt(
            attempt_number=attempt_number,
            radius_m=radius,
            timestamp=self._clock.now(),
            outcome=outcome,
            candidates=tuple(snapshots),
            error=error,
        )
        appended = await self._store.append_to_list(
            order_id,
            "search_state.attempts",
            attempt,
            expected_length=attempt_number - 1,
        )
        if not appended:
            logger.warning(f"Attempt {attempt_number} for order {order_id} was already recorded")
            return None

        logger.info(
            f"Search attempt {attempt_number} for order {order_id}: {outcome.value} "
            f"(radius {radius} m, {attempt.notified_count} notified)"
        )
        self._events.publish(SearchAttemptCompleted(
            order_id=order_id,
            timestamp=attempt.timestamp,
            attempt_number=attempt_number,
            radius_m=radius,
            outcome=outcome,
            candidates_found=len(candidates or []),
            notified=attempt.notified_count,
        ))
        return attempt

    async def _find_candidates(
        self,
        order: Order,
        radius: int,
        attempt_number: int,
    ) -> Optional[List[Candidate]]:
        criteria = SearchCriteria(
            location=order.location,
            radius_m=radius,
            service_type=order.service_type,
            excluded_executor_ids=list(order.search_state.excluded_executor_ids),
            requester_id=order.requester_id,
            limit=self._config.search.candidate_limit,
        )
        try:
            return await asyncio.wait_for(
                self._candidates.search(criteria),
                timeout=self._config.search.collaborator_timeout_seconds,
            )
        except Exception as e:
            self._collaborator_failed(order.order_id, "candidate_source", e, attempt_number)
            return None

    async def _filter(
        self,
        order: Order,
        candidates: List[Candidate],
        attempt_number: int,
    ) -> List[Candidate]:
        state = order.search_state
        min_rating = self._config.search.min_rating
        prefiltered = [
            c for c in candidates
            if not state.is_excluded(c.executor_id) and c.rating >= min_rating
        ]
        checks = await asyncio.gather(
            *(self._is_available(order.order_id, c.executor_id, attempt_number) for c in prefiltered)
        )
        return [c for c, available in zip(prefiltered, checks) if available]

    async def _is_available(self, order_id: str, executor_id: str, attempt_number: int) -> bool:
        try:
            result = await asyncio.wait_for(
                self._candidates.check_availability(executor_id),
                timeout=self._config.search.collaborator_timeout_seconds,
            )
        except Exception as e:
            self._collaborator_failed(order_id, "availability", e, attempt_number)
            return False
        if not result.available:
            logger.debug(f"Executor {executor_id} unavailable for order {order_id}: {result.reason}")
        return result.available

    # --------------------------------------------------------
    # OFFERS
    # --------------------------------------------------------

    async def _dispatch_offers(
        self,
        order: Order,
        attempt_number: int,
        ranked: List[Tuple[Candidate, float]],
    ) -> Dict[str, datetime]:
        """Offer in batches; returns executor -> delivery time for delivered offers."""
        offers = self._config.offers
        deadline = self._clock.now() + timedelta(seconds=offers.offer_ttl_seconds)
        notified: Dict[str, datetime] = {}

        for start in range(0, len(ranked), offers.batch_size):
            batch = ranked[start:start + offers.batch_size]
            current = await self._store.find_by_id(order.order_id)
            if current is None or current.status != OrderStatus.SEARCHING:
                logger.info(f"Order {order.order_id} left searching, stopping offers")
                break
            results = await asyncio.gather(*(
                self._offer_one(order, attempt_number, candidate, deadline)
                for candidate, _ in batch
            ))
            for (candidate, _), delivered_at in zip(batch, results):
                if delivered_at is not None:
                    notified[candidate.executor_id] = delivered_at
        return notified

    async def _offer_one(
        self,
        order: Order,
        attempt_number: int,
        candidate: Candidate,
        deadline: datetime,
    ) -> Optional[datetime]:
        offered_at = self._clock.now()
        logged = await self._store.append_to_list(
            order.order_id,
            "search_state.offer_log",
            OfferLogEntry(
                attempt_number=attempt_number,
                executor_id=candidate.executor_id,
                kind=OfferEventKind.OFFERED,
                at=offered_at,
                deadline=deadline,
            ),
            expected_status=OrderStatus.SEARCHING,
        )
        if not logged:
            return None

        summary = OfferSummary(
            order_id=order.order_id,
            order_number=order.order_number,
            service_type=order.service_type,
            location=order.location,
            priority=order.priority,
            attempt_number=attempt_number,
            distance_m=candidate.distance_m,
            eta_minutes=candidate.eta_minutes,
        )
        try:
            result = await asyncio.wait_for(
                self._notifier.offer(candidate.executor_id, summary, deadline),
                timeout=self._config.search.collaborator_timeout_seconds,
            )
        except Exception as e:
            self._collaborator_failed(order.order_id, "notifier", e, attempt_number)
            result = DispatchResult(delivered=False, error=str(e) or type(e).__name__)

        if result.delivered:
            return offered_at

        logger.info(
            f"Offer to {candidate.executor_id} for order {order.order_id} not delivered: {result.error}"
        )
        await self._store.append_to_list(
            order.order_id,
            "search_state.offer_log",
            OfferLogEntry(
                attempt_number=attempt_number,
                executor_id=candidate.executor_id,
                kind=OfferEventKind.NOTIFY_FAILED,
                at=self._clock.now(),
                detail=result.error,
            ),
        )
        return None

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    def _collaborator_failed(
        self,
        order_id: str,
        collaborator: str,
        error: Exception,
        attempt_number: int,
    ) -> None:
        message = str(error) or type(error).__name__
        logger.warning(
            f"{collaborator} failed for order {order_id} on attempt {attempt_number}: {message}"
        )
        self._events.publish(CollaboratorFailure(
            order_id=order_id,
            timestamp=self._clock.now(),
            collaborator=collaborator,
            error=message,
            attempt_number=attempt_number,
        ))

    async def _load(self, order_id: str) -> Order:
        order = await self._store.find_by_id(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    @staticmethod
    def _result(order: Order) -> SearchResult:
        return SearchResult(
            order_id=order.order_id,
            final_status=order.status,
            attempts=len(order.search_state.attempts),
            assigned_executor_id=order.executor.executor_id if order.executor else None,
        )
