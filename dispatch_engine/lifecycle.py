"""
Dispatch Engine - Lifecycle Coordinator.

============================================================
PURPOSE
============================================================
Sole owner of order status. Every transition goes through
here, is checked against the status table, is applied with a
conditional store update, and then arms the next timer.

RESPONSIBILITIES:
- Create orders under the creation guard
- Validate and apply transitions
- React to status timeouts
- Executor handshake (claim, accept, reject)
- Fulfilment steps, hold/resume, disputes
- Cancellation with penalty

SAFETY CONSTRAINTS:
- Transitions from terminal statuses are refused
- A transition that loses a race raises StaleTransition
- Timestamps are write-once and never go backwards
- A stale timer is a no-op

============================================================
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from .cancellation import CancellationPolicy
from .candidates import CandidateSource, haversine_m
from .clock import ClockProtocol, SystemClock
from .collaborators import PricingCollaborator, ExecutorDirectory
from .config import DispatchEngineConfig
from .creation_guard import CreationGuard
from .events import (
    EventSink,
    NullEventSink,
    OrderCreated,
    StatusChanged,
    OrderSearchFailed,
    CollaboratorFailure,
    ExecutorReminder,
    SlaBreached,
    OrderCancelled,
)
from .locks import InMemoryLockProvider
from .status_registry import (
    StatusRegistry,
    TimeoutAction,
    EntryAction,
    PAUSING_STATUSES,
    normalize_cancellation_reason,
    normalize_failure_reason,
)
from .store import OrderStore, OrderPatch
from .timers import TimerService, TimeoutTask
from .types import (
    Order,
    OrderStatus,
    OrderPriority,
    OrderSource,
    Actor,
    ActorRole,
    Candidate,
    Location,
    OrderTiming,
    SearchState,
    ExecutorAssignment,
    HistoryEntry,
    OfferLogEntry,
    OfferEventKind,
    CancellationRecord,
    PausedBudget,
    TIMING_FIELDS,
    ValidationError,
    InvalidTransition,
    StaleTransition,
    InvariantViolation,
    OrderNotFound,
    ExecutorMismatch,
    NotCancellable,
    CollaboratorError,
)
from .validation import OrderPayloadValidator


logger = logging.getLogger(__name__)


SearchLauncher = Callable[[str, OrderPriority], Any]

OFFER_NO_LONGER_AVAILABLE = "Offer no longer available"
OFFER_SUPERSEDED = "superseded"


class LifecycleCoordinator:
    """
    Applies order status transitions.

    Collaborators are injected; anything optional falls back to an
    in-process default.
    """

    def __init__(
        self,
        store: OrderStore,
        timers: TimerService,
        config: Optional[DispatchEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        events: Optional[EventSink] = None,
        guard: Optional[CreationGuard] = None,
        pricing: Optional[PricingCollaborator] = None,
        executors: Optional[ExecutorDirectory] = None,
        candidates: Optional[CandidateSource] = None,
    ):
        """
        Initialize coordinator.

        Args:
            store: Order store
            timers: Timer service; its handler is bound to this coordinator
            config: Engine configuration
            clock: Time source
            events: Event sink
            guard: Creation guard (in-process locks if None)
            pricing: Order totals for penalties
            executors: Executor reservation bookkeeping
            candidates: Live availability checks for manual assignment
        """
        self._store = store
        self._timers = timers
        self._config = config or DispatchEngineConfig()
        self._clock = clock or SystemClock()
        self._events = events or NullEventSink()
        self._guard = guard or CreationGuard(
            store,
            InMemoryLockProvider(self._clock),
            self._config.creation,
            self._clock,
        )
        self._pricing = pricing
        self._executors = executors
        self._candidates = candidates

        self._registry = StatusRegistry(self._config.timeouts)
        self._policy = CancellationPolicy(self._config.cancellation)
        self._validator = OrderPayloadValidator(self._config.creation)
        self._search_launcher: Optional[SearchLauncher] = None

        self._timers.bind(self.handle_timeout)

    @property
    def registry(self) -> StatusRegistry:
        return self._registry

    def set_search_launcher(self, launcher: Optional[SearchLauncher]) -> None:
        """Callable invoked whenever an order needs a search round."""
        self._search_launcher = launcher

    # --------------------------------------------------------
    # CREATION
    # --------------------------------------------------------

    async def create(self, requester_id: str, payload: Dict[str, Any]) -> Order:
        """
        Create an order in NEW.

        Raises:
            ValidationError: Bad payload
            CreationInProgress: Concurrent creation for the requester
            QuotaExceeded: Active or daily limit reached
        """
        now = self._clock.now()
        request = self._validator.validate(payload, now)
        priority = self._validator.determine_priority(request)

        async with self._guard.admit(requester_id):
            order_number = await self._allocate_order_number(now)
            order = Order(
                order_number=order_number,
                requester_id=requester_id,
                service_type=request.service_type,
                location=request.location,
                description=request.description,
                order_type=request.order_type,
                scheduled_for=request.scheduled_for,
                source=request.source,
                payment_method=request.payment_method,
                preferred_executor_ids=request.preferred_executor_ids,
                priority=priority,
                status=OrderStatus.NEW,
                status_changed_at=now,
                timing=OrderTiming(created_at=now),
                search_state=SearchState(
                    radius_m=self._config.search.initial_radius_m,
                    max_radius_m=self._config.search.max_radius_for(request.service_type),
                ),
                metadata=request.metadata,
            )
            await self._store.insert(order)

        logger.info(
            f"Created order {order.order_number} ({order.order_id}) for {requester_id}, "
            f"priority={priority.name}"
        )
        self._events.publish(OrderCreated(
            order_id=order.order_id,
            timestamp=now,
            requester_id=requester_id,
            order_number=order.order_number,
            priority=priority,
            scheduled=order.is_scheduled,
        ))

        if order.is_scheduled and order.scheduled_for is not None:
            delay = max((order.scheduled_for - now).total_seconds(), 0.0)
        else:
            delay = self._registry.timeout_for(OrderStatus.NEW)
        self._timers.schedule(order.order_id, OrderStatus.NEW, delay, order.transition_seq)
        return order

    async def repeat_order(self, order_id: str, requester_id: str) -> Order:
        """Create a new order like an earlier one, preferring its executor."""
        original = await self.get_order(order_id)
        if original.requester_id != requester_id:
            raise ValidationError({"order_id": "not an order of this requester"})

        preferred = list(original.preferred_executor_ids)
        if original.assignment is not None and original.assignment.executor_id not in preferred:
            preferred.insert(0, original.assignment.executor_id)

        return await self.create(requester_id, {
            "service_type": original.service_type,
            "location": original.location.to_dict(),
            "description": original.description,
            "payment_method": original.payment_method.value,
            "source": OrderSource.REPEAT_ORDER.value,
            "preferred_executor_ids": preferred,
            "metadata": {"repeat_of": original.order_id},
        })

    async def _allocate_order_number(self, now: datetime) -> str:
        scope = now.strftime("%Y%m%d")
        sequence = await self._store.next_sequence(scope)
        return f"{self._config.creation.order_number_prefix}-{scope}-{sequence:04d}"

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    async def get_order(self, order_id: str) -> Order:
        order = await self._store.find_by_id(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    # --------------------------------------------------------
    # TRANSITIONS
    # --------------------------------------------------------

    async def transition(
        self,
        order_id: str,
        to_status: OrderStatus,
        actor: Actor,
        reason: Optional[str] = None,
        patch: Optional[OrderPatch] = None,
    ) -> Order:
        """
        Move an order to `to_status`.

        Raises:
            OrderNotFound: Unknown order
            InvalidTransition: Not an allowed edge
            InvariantViolation: Resulting order would be inconsistent
            StaleTransition: Order changed concurrently
        """
        order = await self.get_order(order_id)
        return await self._transition(order, to_status, actor, reason, patch)

    async def _transition(
        self,
        order: Order,
        to_status: OrderStatus,
        actor: Actor,
        reason: Optional[str] = None,
        patch: Optional[OrderPatch] = None,
    ) -> Order:
        from_status = order.status
        allowed, why = self._registry.check_transition(from_status, to_status)
        if not allowed:
            logger.error(f"Refused transition for order {order.order_id}: {why}")
            raise InvalidTransition(from_status, to_status, why)

        now = self._clock.now()
        self._check_invariants(order, to_status, patch, now)
        arm_delay = self._entry_delay(order, to_status, now)

        full = OrderPatch()
        full.set("status", to_status)
        full.set("previous_status", from_status)
        full.set("status_changed_at", now)
        full.set("transition_seq", order.transition_seq + 1)
        if order.timing.get(to_status) is None:
            full.set(f"timing.{TIMING_FIELDS[to_status]}", now)

        if to_status in PAUSING_STATUSES and from_status not in PAUSING_STATUSES:
            full.set("paused_budget", self._remaining_budget(order, now))
        elif from_status in PAUSING_STATUSES and to_status not in PAUSING_STATUSES:
            full.set("paused_budget", None)
        if to_status == OrderStatus.SEARCHING and from_status != OrderStatus.SEARCHING:
            # Offers from an earlier search round cannot be claimed any more
            self._supersede_offers(full, order, now)
        full.extend(patch)

        applied = await self._store.conditional_update(
            order.order_id, from_status, full, expected_seq=order.transition_seq
        )
        if not applied:
            current = await self._store.find_by_id(order.order_id)
            actual = current.status if current is not None else None
            logger.info(
                f"Stale transition for order {order.order_id}: "
                f"{from_status.value} -> {to_status.value} (now {actual.value if actual else '?'})"
            )
            raise StaleTransition(order.order_id, from_status, actual)

        updated = await self.get_order(order.order_id)
        logger.info(
            f"Order {order.order_number or order.order_id}: {from_status.value} -> {to_status.value} "
            f"by {actor.role.value}{' ' + actor.actor_id if actor.actor_id else ''}"
            f"{f' ({reason})' if reason else ''}"
        )
        self._events.publish(StatusChanged(
            order_id=order.order_id,
            timestamp=now,
            from_status=from_status,
            to_status=to_status,
            actor_role=actor.role,
            actor_id=actor.actor_id,
            reason=reason,
        ))
        await self._run_entry_actions(updated, arm_delay)
        return updated

    def _check_invariants(
        self,
        order: Order,
        to_status: OrderStatus,
        patch: Optional[OrderPatch],
        now: datetime,
    ) -> None:
        if to_status.has_executor():
            if patch is not None and patch.sets("assignment"):
                assignment = patch.value_for("assignment")
            else:
                assignment = order.assignment
            if assignment is None:
                message = f"Order {order.order_id} cannot enter {to_status.value} without an executor"
                logger.error(message)
                raise InvariantViolation(message)

        latest = order.timing.latest()
        if order.status_changed_at is not None and (latest is None or order.status_changed_at > latest):
            latest = order.status_changed_at
        if latest is not None and now < latest:
            message = (
                f"Order {order.order_id} timestamp would go backwards "
                f"({now.isoformat()} < {latest.isoformat()})"
            )
            logger.error(message)
            raise InvariantViolation(message)

    def _remaining_budget(self, order: Order, now: datetime) -> Optional[PausedBudget]:
        timeout = self._registry.timeout_for(order.status)
        if timeout is None or order.status_changed_at is None:
            return None
        elapsed = (now - order.status_changed_at).total_seconds()
        return PausedBudget(status=order.status, remaining_seconds=max(timeout - elapsed, 0.0))

    def _entry_delay(self, order: Order, to_status: OrderStatus, now: datetime) -> Optional[float]:
        """Timer delay for the status being entered."""
        timeout = self._registry.timeout_for(to_status)
        if timeout is None:
            return None
        paused = order.paused_budget
        if order.status in PAUSING_STATUSES and paused is not None and paused.status == to_status:
            return paused.remaining_seconds
        return timeout

    async def _run_entry_actions(self, order: Order, arm_delay: Optional[float]) -> None:
        for action in self._registry.entry_actions(order.status):
            if action == EntryAction.ARM_TIMER:
                if arm_delay is not None:
                    self._timers.schedule(
                        order.order_id, order.status, arm_delay, order.transition_seq
                    )
            elif action == EntryAction.LAUNCH_SEARCH:
                self._launch_search(order)
            elif action == EntryAction.RESERVE_EXECUTOR:
                if order.assignment is not None:
                    await self._call_executors("reserve", order.assignment.executor_id, order.order_id)
            elif action == EntryAction.RELEASE_EXECUTOR:
                if order.assignment is not None:
                    await self._call_executors("release", order.assignment.executor_id, order.order_id)
            elif action == EntryAction.CLOSE:
                self._timers.cancel(order.order_id)
            else:
                raise InvariantViolation(f"Unhandled entry action {action}")

    def _launch_search(self, order: Order) -> None:
        if self._search_launcher is None:
            logger.debug(f"No search launcher; order {order.order_id} waits for its timer")
            return
        self._search_launcher(order.order_id, order.priority)

    async def _call_executors(self, operation: str, executor_id: str, order_id: str) -> None:
        if self._executors is None:
            return
        try:
            await asyncio.wait_for(
                getattr(self._executors, operation)(executor_id, order_id),
                timeout=self._config.search.collaborator_timeout_seconds,
            )
        except Exception as e:
            logger.warning(f"Executor {operation} failed for {executor_id} on {order_id}: {e}")
            self._events.publish(CollaboratorFailure(
                order_id=order_id,
                timestamp=self._clock.now(),
                collaborator=f"executor_directory.{operation}",
                error=str(e) or type(e).__name__,
            ))

    # --------------------------------------------------------
    # SEARCH AND ASSIGNMENT
    # --------------------------------------------------------

    async def start_search(self, order_id: str) -> Order:
        """NEW -> SEARCHING."""
        order = await self.get_order(order_id)
        return await self._transition(order, OrderStatus.SEARCHING, Actor.system(), "search_started")

    async def expire_search(self, order_id: str, reason: str = "no_executors_found") -> Order:
        """SEARCHING -> EXPIRED, announcing that the requester may retry."""
        order = await self.get_order(order_id)
        updated = await self._transition(order, OrderStatus.EXPIRED, Actor.system(), reason)
        self._events.publish(OrderSearchFailed(
            order_id=order_id,
            timestamp=self._clock.now(),
            attempts=len(updated.search_state.attempts),
            requester_id=updated.requester_id,
            can_retry=True,
        ))
        return updated

    async def assign(self, order_id: str, candidate: Candidate, actor: Actor) -> Order:
        """Direct assignment of a chosen executor (SEARCHING -> ASSIGNED)."""
        order = await self.get_order(order_id)
        if order.search_state.is_excluded(candidate.executor_id):
            raise InvalidTransition(
                order.status, OrderStatus.ASSIGNED,
                f"Executor {candidate.executor_id} is excluded from order {order_id}",
            )
        if self._candidates is not None:
            availability = await self._candidates.check_availability(candidate.executor_id)
            if not availability.available:
                raise InvalidTransition(
                    order.status, OrderStatus.ASSIGNED,
                    f"Executor {candidate.executor_id} is unavailable ({availability.reason})",
                )
        now = self._clock.now()
        patch = self._assignment_patch(
            candidate.executor_id,
            now,
            executor_type=candidate.executor_type,
            distance_m=candidate.distance_m,
            eta_minutes=candidate.eta_minutes,
        )
        self._supersede_offers(patch, order, now)
        return await self._transition(order, OrderStatus.ASSIGNED, actor, "executor_assigned", patch)

    @staticmethod
    def _supersede_offers(
        patch: OrderPatch,
        order: Order,
        now: datetime,
        claimed_by: Optional[str] = None,
    ) -> OrderPatch:
        """Expire every outstanding offer except the claimer's, in the same update."""
        for offer in order.search_state.outstanding_offers():
            if offer.executor_id == claimed_by:
                continue
            patch.append("search_state.offer_log", OfferLogEntry(
                attempt_number=offer.attempt_number,
                executor_id=offer.executor_id,
                kind=OfferEventKind.EXPIRED,
                at=now,
                detail=OFFER_SUPERSEDED,
            ))
        return patch

    def _assignment_patch(
        self,
        executor_id: str,
        now: datetime,
        executor_type: str = "individual",
        distance_m: Optional[float] = None,
        eta_minutes: Optional[float] = None,
    ) -> OrderPatch:
        return (
            OrderPatch()
            .set("assignment", ExecutorAssignment(
                executor_id=executor_id,
                executor_type=executor_type,
                assigned_at=now,
                distance_m=distance_m,
                eta_minutes=eta_minutes,
            ))
            .append("executor_history", HistoryEntry(executor_id, "assigned", now))
        )

    async def accept(self, order_id: str, executor_id: str) -> Order:
        """
        Executor accepts the order.

        A SEARCHING order is first claimed through the executor's live
        offer; only one claim can win. Anything else the executor could
        no longer accept raises StaleTransition.
        """
        order = await self.get_order(order_id)
        actor = Actor.executor(executor_id)
        now = self._clock.now()
        offered_at: Optional[datetime] = None

        if order.status == OrderStatus.SEARCHING:
            offer = order.search_state.live_offer(executor_id, now)
            if offer is None:
                logger.info(f"Executor {executor_id} has no live offer for order {order_id}")
                raise StaleTransition(order_id, message=OFFER_NO_LONGER_AVAILABLE)
            offered_at = offer.at
            distance_m, eta_minutes = self._offered_distance(order, executor_id)
            patch = self._assignment_patch(
                executor_id, now, distance_m=distance_m, eta_minutes=eta_minutes
            ).append("search_state.offer_log", OfferLogEntry(
                attempt_number=offer.attempt_number,
                executor_id=executor_id,
                kind=OfferEventKind.ACCEPTED,
                at=now,
            ))
            self._supersede_offers(patch, order, now, claimed_by=executor_id)
            try:
                order = await self._transition(order, OrderStatus.ASSIGNED, actor, "offer_claimed", patch)
            except StaleTransition:
                raise StaleTransition(order_id, message=OFFER_NO_LONGER_AVAILABLE)

        assignment = order.assignment
        if (
            order.status != OrderStatus.ASSIGNED
            or assignment is None
            or assignment.executor_id != executor_id
        ):
            raise StaleTransition(order_id, OrderStatus.ASSIGNED, order.status, OFFER_NO_LONGER_AVAILABLE)

        started = offered_at or assignment.assigned_at
        response_time = (now - started).total_seconds() if started else None
        patch = (
            OrderPatch()
            .set("assignment.accepted_at", now)
            .set("assignment.response_time_seconds", response_time)
            .append("executor_history", HistoryEntry(executor_id, "accepted", now))
        )
        try:
            return await self._transition(order, OrderStatus.ACCEPTED, actor, "executor_accepted", patch)
        except StaleTransition:
            raise StaleTransition(order_id, message=OFFER_NO_LONGER_AVAILABLE)

    def _offered_distance(
        self,
        order: Order,
        executor_id: str,
    ) -> Tuple[Optional[float], Optional[float]]:
        for attempt in reversed(order.search_state.attempts):
            for snapshot in attempt.candidates:
                if snapshot.executor_id == executor_id:
                    return snapshot.distance_m, snapshot.eta_minutes
        return None, None

    async def reject(self, order_id: str, executor_id: str, reason: Optional[str] = None) -> Order:
        """
        Executor declines.

        An assigned executor sends the order back to search; an executor
        holding a broadcast offer is just excluded.
        """
        order = await self.get_order(order_id)
        now = self._clock.now()
        reason_code = normalize_cancellation_reason(ActorRole.EXECUTOR, reason)

        if order.status == OrderStatus.ASSIGNED:
            if order.assignment is None or order.assignment.executor_id != executor_id:
                raise ExecutorMismatch(order_id, executor_id)
            patch = (
                OrderPatch()
                .set("assignment.rejected_at", now)
                .set("assignment.rejection_reason", reason_code)
                .add_to_set("search_state.excluded_executor_ids", executor_id)
                .append("executor_history", HistoryEntry(executor_id, "rejected", now, reason_code))
            )
            order = await self._transition(
                order, OrderStatus.REJECTED, Actor.executor(executor_id), reason_code, patch
            )
            try:
                return await self._transition(
                    order,
                    OrderStatus.SEARCHING,
                    Actor.system(),
                    "executor_rejected",
                    OrderPatch().set("assignment", None),
                )
            except StaleTransition:
                # REJECTED timer resumes the search
                return await self.get_order(order_id)

        if order.status == OrderStatus.SEARCHING:
            offer = order.search_state.live_offer(executor_id, now)
            if offer is not None:
                patch = (
                    OrderPatch()
                    .append("search_state.offer_log", OfferLogEntry(
                        attempt_number=offer.attempt_number,
                        executor_id=executor_id,
                        kind=OfferEventKind.REJECTED,
                        at=now,
                        detail=reason_code,
                    ))
                    .add_to_set("search_state.excluded_executor_ids", executor_id)
                )
                applied = await self._store.conditional_update(
                    order_id, OrderStatus.SEARCHING, patch
                )
                if applied:
                    logger.info(f"Executor {executor_id} declined offer for order {order_id}")
                    return await self.get_order(order_id)

        raise StaleTransition(order_id, message=OFFER_NO_LONGER_AVAILABLE)

    # --------------------------------------------------------
    # FULFILMENT
    # --------------------------------------------------------

    def _require_executor(self, order: Order, executor_id: str) -> None:
        if order.assignment is None or order.assignment.executor_id != executor_id:
            raise ExecutorMismatch(order.order_id, executor_id)

    async def start_route(self, order_id: str, executor_id: str) -> Order:
        """ACCEPTED -> EN_ROUTE."""
        order = await self.get_order(order_id)
        self._require_executor(order, executor_id)
        return await self._transition(
            order, OrderStatus.EN_ROUTE, Actor.executor(executor_id), "executor_departed"
        )

    async def confirm_arrival(
        self,
        order_id: str,
        executor_id: str,
        location: Optional[Location] = None,
    ) -> Order:
        """EN_ROUTE -> ARRIVED, optionally checking the executor's position."""
        order = await self.get_order(order_id)
        self._require_executor(order, executor_id)
        if location is not None:
            distance = haversine_m(order.location, location)
            if distance > self._config.creation.arrival_radius_m:
                raise ValidationError({
                    "location": f"{distance:.0f} m from pickup point",
                })
        return await self._transition(
            order, OrderStatus.ARRIVED, Actor.executor(executor_id), "executor_arrived"
        )

    async def start_work(self, order_id: str, executor_id: str) -> Order:
        """ARRIVED -> IN_PROGRESS."""
        order = await self.get_order(order_id)
        self._require_executor(order, executor_id)
        return await self._transition(
            order, OrderStatus.IN_PROGRESS, Actor.executor(executor_id), "work_started"
        )

    async def complete(
        self,
        order_id: str,
        actor: Actor,
        work_summary: Optional[str] = None,
    ) -> Order:
        """IN_PROGRESS or DISPUTED -> COMPLETED."""
        order = await self.get_order(order_id)
        if actor.role == ActorRole.EXECUTOR:
            self._require_executor(order, actor.actor_id)
            if not work_summary:
                raise ValidationError({"work_summary": "required"})
        patch = OrderPatch()
        if work_summary:
            patch.set("work_summary", work_summary)
        return await self._transition(order, OrderStatus.COMPLETED, actor, "work_completed", patch)

    async def fail(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> Order:
        """IN_PROGRESS or DISPUTED -> FAILED."""
        order = await self.get_order(order_id)
        if actor.role == ActorRole.EXECUTOR:
            self._require_executor(order, actor.actor_id)
        failure_reason = normalize_failure_reason(reason)
        patch = OrderPatch().set("failure_reason", failure_reason)
        return await self._transition(order, OrderStatus.FAILED, actor, failure_reason, patch)

    async def hold(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> Order:
        """Pause fulfilment; the interrupted status keeps its remaining budget."""
        order = await self.get_order(order_id)
        if actor.role == ActorRole.EXECUTOR:
            self._require_executor(order, actor.actor_id)
        return await self._transition(order, OrderStatus.ON_HOLD, actor, reason or "on_hold")

    async def resume(
        self,
        order_id: str,
        actor: Actor,
        to_status: Optional[OrderStatus] = None,
    ) -> Order:
        """ON_HOLD -> `to_status`, defaulting to the interrupted status."""
        order = await self.get_order(order_id)
        if to_status is None:
            if order.paused_budget is not None:
                to_status = order.paused_budget.status
            elif order.previous_status is not None:
                to_status = order.previous_status
            else:
                raise InvalidTransition(order.status, order.status, "Nothing to resume to")
        return await self._transition(order, to_status, actor, "resumed")

    async def dispute(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> Order:
        """IN_PROGRESS -> DISPUTED."""
        order = await self.get_order(order_id)
        return await self._transition(order, OrderStatus.DISPUTED, actor, reason or "disputed")

    async def resolve_dispute(
        self,
        order_id: str,
        actor: Actor,
        outcome: OrderStatus,
        reason: Optional[str] = None,
    ) -> Order:
        """DISPUTED -> COMPLETED, FAILED or CANCELLED."""
        order = await self.get_order(order_id)
        if order.status != OrderStatus.DISPUTED:
            raise InvalidTransition(order.status, outcome, f"Order {order_id} is not disputed")
        now = self._clock.now()
        patch = OrderPatch()
        if outcome == OrderStatus.FAILED:
            patch.set("failure_reason", normalize_failure_reason(reason))
        elif outcome == OrderStatus.CANCELLED:
            patch.set("cancellation", CancellationRecord(
                reason=normalize_cancellation_reason(actor.role, reason),
                actor_role=actor.role,
                actor_id=actor.actor_id,
                penalty_amount=Decimal("0"),
                cancelled_at=now,
            ))
        return await self._transition(order, outcome, actor, reason or "dispute_resolved", patch)

    # --------------------------------------------------------
    # CANCELLATION
    # --------------------------------------------------------

    async def cancel(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> Order:
        """
        Cancel an order under the cancellation policy.

        Raises:
            NotCancellable: Status does not allow cancellation
            ExecutorMismatch: Executor is not the assigned one
            CollaboratorError: Order total unavailable
            StaleTransition: Order changed concurrently
        """
        order = await self.get_order(order_id)
        prior_executor = order.executor

        if actor.role == ActorRole.EXECUTOR:
            if prior_executor is None or prior_executor.executor_id != actor.actor_id:
                raise ExecutorMismatch(order_id, actor.actor_id)

        total = Decimal("0")
        if actor.role == ActorRole.REQUESTER and order.status.allows_cancel():
            total = await self._order_total(order_id)

        now = self._clock.now()
        decision = self._policy.evaluate(order, actor.role, now, total)
        if not decision.allowed:
            logger.info(f"Cancellation of order {order_id} refused: {decision.reason_code}")
            raise NotCancellable(order_id, decision.reason_code)

        reason_code = normalize_cancellation_reason(actor.role, reason)
        patch = OrderPatch().set("cancellation", CancellationRecord(
            reason=reason_code,
            actor_role=actor.role,
            actor_id=actor.actor_id,
            penalty_amount=decision.penalty_amount,
            cancelled_at=now,
        ))
        if actor.role == ActorRole.EXECUTOR:
            patch.add_to_set("search_state.excluded_executor_ids", actor.actor_id)
            patch.append("executor_history", HistoryEntry(actor.actor_id, "cancelled", now, reason_code))

        updated = await self._transition(order, OrderStatus.CANCELLED, actor, reason_code, patch)

        if prior_executor is not None:
            await self._call_executors("release", prior_executor.executor_id, order_id)

        self._events.publish(OrderCancelled(
            order_id=order_id,
            timestamp=now,
            actor_role=actor.role,
            actor_id=actor.actor_id,
            reason=reason_code,
            penalty_amount=decision.penalty_amount,
            reason_code=decision.reason_code,
        ))
        return updated

    async def _order_total(self, order_id: str) -> Decimal:
        if self._pricing is None:
            return Decimal("0")
        try:
            return await asyncio.wait_for(
                self._pricing.get_order_total(order_id),
                timeout=self._config.search.collaborator_timeout_seconds,
            )
        except Exception as e:
            logger.warning(f"Pricing lookup failed for order {order_id}: {e}")
            self._events.publish(CollaboratorFailure(
                order_id=order_id,
                timestamp=self._clock.now(),
                collaborator="pricing",
                error=str(e) or type(e).__name__,
            ))
            raise CollaboratorError("pricing", str(e) or type(e).__name__) from e

    # --------------------------------------------------------
    # TIMEOUTS
    # --------------------------------------------------------

    async def handle_timeout(self, task: TimeoutTask) -> Optional[Order]:
        """Timer service entry point."""
        return await self.on_timeout(task.order_id, task.expected_status, task.transition_seq)

    async def on_timeout(
        self,
        order_id: str,
        expected_status: OrderStatus,
        transition_seq: Optional[int] = None,
    ) -> Optional[Order]:
        """
        Run the timeout action for `expected_status`.

        No-op if the order moved on since the timer was armed.
        """
        order = await self._store.find_by_id(order_id)
        if order is None:
            logger.warning(f"Timer fired for unknown order {order_id}")
            return None
        if order.status != expected_status or (
            transition_seq is not None and order.transition_seq != transition_seq
        ):
            logger.debug(
                f"Ignoring stale {expected_status.value} timer for order {order_id} "
                f"(now {order.status.value})"
            )
            return None

        action = self._registry.timeout_action(expected_status)
        logger.info(f"Timeout {action.value} for order {order_id} in {expected_status.value}")
        try:
            return await self._apply_timeout(order, action)
        except StaleTransition as e:
            logger.info(f"Timeout for order {order_id} lost a race: {e}")
            return None

    async def _apply_timeout(self, order: Order, action: TimeoutAction) -> Order:
        if action == TimeoutAction.START_SEARCH:
            return await self._transition(order, OrderStatus.SEARCHING, Actor.system(), "new_timeout")

        if action == TimeoutAction.CONTINUE_OR_EXPIRE:
            if len(order.search_state.attempts) >= self._config.search.max_attempts:
                return await self.expire_search(order.order_id, "search_timeout")
            self._launch_search(order)
            self._timers.schedule(
                order.order_id,
                OrderStatus.SEARCHING,
                self._registry.timeout_for(OrderStatus.SEARCHING),
                order.transition_seq,
            )
            return order

        if action == TimeoutAction.REVERT_TO_SEARCH:
            if order.assignment is None:
                raise InvariantViolation(f"Order {order.order_id} is assigned without an executor")
            executor_id = order.assignment.executor_id
            now = self._clock.now()
            patch = (
                OrderPatch()
                .add_to_set("search_state.excluded_executor_ids", executor_id)
                .append("executor_history", HistoryEntry(executor_id, "timed_out", now))
                .set("assignment", None)
            )
            return await self._transition(
                order, OrderStatus.SEARCHING, Actor.system(), "executor_response_timeout", patch
            )

        if action == TimeoutAction.RESUME_SEARCH:
            return await self._transition(
                order,
                OrderStatus.SEARCHING,
                Actor.system(),
                "rejected_timeout",
                OrderPatch().set("assignment", None),
            )

        if action == TimeoutAction.REMIND_EXECUTOR:
            self._events.publish(ExecutorReminder(
                order_id=order.order_id,
                timestamp=self._clock.now(),
                executor_id=order.assignment.executor_id if order.assignment else "",
            ))
            return order

        if action == TimeoutAction.ESCALATE:
            timeout = self._registry.timeout_for(order.status) or 0.0
            logger.warning(
                f"Order {order.order_id} overran {order.status.value} ({timeout:.0f}s)"
            )
            self._events.publish(SlaBreached(
                order_id=order.order_id,
                timestamp=self._clock.now(),
                status=order.status,
                timeout_seconds=timeout,
                executor_id=order.assignment.executor_id if order.assignment else None,
            ))
            return order

        raise InvariantViolation(f"Unhandled timeout action {action}")

    # --------------------------------------------------------
    # RECOVERY
    # --------------------------------------------------------

    async def recover(self) -> int:
        """
        Re-arm timers of every non-terminal order after a restart.

        Returns:
            Number of orders re-armed
        """
        live = [s for s in OrderStatus if not s.is_terminal()]
        orders = await self._store.find_by_statuses(live)
        now = self._clock.now()
        for order in orders:
            if order.status == OrderStatus.NEW and order.is_scheduled and order.scheduled_for:
                delay = max((order.scheduled_for - now).total_seconds(), 0.0)
            else:
                timeout = self._registry.timeout_for(order.status) or 0.0
                elapsed = (now - order.status_changed_at).total_seconds() if order.status_changed_at else 0.0
                delay = max(timeout - elapsed, 0.0)
            self._timers.schedule(order.order_id, order.status, delay, order.transition_seq)
            if order.status == OrderStatus.SEARCHING:
                self._launch_search(order)
        logger.info(f"Recovered timers for {len(orders)} orders")
        return len(orders)
