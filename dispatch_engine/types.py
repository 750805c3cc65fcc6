"""
Dispatch Engine - Types.

============================================================
PURPOSE
============================================================
All type definitions for the Dispatch Engine.

CRITICAL PRINCIPLE:
    "Only the LifecycleCoordinator changes an order's status."
    "History is appended, never rewritten."

============================================================
"""

from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from decimal import Decimal
import uuid


def _dt_out(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt_in(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ============================================================
# ORDER STATUS
# ============================================================

class OrderStatus(Enum):
    """
    Order lifecycle status.

    Happy path:

    NEW ──► SEARCHING ──► ASSIGNED ──► ACCEPTED ──► EN_ROUTE
                ▲             │                         │
                │             ▼                         ▼
                └──────── REJECTED                   ARRIVED
                                                        │
                                                        ▼
                                COMPLETED ◄──────── IN_PROGRESS

    Side exits: CANCELLED, EXPIRED, FAILED, ON_HOLD, DISPUTED.
    """

    NEW = "new"
    """Created, search not started yet."""

    SEARCHING = "searching"
    """Looking for an executor."""

    ASSIGNED = "assigned"
    """Executor chosen, awaiting acceptance."""

    ACCEPTED = "accepted"
    """Executor accepted the order."""

    REJECTED = "rejected"
    """Executor declined, search resumes."""

    EN_ROUTE = "en_route"
    """Executor travelling to the requester."""

    ARRIVED = "arrived"
    """Executor on site."""

    IN_PROGRESS = "in_progress"
    """Work under way."""

    ON_HOLD = "on_hold"
    """Paused mid-fulfilment."""

    COMPLETED = "completed"
    """Work finished."""

    CANCELLED = "cancelled"
    """Cancelled by a participant or the system."""

    FAILED = "failed"
    """Work could not be done."""

    DISPUTED = "disputed"
    """Outcome contested, awaiting resolution."""

    EXPIRED = "expired"
    """No executor found in time."""

    def is_terminal(self) -> bool:
        """Check if this is a terminal status."""
        return self in FINAL_STATUSES

    def is_active(self) -> bool:
        """Check if the order still counts against the requester's quota."""
        return self in ACTIVE_STATUSES

    def has_executor(self) -> bool:
        """Check if an executor is attached in this status."""
        return self in WITH_EXECUTOR_STATUSES

    def allows_cancel(self) -> bool:
        """Check if the order can be cancelled."""
        return self in CANCELLABLE_STATUSES


ACTIVE_STATUSES = frozenset({
    OrderStatus.NEW,
    OrderStatus.SEARCHING,
    OrderStatus.ASSIGNED,
    OrderStatus.ACCEPTED,
    OrderStatus.EN_ROUTE,
    OrderStatus.ARRIVED,
    OrderStatus.IN_PROGRESS,
    OrderStatus.ON_HOLD,
})

FINAL_STATUSES = frozenset({
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
    OrderStatus.FAILED,
    OrderStatus.EXPIRED,
})

WITH_EXECUTOR_STATUSES = frozenset({
    OrderStatus.ASSIGNED,
    OrderStatus.ACCEPTED,
    OrderStatus.EN_ROUTE,
    OrderStatus.ARRIVED,
    OrderStatus.IN_PROGRESS,
})

CANCELLABLE_STATUSES = frozenset({
    OrderStatus.NEW,
    OrderStatus.SEARCHING,
    OrderStatus.ASSIGNED,
    OrderStatus.ACCEPTED,
    OrderStatus.EN_ROUTE,
})


# Timing field stamped on first entry into each status
TIMING_FIELDS: Dict[OrderStatus, str] = {
    OrderStatus.NEW: "created_at",
    OrderStatus.SEARCHING: "search_started_at",
    OrderStatus.ASSIGNED: "assigned_at",
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.REJECTED: "rejected_at",
    OrderStatus.EN_ROUTE: "en_route_at",
    OrderStatus.ARRIVED: "arrived_at",
    OrderStatus.IN_PROGRESS: "started_at",
    OrderStatus.ON_HOLD: "held_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
    OrderStatus.FAILED: "failed_at",
    OrderStatus.DISPUTED: "disputed_at",
    OrderStatus.EXPIRED: "expired_at",
}


# ============================================================
# ENUMERATIONS
# ============================================================

class OrderPriority(IntEnum):
    """Search queue priority. Higher is served first."""

    LOW = 0
    NORMAL = 1
    HIGH = 2
    URGENT = 3
    CRITICAL = 4


class ActorRole(Enum):
    """Who initiated an action."""

    REQUESTER = "requester"
    EXECUTOR = "executor"
    SYSTEM = "system"
    OPERATOR = "operator"


class OrderType(Enum):
    """When the order should be served."""

    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"


class OrderSource(Enum):
    """Channel the order came from."""

    MOBILE_APP = "mobile_app"
    WEB = "web"
    CALL_CENTER = "call_center"
    API = "api"
    REPEAT_ORDER = "repeat_order"


class PaymentMethod(Enum):
    """How the requester pays."""

    CASH = "cash"
    CARD = "card"


class SearchOutcome(Enum):
    """Outcome of one search attempt."""

    FOUND = "found"
    """At least one offer was delivered."""

    EMPTY = "empty"
    """Source returned no candidates."""

    EXPANDED = "expanded"
    """Candidates existed but none were eligible or reachable."""

    FAILED = "failed"
    """A collaborator failed during the attempt."""


class OfferEventKind(Enum):
    """Follow-up events recorded against an offer."""

    OFFERED = "offered"
    NOTIFY_FAILED = "notify_failed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


# ============================================================
# VALUE OBJECTS
# ============================================================

@dataclass(frozen=True)
class Location:
    """Geographic point."""

    lat: float
    lng: float
    address: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"lat": self.lat, "lng": self.lng, "address": self.address}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Location":
        return cls(
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            address=data.get("address", ""),
        )


@dataclass(frozen=True)
class Actor:
    """Participant performing an action."""

    role: ActorRole
    """Actor role."""

    actor_id: Optional[str] = None
    """Actor identity (None for the system)."""

    @classmethod
    def system(cls) -> "Actor":
        return cls(role=ActorRole.SYSTEM)

    @classmethod
    def requester(cls, requester_id: str) -> "Actor":
        return cls(role=ActorRole.REQUESTER, actor_id=requester_id)

    @classmethod
    def executor(cls, executor_id: str) -> "Actor":
        return cls(role=ActorRole.EXECUTOR, actor_id=executor_id)

    @classmethod
    def operator(cls, operator_id: str) -> "Actor":
        return cls(role=ActorRole.OPERATOR, actor_id=operator_id)


# ============================================================
# SEARCH HISTORY
# ============================================================

@dataclass(frozen=True)
class CandidateSnapshot:
    """Candidate as seen during one attempt."""

    executor_id: str
    distance_m: float
    eta_minutes: Optional[float] = None
    rating: Optional[float] = None
    score: float = 0.0
    notified: bool = False
    notified_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executor_id": self.executor_id,
            "distance_m": self.distance_m,
            "eta_minutes": self.eta_minutes,
            "rating": self.rating,
            "score": self.score,
            "notified": self.notified,
            "notified_at": _dt_out(self.notified_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CandidateSnapshot":
        return cls(
            executor_id=data["executor_id"],
            distance_m=data["distance_m"],
            eta_minutes=data.get("eta_minutes"),
            rating=data.get("rating"),
            score=data.get("score", 0.0),
            notified=data.get("notified", False),
            notified_at=_dt_in(data.get("notified_at")),
        )


@dataclass(frozen=True)
class SearchAttempt:
    """
    One completed search attempt.

    Immutable once appended to the order.
    """

    attempt_number: int
    """1-based attempt counter."""

    radius_m: int
    """Radius used for this attempt."""

    timestamp: datetime
    """When the attempt was recorded."""

    outcome: SearchOutcome
    """What the attempt produced."""

    candidates: Tuple[CandidateSnapshot, ...] = ()
    """Ranked candidates with notification flags."""

    error: Optional[str] = None
    """Collaborator error, if any."""

    @property
    def notified_count(self) -> int:
        return sum(1 for c in self.candidates if c.notified)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_number": self.attempt_number,
            "radius_m": self.radius_m,
            "timestamp": _dt_out(self.timestamp),
            "outcome": self.outcome.value,
            "candidates": [c.to_dict() for c in self.candidates],
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchAttempt":
        return cls(
            attempt_number=data["attempt_number"],
            radius_m=data["radius_m"],
            timestamp=_dt_in(data["timestamp"]),
            outcome=SearchOutcome(data["outcome"]),
            candidates=tuple(
                CandidateSnapshot.from_dict(c) for c in data.get("candidates", [])
            ),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class OfferLogEntry:
    """Append-only record of an offer and its follow-ups."""

    attempt_number: int
    executor_id: str
    kind: OfferEventKind
    at: datetime
    deadline: Optional[datetime] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_number": self.attempt_number,
            "executor_id": self.executor_id,
            "kind": self.kind.value,
            "at": _dt_out(self.at),
            "deadline": _dt_out(self.deadline),
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OfferLogEntry":
        return cls(
            attempt_number=data["attempt_number"],
            executor_id=data["executor_id"],
            kind=OfferEventKind(data["kind"]),
            at=_dt_in(data["at"]),
            deadline=_dt_in(data.get("deadline")),
            detail=data.get("detail"),
        )


@dataclass
class SearchState:
    """Search bookkeeping carried on the order."""

    radius_m: int = 5000
    """Radius for the next attempt."""

    max_radius_m: int = 30000
    """Radius cap for this order's service type."""

    excluded_executor_ids: List[str] = field(default_factory=list)
    """Executors never to be offered this order again."""

    attempts: List[SearchAttempt] = field(default_factory=list)
    """Completed attempts, oldest first."""

    offer_log: List[OfferLogEntry] = field(default_factory=list)
    """Offer follow-up events, oldest first."""

    def is_excluded(self, executor_id: str) -> bool:
        return executor_id in self.excluded_executor_ids

    def latest_offer_event(self, executor_id: str) -> Optional[OfferLogEntry]:
        for entry in reversed(self.offer_log):
            if entry.executor_id == executor_id:
                return entry
        return None

    def live_offer(self, executor_id: str, now: datetime) -> Optional[OfferLogEntry]:
        """Return the executor's outstanding offer if it can still be accepted."""
        if self.is_excluded(executor_id):
            return None
        entry = self.latest_offer_event(executor_id)
        if entry is None or entry.kind != OfferEventKind.OFFERED:
            return None
        if entry.deadline is not None and now > entry.deadline:
            return None
        return entry

    def unanswered_offers(self, attempt_number: int) -> List[str]:
        """Executors whose offer from the given attempt got no response."""
        latest: Dict[str, OfferLogEntry] = {}
        for entry in self.offer_log:
            if entry.attempt_number == attempt_number:
                latest[entry.executor_id] = entry
        return [
            executor_id for executor_id, entry in latest.items()
            if entry.kind == OfferEventKind.OFFERED
        ]

    def outstanding_offers(self) -> List[OfferLogEntry]:
        """Latest offer of each executor that nobody answered or expired yet."""
        latest: Dict[str, OfferLogEntry] = {}
        for entry in self.offer_log:
            latest[entry.executor_id] = entry
        return [e for e in latest.values() if e.kind == OfferEventKind.OFFERED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "radius_m": self.radius_m,
            "max_radius_m": self.max_radius_m,
            "excluded_executor_ids": list(self.excluded_executor_ids),
            "attempts": [a.to_dict() for a in self.attempts],
            "offer_log": [e.to_dict() for e in self.offer_log],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchState":
        return cls(
            radius_m=data["radius_m"],
            max_radius_m=data["max_radius_m"],
            excluded_executor_ids=list(data.get("excluded_executor_ids", [])),
            attempts=[SearchAttempt.from_dict(a) for a in data.get("attempts", [])],
            offer_log=[OfferLogEntry.from_dict(e) for e in data.get("offer_log", [])],
        )


# ============================================================
# ORDER PARTS
# ============================================================

@dataclass
class ExecutorAssignment:
    """Executor attached to an order."""

    executor_id: str
    executor_type: str = "individual"
    assigned_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    response_time_seconds: Optional[float] = None
    distance_m: Optional[float] = None
    eta_minutes: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executor_id": self.executor_id,
            "executor_type": self.executor_type,
            "assigned_at": _dt_out(self.assigned_at),
            "accepted_at": _dt_out(self.accepted_at),
            "rejected_at": _dt_out(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "response_time_seconds": self.response_time_seconds,
            "distance_m": self.distance_m,
            "eta_minutes": self.eta_minutes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutorAssignment":
        return cls(
            executor_id=data["executor_id"],
            executor_type=data.get("executor_type", "individual"),
            assigned_at=_dt_in(data.get("assigned_at")),
            accepted_at=_dt_in(data.get("accepted_at")),
            rejected_at=_dt_in(data.get("rejected_at")),
            rejection_reason=data.get("rejection_reason"),
            response_time_seconds=data.get("response_time_seconds"),
            distance_m=data.get("distance_m"),
            eta_minutes=data.get("eta_minutes"),
        )


@dataclass
class HistoryEntry:
    """Audit record of one executor's involvement with an order."""

    executor_id: str
    event: str
    at: datetime
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executor_id": self.executor_id,
            "event": self.event,
            "at": _dt_out(self.at),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            executor_id=data["executor_id"],
            event=data["event"],
            at=_dt_in(data["at"]),
            reason=data.get("reason"),
        )


@dataclass
class OrderTiming:
    """Write-once timestamps, one per visited status."""

    created_at: Optional[datetime] = None
    search_started_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    en_route_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    held_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None

    def get(self, status: OrderStatus) -> Optional[datetime]:
        return getattr(self, TIMING_FIELDS[status])

    def stamped(self) -> List[datetime]:
        """All set timestamps in field order."""
        values = (getattr(self, name) for name in TIMING_FIELDS.values())
        return [v for v in values if v is not None]

    def latest(self) -> Optional[datetime]:
        stamped = self.stamped()
        return max(stamped) if stamped else None

    def to_dict(self) -> Dict[str, Any]:
        return {name: _dt_out(getattr(self, name)) for name in TIMING_FIELDS.values()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderTiming":
        return cls(**{
            name: _dt_in(data.get(name)) for name in TIMING_FIELDS.values()
        })


@dataclass
class CancellationRecord:
    """Set exactly once when an order is cancelled."""

    reason: str
    actor_role: ActorRole
    actor_id: Optional[str]
    penalty_amount: Decimal
    cancelled_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "actor_role": self.actor_role.value,
            "actor_id": self.actor_id,
            "penalty_amount": str(self.penalty_amount),
            "cancelled_at": _dt_out(self.cancelled_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CancellationRecord":
        return cls(
            reason=data["reason"],
            actor_role=ActorRole(data["actor_role"]),
            actor_id=data.get("actor_id"),
            penalty_amount=Decimal(data["penalty_amount"]),
            cancelled_at=_dt_in(data["cancelled_at"]),
        )


@dataclass
class PausedBudget:
    """Remaining timeout of a status interrupted by ON_HOLD or DISPUTED."""

    status: OrderStatus
    remaining_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "remaining_seconds": self.remaining_seconds}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PausedBudget":
        return cls(
            status=OrderStatus(data["status"]),
            remaining_seconds=float(data["remaining_seconds"]),
        )


# ============================================================
# ORDER
# ============================================================

@dataclass
class Order:
    """
    Order aggregate.

    Status and everything derived from it are written by the
    LifecycleCoordinator through conditional store updates.
    """

    # Identifiers
    order_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    """Opaque order ID."""

    order_number: str = ""
    """Human-readable number, unique per day."""

    requester_id: str = ""
    """Who requested the service."""

    # Request
    service_type: str = ""
    location: Location = field(default_factory=lambda: Location(0.0, 0.0))
    description: str = ""
    order_type: OrderType = OrderType.IMMEDIATE
    scheduled_for: Optional[datetime] = None
    source: OrderSource = OrderSource.MOBILE_APP
    payment_method: PaymentMethod = PaymentMethod.CASH
    preferred_executor_ids: List[str] = field(default_factory=list)
    priority: OrderPriority = OrderPriority.NORMAL

    # Lifecycle
    status: OrderStatus = OrderStatus.NEW
    """Current status."""

    previous_status: Optional[OrderStatus] = None
    """Status before the last transition."""

    status_changed_at: Optional[datetime] = None
    """When the current status was entered."""

    transition_seq: int = 0
    """Incremented on every transition."""

    timing: OrderTiming = field(default_factory=OrderTiming)
    paused_budget: Optional[PausedBudget] = None

    # Dispatch
    search_state: SearchState = field(default_factory=SearchState)
    assignment: Optional[ExecutorAssignment] = None
    """Most recent assignment; see `executor`."""

    executor_history: List[HistoryEntry] = field(default_factory=list)
    """Append-only executor audit trail."""

    # Outcome
    cancellation: Optional[CancellationRecord] = None
    failure_reason: Optional[str] = None
    work_summary: Optional[str] = None

    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def executor(self) -> Optional[ExecutorAssignment]:
        """Assigned executor while the status carries one, else None."""
        if self.status.has_executor():
            return self.assignment
        return None

    @property
    def is_scheduled(self) -> bool:
        return self.order_type == OrderType.SCHEDULED

    def to_document(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible document."""
        return {
            "order_id": self.order_id,
            "order_number": self.order_number,
            "requester_id": self.requester_id,
            "service_type": self.service_type,
            "location": self.location.to_dict(),
            "description": self.description,
            "order_type": self.order_type.value,
            "scheduled_for": _dt_out(self.scheduled_for),
            "source": self.source.value,
            "payment_method": self.payment_method.value,
            "preferred_executor_ids": list(self.preferred_executor_ids),
            "priority": int(self.priority),
            "status": self.status.value,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "status_changed_at": _dt_out(self.status_changed_at),
            "transition_seq": self.transition_seq,
            "timing": self.timing.to_dict(),
            "paused_budget": self.paused_budget.to_dict() if self.paused_budget else None,
            "search_state": self.search_state.to_dict(),
            "assignment": self.assignment.to_dict() if self.assignment else None,
            "executor_history": [h.to_dict() for h in self.executor_history],
            "cancellation": self.cancellation.to_dict() if self.cancellation else None,
            "failure_reason": self.failure_reason,
            "work_summary": self.work_summary,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Order":
        """Rebuild an order from `to_document` output."""
        previous = doc.get("previous_status")
        paused = doc.get("paused_budget")
        assignment = doc.get("assignment")
        cancellation = doc.get("cancellation")
        return cls(
            order_id=doc["order_id"],
            order_number=doc.get("order_number", ""),
            requester_id=doc["requester_id"],
            service_type=doc.get("service_type", ""),
            location=Location.from_dict(doc["location"]),
            description=doc.get("description", ""),
            order_type=OrderType(doc.get("order_type", "immediate")),
            scheduled_for=_dt_in(doc.get("scheduled_for")),
            source=OrderSource(doc.get("source", "mobile_app")),
            payment_method=PaymentMethod(doc.get("payment_method", "cash")),
            preferred_executor_ids=list(doc.get("preferred_executor_ids", [])),
            priority=OrderPriority(doc.get("priority", 1)),
            status=OrderStatus(doc["status"]),
            previous_status=OrderStatus(previous) if previous else None,
            status_changed_at=_dt_in(doc.get("status_changed_at")),
            transition_seq=doc.get("transition_seq", 0),
            timing=OrderTiming.from_dict(doc.get("timing", {})),
            paused_budget=PausedBudget.from_dict(paused) if paused else None,
            search_state=SearchState.from_dict(doc["search_state"]),
            assignment=ExecutorAssignment.from_dict(assignment) if assignment else None,
            executor_history=[
                HistoryEntry.from_dict(h) for h in doc.get("executor_history", [])
            ],
            cancellation=CancellationRecord.from_dict(cancellation) if cancellation else None,
            failure_reason=doc.get("failure_reason"),
            work_summary=doc.get("work_summary"),
            metadata=dict(doc.get("metadata", {})),
        )


# ============================================================
# COLLABORATOR TYPES
# ============================================================

@dataclass
class Candidate:
    """Executor returned by a candidate search."""

    executor_id: str
    distance_m: float
    rating: float = 5.0
    eta_minutes: Optional[float] = None
    executor_type: str = "individual"
    active_orders: int = 0
    max_active_orders: int = 1
    previously_served: bool = False
    """Executor has served this requester before."""


@dataclass
class AvailabilityResult:
    """Live availability of an executor."""

    available: bool
    reason: Optional[str] = None


@dataclass
class SearchCriteria:
    """Query sent to a CandidateSource."""

    location: Location
    radius_m: int
    service_type: str
    excluded_executor_ids: List[str] = field(default_factory=list)
    requester_id: Optional[str] = None
    limit: int = 50


@dataclass
class OfferSummary:
    """What an executor sees in an offer."""

    order_id: str
    order_number: str
    service_type: str
    location: Location
    priority: OrderPriority
    attempt_number: int
    distance_m: Optional[float] = None
    eta_minutes: Optional[float] = None


@dataclass
class DispatchResult:
    """Result of delivering one offer."""

    delivered: bool
    channel: str = ""
    error: Optional[str] = None


@dataclass
class CancellationDecision:
    """Outcome of a cancellation evaluation. Not persisted."""

    allowed: bool
    penalty_amount: Decimal = Decimal("0")
    reason_code: str = ""


@dataclass
class SearchResult:
    """Summary returned when a search loop stops."""

    order_id: str
    final_status: Optional[OrderStatus]
    attempts: int
    assigned_executor_id: Optional[str] = None


# ============================================================
# EXCEPTIONS
# ============================================================

class DispatchEngineError(Exception):
    """Base exception for Dispatch Engine."""

    code = "DISPATCH_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class ValidationError(DispatchEngineError):
    """Creation payload rejected."""

    code = "VALIDATION_ERROR"

    def __init__(self, errors: Dict[str, str]):
        summary = ", ".join(f"{k}: {v}" for k, v in errors.items())
        super().__init__(f"Invalid order payload ({summary})")
        self.errors = errors


class QuotaExceeded(DispatchEngineError):
    """Requester is over an order quota."""

    def __init__(self, code: str, current: int, limit: int):
        super().__init__(f"{code}: {current} of {limit}", code=code)
        self.current = current
        self.limit = limit


class CreationInProgress(DispatchEngineError):
    """Another creation for the same requester holds the lock."""

    code = "ORDER_CREATION_IN_PROGRESS"
    is_retryable = True

    def __init__(self, requester_id: str):
        super().__init__(f"Order creation already in progress for {requester_id}")
        self.requester_id = requester_id


class InvalidTransition(DispatchEngineError):
    """Transition not in the table, or from a terminal status."""

    code = "INVALID_TRANSITION"

    def __init__(
        self,
        from_status: OrderStatus,
        to_status: OrderStatus,
        reason: str = "",
    ):
        message = reason or f"Invalid transition: {from_status.value} -> {to_status.value}"
        super().__init__(message)
        self.from_status = from_status
        self.to_status = to_status


class StaleTransition(DispatchEngineError):
    """Order changed underneath the caller."""

    code = "STALE_TRANSITION"

    def __init__(
        self,
        order_id: str,
        expected: Optional[OrderStatus] = None,
        actual: Optional[OrderStatus] = None,
        message: str = "",
    ):
        if not message:
            expected_value = expected.value if expected else "?"
            actual_value = actual.value if actual else "?"
            message = f"Order {order_id} is no longer {expected_value} (now {actual_value})"
        super().__init__(message)
        self.order_id = order_id
        self.expected = expected
        self.actual = actual


class SearchExhausted(DispatchEngineError):
    """All search attempts used without a winner."""

    code = "SEARCH_EXHAUSTED"

    def __init__(self, order_id: str, attempts: int):
        super().__init__(f"Search for {order_id} exhausted after {attempts} attempts")
        self.order_id = order_id
        self.attempts = attempts


class InvariantViolation(DispatchEngineError):
    """Order data contradicts a lifecycle invariant."""

    code = "INVARIANT_VIOLATION"


class OrderNotFound(DispatchEngineError):
    """No order with this ID."""

    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class ExecutorMismatch(DispatchEngineError):
    """Acting executor is not the one assigned."""

    code = "EXECUTOR_MISMATCH"

    def __init__(self, order_id: str, executor_id: Optional[str]):
        super().__init__(f"Executor {executor_id} is not assigned to order {order_id}")
        self.order_id = order_id
        self.executor_id = executor_id


class NotCancellable(DispatchEngineError):
    """Cancellation refused by policy."""

    code = "ORDER_NOT_CANCELLABLE"

    def __init__(self, order_id: str, reason_code: str):
        super().__init__(f"Order {order_id} cannot be cancelled ({reason_code})")
        self.order_id = order_id
        self.reason_code = reason_code


class CollaboratorError(DispatchEngineError):
    """External collaborator failed or timed out."""

    code = "COLLABORATOR_FAILURE"

    def __init__(self, collaborator: str, message: str):
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator
