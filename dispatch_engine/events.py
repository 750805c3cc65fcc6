"""
Dispatch Engine - Domain Events.

============================================================
PURPOSE
============================================================
Events emitted by the coordinator and the search loop, and
the bus that fans them out to subscribers.

DELIVERY:
- publish() never blocks the emitter
- Each subscriber runs in its own task
- Subscriber failures are logged and never reach the emitter

METRICS:
Counters are derived from the event journal, never kept as
mutable shared state.

============================================================
"""

import asyncio
import inspect
import logging
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, Type, Union

from .types import OrderStatus, OrderPriority, ActorRole, SearchOutcome


logger = logging.getLogger(__name__)


# ============================================================
# EVENTS
# ============================================================

@dataclass
class DispatchEvent:
    """Base class for dispatch events."""

    order_id: str
    """Order the event is about."""

    timestamp: datetime
    """When the event happened."""

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    """Unique event ID."""

    event_type = "dispatch_event"

    def payload(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "order_id": self.order_id,
            "timestamp": self.timestamp.isoformat(),
            **self.payload(),
        }


@dataclass
class OrderCreated(DispatchEvent):
    event_type = "order_created"

    requester_id: str = ""
    order_number: str = ""
    priority: OrderPriority = OrderPriority.NORMAL
    scheduled: bool = False

    def payload(self) -> Dict[str, Any]:
        return {
            "requester_id": self.requester_id,
            "order_number": self.order_number,
            "priority": int(self.priority),
            "scheduled": self.scheduled,
        }


@dataclass
class StatusChanged(DispatchEvent):
    event_type = "status_changed"

    from_status: Optional[OrderStatus] = None
    to_status: Optional[OrderStatus] = None
    actor_role: ActorRole = ActorRole.SYSTEM
    actor_id: Optional[str] = None
    reason: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        return {
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value if self.to_status else None,
            "actor_role": self.actor_role.value,
            "actor_id": self.actor_id,
            "reason": self.reason,
        }


@dataclass
class SearchAttemptCompleted(DispatchEvent):
    event_type = "search_attempt"

    attempt_number: int = 0
    radius_m: int = 0
    outcome: SearchOutcome = SearchOutcome.EMPTY
    candidates_found: int = 0
    notified: int = 0

    def payload(self) -> Dict[str, Any]:
        return {
            "attempt_number": self.attempt_number,
            "radius_m": self.radius_m,
            "outcome": self.outcome.value,
            "candidates_found": self.candidates_found,
            "notified": self.notified,
        }


@dataclass
class OrderSearchFailed(DispatchEvent):
    """Search exhausted; the order expired."""

    event_type = "order_search_failed"

    attempts: int = 0
    requester_id: str = ""
    can_retry: bool = True

    def payload(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "requester_id": self.requester_id,
            "can_retry": self.can_retry,
        }


@dataclass
class CollaboratorFailure(DispatchEvent):
    event_type = "collaborator_failure"

    collaborator: str = ""
    error: str = ""
    attempt_number: Optional[int] = None

    def payload(self) -> Dict[str, Any]:
        return {
            "collaborator": self.collaborator,
            "error": self.error,
            "attempt_number": self.attempt_number,
        }


@dataclass
class ExecutorReminder(DispatchEvent):
    """Executor accepted but has not started moving."""

    event_type = "executor_reminder"

    executor_id: str = ""

    def payload(self) -> Dict[str, Any]:
        return {"executor_id": self.executor_id}


@dataclass
class SlaBreached(DispatchEvent):
    """A fulfilment status outlived its timeout."""

    event_type = "sla_breached"

    status: Optional[OrderStatus] = None
    timeout_seconds: float = 0.0
    executor_id: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        return {
            "status": self.status.value if self.status else None,
            "timeout_seconds": self.timeout_seconds,
            "executor_id": self.executor_id,
        }


@dataclass
class OrderCancelled(DispatchEvent):
    event_type = "order_cancelled"

    actor_role: ActorRole = ActorRole.SYSTEM
    actor_id: Optional[str] = None
    reason: str = ""
    penalty_amount: Decimal = Decimal("0")
    reason_code: str = ""

    def payload(self) -> Dict[str, Any]:
        return {
            "actor_role": self.actor_role.value,
            "actor_id": self.actor_id,
            "reason": self.reason,
            "penalty_amount": str(self.penalty_amount),
            "reason_code": self.reason_code,
        }


# ============================================================
# EVENT SINK
# ============================================================

EventHandler = Callable[[DispatchEvent], Union[None, Awaitable[None]]]


class EventSink(ABC):
    """Destination for dispatch events."""

    @abstractmethod
    def publish(self, event: DispatchEvent) -> None:
        """Hand off an event without waiting for subscribers."""
        pass


class NullEventSink(EventSink):
    """Discards events."""

    def publish(self, event: DispatchEvent) -> None:
        pass


class EventBus(EventSink):
    """
    In-process fan-out.

    Handlers may be sync or async; each runs in its own task.
    """

    def __init__(self) -> None:
        self._subscribers: List[Tuple[EventHandler, Optional[Tuple[Type[DispatchEvent], ...]]]] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(
        self,
        handler: EventHandler,
        event_types: Optional[Iterable[Type[DispatchEvent]]] = None,
    ) -> None:
        """
        Register a handler.

        Args:
            handler: Callable receiving the event
            event_types: Only deliver these event classes (all if None)
        """
        types = tuple(event_types) if event_types is not None else None
        self._subscribers.append((handler, types))

    def publish(self, event: DispatchEvent) -> None:
        for handler, types in self._subscribers:
            if types is not None and not isinstance(event, types):
                continue
            task = asyncio.create_task(self._deliver(handler, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, handler: EventHandler, event: DispatchEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                f"Event handler {getattr(handler, '__qualname__', handler)} failed "
                f"for {event.event_type} on {event.order_id}: {e}"
            )

    async def drain(self) -> None:
        """Wait until every in-flight delivery finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_count(self) -> int:
        return len(self._pending)


# ============================================================
# JOURNAL AND METRICS
# ============================================================

class EventJournal:
    """
    Subscriber that keeps recent events in memory.

    With `max_events` set the journal is a ring: the oldest events are
    dropped once it is full. None keeps everything.
    """

    def __init__(self, max_events: Optional[int] = None) -> None:
        self._events: deque = deque(maxlen=max_events)
        self._dropped = 0

    def __call__(self, event: DispatchEvent) -> None:
        if self._events.maxlen is not None and len(self._events) == self._events.maxlen:
            self._dropped += 1
        self._events.append(event)

    @property
    def events(self) -> List[DispatchEvent]:
        return list(self._events)

    @property
    def max_events(self) -> Optional[int]:
        return self._events.maxlen

    @property
    def dropped(self) -> int:
        """Events evicted since the journal was created."""
        return self._dropped

    def for_order(self, order_id: str) -> List[DispatchEvent]:
        return [e for e in self._events if e.order_id == order_id]

    def of_type(self, event_type: Type[DispatchEvent]) -> List[DispatchEvent]:
        return [e for e in self._events if isinstance(e, event_type)]


@dataclass
class DispatchMetrics:
    """Counters derived from a sequence of events."""

    orders_created: int = 0
    orders_completed: int = 0
    orders_cancelled: int = 0
    orders_failed: int = 0
    orders_expired: int = 0
    searching_now: int = 0
    search_attempts: int = 0
    collaborator_failures: int = 0
    penalties_total: Decimal = Decimal("0")

    @classmethod
    def from_events(cls, events: Iterable[DispatchEvent]) -> "DispatchMetrics":
        metrics = cls()
        terminal_counters = {
            OrderStatus.COMPLETED: "orders_completed",
            OrderStatus.CANCELLED: "orders_cancelled",
            OrderStatus.FAILED: "orders_failed",
            OrderStatus.EXPIRED: "orders_expired",
        }
        for event in events:
            if isinstance(event, OrderCreated):
                metrics.orders_created += 1
            elif isinstance(event, StatusChanged):
                if event.to_status == OrderStatus.SEARCHING:
                    metrics.searching_now += 1
                if event.from_status == OrderStatus.SEARCHING:
                    metrics.searching_now -= 1
                counter = terminal_counters.get(event.to_status)
                if counter:
                    setattr(metrics, counter, getattr(metrics, counter) + 1)
            elif isinstance(event, SearchAttemptCompleted):
                metrics.search_attempts += 1
            elif isinstance(event, CollaboratorFailure):
                metrics.collaborator_failures += 1
            elif isinstance(event, OrderCancelled):
                metrics.penalties_total += event.penalty_amount
        return metrics
