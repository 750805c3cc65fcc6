"""
Dispatch Engine - Status Registry.

============================================================
PURPOSE
============================================================
Static description of the order lifecycle: statuses, groups,
allowed transitions, per-status timeouts, and what happens on
entering a status or when its timer fires.

STATE MACHINE:

    NEW ──► SEARCHING ◄──────────┐
                │                 │
                ├──► EXPIRED      │ (timeout / REJECTED)
                ▼                 │
            ASSIGNED ─────────────┘
                │
                ▼
            ACCEPTED ──► EN_ROUTE ──► ARRIVED ──► IN_PROGRESS ──► COMPLETED
                            │            │            │  │
                            └──── ON_HOLD ◄───────────┘  ├──► FAILED
                                                         └──► DISPUTED

    CANCELLED is reachable from NEW..EN_ROUTE, ARRIVED, ON_HOLD
    and DISPUTED.

INVARIANTS:
- Terminal statuses have no outgoing edges
- Every non-terminal status has a timeout and a timeout action
- Every status has entry actions

============================================================
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from .config import StatusTimeoutConfig
from .types import (
    OrderStatus,
    ActorRole,
    ACTIVE_STATUSES,
    FINAL_STATUSES,
    WITH_EXECUTOR_STATUSES,
    CANCELLABLE_STATUSES,
    TIMING_FIELDS,
)


logger = logging.getLogger(__name__)


# ============================================================
# TRANSITIONS
# ============================================================

STATUS_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.NEW: frozenset({
        OrderStatus.SEARCHING,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.SEARCHING: frozenset({
        OrderStatus.ASSIGNED,
        OrderStatus.EXPIRED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.ASSIGNED: frozenset({
        OrderStatus.ACCEPTED,
        OrderStatus.REJECTED,
        OrderStatus.SEARCHING,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.REJECTED: frozenset({
        OrderStatus.SEARCHING,
    }),
    OrderStatus.ACCEPTED: frozenset({
        OrderStatus.EN_ROUTE,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.EN_ROUTE: frozenset({
        OrderStatus.ARRIVED,
        OrderStatus.CANCELLED,
        OrderStatus.ON_HOLD,
    }),
    OrderStatus.ARRIVED: frozenset({
        OrderStatus.IN_PROGRESS,
        OrderStatus.CANCELLED,
        OrderStatus.ON_HOLD,
    }),
    OrderStatus.IN_PROGRESS: frozenset({
        OrderStatus.COMPLETED,
        OrderStatus.FAILED,
        OrderStatus.ON_HOLD,
        OrderStatus.DISPUTED,
    }),
    OrderStatus.ON_HOLD: frozenset({
        OrderStatus.EN_ROUTE,
        OrderStatus.ARRIVED,
        OrderStatus.IN_PROGRESS,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.DISPUTED: frozenset({
        OrderStatus.COMPLETED,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    }),
    # Terminal statuses - no transitions out
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
}


STATUS_GROUPS: Dict[str, FrozenSet[OrderStatus]] = {
    "ACTIVE": ACTIVE_STATUSES,
    "FINAL": FINAL_STATUSES,
    "WITH_EXECUTOR": WITH_EXECUTOR_STATUSES,
    "CANCELLABLE": CANCELLABLE_STATUSES,
    "PAYABLE": frozenset({OrderStatus.COMPLETED}),
}

# Statuses that pause the timeout budget of the status they interrupt
PAUSING_STATUSES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.ON_HOLD,
    OrderStatus.DISPUTED,
})

STATUS_PROGRESS: Dict[OrderStatus, int] = {
    OrderStatus.NEW: 10,
    OrderStatus.SEARCHING: 20,
    OrderStatus.ASSIGNED: 30,
    OrderStatus.ACCEPTED: 40,
    OrderStatus.EN_ROUTE: 50,
    OrderStatus.ARRIVED: 60,
    OrderStatus.IN_PROGRESS: 80,
    OrderStatus.COMPLETED: 100,
}


# ============================================================
# TIMEOUT AND ENTRY ACTIONS
# ============================================================

class TimeoutAction(Enum):
    """What the coordinator does when a status timer fires."""

    START_SEARCH = "start_search"
    CONTINUE_OR_EXPIRE = "continue_or_expire"
    REVERT_TO_SEARCH = "revert_to_search"
    RESUME_SEARCH = "resume_search"
    REMIND_EXECUTOR = "remind_executor"
    ESCALATE = "escalate"


class EntryAction(Enum):
    """What the coordinator does after entering a status."""

    ARM_TIMER = "arm_timer"
    LAUNCH_SEARCH = "launch_search"
    RESERVE_EXECUTOR = "reserve_executor"
    RELEASE_EXECUTOR = "release_executor"
    CLOSE = "close"


TIMEOUT_ACTIONS: Dict[OrderStatus, TimeoutAction] = {
    OrderStatus.NEW: TimeoutAction.START_SEARCH,
    OrderStatus.SEARCHING: TimeoutAction.CONTINUE_OR_EXPIRE,
    OrderStatus.ASSIGNED: TimeoutAction.REVERT_TO_SEARCH,
    OrderStatus.REJECTED: TimeoutAction.RESUME_SEARCH,
    OrderStatus.ACCEPTED: TimeoutAction.REMIND_EXECUTOR,
    OrderStatus.EN_ROUTE: TimeoutAction.ESCALATE,
    OrderStatus.ARRIVED: TimeoutAction.ESCALATE,
    OrderStatus.IN_PROGRESS: TimeoutAction.ESCALATE,
    OrderStatus.ON_HOLD: TimeoutAction.ESCALATE,
    OrderStatus.DISPUTED: TimeoutAction.ESCALATE,
}

ENTRY_ACTIONS: Dict[OrderStatus, Tuple[EntryAction, ...]] = {
    OrderStatus.NEW: (EntryAction.ARM_TIMER,),
    OrderStatus.SEARCHING: (EntryAction.ARM_TIMER, EntryAction.LAUNCH_SEARCH),
    OrderStatus.ASSIGNED: (EntryAction.ARM_TIMER,),
    OrderStatus.REJECTED: (EntryAction.ARM_TIMER,),
    OrderStatus.ACCEPTED: (EntryAction.ARM_TIMER, EntryAction.RESERVE_EXECUTOR),
    OrderStatus.EN_ROUTE: (EntryAction.ARM_TIMER,),
    OrderStatus.ARRIVED: (EntryAction.ARM_TIMER,),
    OrderStatus.IN_PROGRESS: (EntryAction.ARM_TIMER,),
    OrderStatus.ON_HOLD: (EntryAction.ARM_TIMER,),
    OrderStatus.DISPUTED: (EntryAction.ARM_TIMER,),
    OrderStatus.COMPLETED: (EntryAction.RELEASE_EXECUTOR, EntryAction.CLOSE),
    OrderStatus.FAILED: (EntryAction.RELEASE_EXECUTOR, EntryAction.CLOSE),
    OrderStatus.CANCELLED: (EntryAction.CLOSE,),
    OrderStatus.EXPIRED: (EntryAction.CLOSE,),
}


# ============================================================
# REASON CODES
# ============================================================

CANCELLATION_REASONS: Dict[ActorRole, FrozenSet[str]] = {
    ActorRole.REQUESTER: frozenset({
        "changed_mind",
        "found_another",
        "wrong_address",
        "price_too_high",
        "long_wait",
        "other",
    }),
    ActorRole.EXECUTOR: frozenset({
        "too_far",
        "busy",
        "no_parts",
        "inappropriate_order",
        "technical_issue",
        "other",
    }),
    ActorRole.SYSTEM: frozenset({
        "no_executors",
        "timeout",
        "payment_failed",
        "fraud_detected",
        "technical_error",
    }),
    ActorRole.OPERATOR: frozenset({
        "fraud_detected",
        "duplicate",
        "requester_request",
        "other",
    }),
}

FAILURE_REASONS: FrozenSet[str] = frozenset({
    "client_absent",
    "wrong_problem",
    "cannot_fix",
    "no_payment",
    "weather",
    "other",
})


def normalize_cancellation_reason(role: ActorRole, reason: Optional[str]) -> str:
    """Map unknown reason codes to a fallback allowed for the role."""
    allowed = CANCELLATION_REASONS[role]
    if reason in allowed:
        return reason
    return "other" if "other" in allowed else "technical_error"


def normalize_failure_reason(reason: Optional[str]) -> str:
    return reason if reason in FAILURE_REASONS else "other"


def _verify_tables() -> None:
    """Fail fast if a status is missing from any dispatch table."""
    for status in OrderStatus:
        if status not in STATUS_TRANSITIONS:
            raise RuntimeError(f"No transition entry for {status.value}")
        if status not in ENTRY_ACTIONS:
            raise RuntimeError(f"No entry actions for {status.value}")
        if not status.is_terminal() and status not in TIMEOUT_ACTIONS:
            raise RuntimeError(f"No timeout action for {status.value}")
        if status.is_terminal() and STATUS_TRANSITIONS[status]:
            raise RuntimeError(f"Terminal status {status.value} has outgoing edges")
        if status not in TIMING_FIELDS:
            raise RuntimeError(f"No timing field for {status.value}")


_verify_tables()


# ============================================================
# STATUS REGISTRY
# ============================================================

class StatusRegistry:
    """
    Lookup facade over the lifecycle tables.

    Timeouts come from configuration; everything else is static.
    """

    def __init__(self, timeouts: Optional[StatusTimeoutConfig] = None):
        self._timeouts = timeouts or StatusTimeoutConfig()

    @staticmethod
    def can_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
        """Pure membership check against the transition table."""
        return to_status in STATUS_TRANSITIONS[from_status]

    @staticmethod
    def check_transition(
        from_status: OrderStatus,
        to_status: OrderStatus,
    ) -> Tuple[bool, str]:
        """
        Check if transition is allowed.

        Returns:
            Tuple of (allowed, reason)
        """
        if from_status.is_terminal():
            return False, f"Cannot transition from terminal status {from_status.value}"
        if to_status in STATUS_TRANSITIONS[from_status]:
            return True, "Valid transition"
        return False, f"Invalid transition: {from_status.value} -> {to_status.value}"

    @staticmethod
    def next_statuses(status: OrderStatus) -> List[OrderStatus]:
        return sorted(STATUS_TRANSITIONS[status], key=lambda s: s.value)

    @staticmethod
    def in_group(status: OrderStatus, group: str) -> bool:
        return status in STATUS_GROUPS[group]

    def timeout_for(self, status: OrderStatus) -> Optional[float]:
        """Timeout in seconds, None for terminal statuses."""
        return self._timeouts.for_status(status)

    @staticmethod
    def timeout_action(status: OrderStatus) -> Optional[TimeoutAction]:
        return TIMEOUT_ACTIONS.get(status)

    @staticmethod
    def entry_actions(status: OrderStatus) -> Tuple[EntryAction, ...]:
        return ENTRY_ACTIONS[status]

    def is_status_expired(
        self,
        status: OrderStatus,
        changed_at: datetime,
        now: datetime,
    ) -> bool:
        """Whether the status has outlived its timeout."""
        timeout = self.timeout_for(status)
        if timeout is None:
            return False
        return (now - changed_at).total_seconds() > timeout

    @staticmethod
    def progress(status: OrderStatus) -> int:
        """Progress percentage shown to the requester."""
        return STATUS_PROGRESS.get(status, 0)
