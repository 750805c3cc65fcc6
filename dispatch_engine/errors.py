"""
Dispatch Engine - Error Taxonomy.

============================================================
PURPOSE
============================================================
Classification of every error code the engine raises.

ERROR CATEGORIES:
1. Validation Errors - Creation payload rejected
2. Admission Errors - Quota or concurrent creation
3. Lifecycle Errors - Transition refused or lost a race
4. Search Errors - Search exhausted
5. Collaborator Errors - External dependency failed
6. Internal Errors - Invariant broken

RETRYABLE vs NON-RETRYABLE:
- Retryable: caller may repeat the same request later
- Non-retryable: request will fail again unchanged

============================================================
"""

from enum import Enum
from typing import Dict, Set
from dataclasses import dataclass


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """Error category classification."""

    VALIDATION = "VALIDATION"
    """Payload validation failed."""

    ADMISSION = "ADMISSION"
    """Creation refused by the guard."""

    LIFECYCLE = "LIFECYCLE"
    """Status transition refused."""

    SEARCH = "SEARCH"
    """Executor search outcome."""

    COLLABORATOR = "COLLABORATOR"
    """External collaborator error."""

    INTERNAL = "INTERNAL"
    """Internal system error."""


class ErrorSeverity(Enum):
    """Error severity levels."""

    WARNING = "WARNING"
    """Expected under normal operation."""

    ERROR = "ERROR"
    """Needs attention."""

    CRITICAL = "CRITICAL"
    """Data integrity at risk."""


# ============================================================
# ERROR CODE REGISTRY
# ============================================================

@dataclass
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    """Error code."""

    category: ErrorCategory
    """Error category."""

    severity: ErrorSeverity
    """Error severity."""

    is_retryable: bool
    """Whether the caller may retry."""

    http_status: int
    """Status an API layer should map this to."""

    description: str
    """Human-readable description."""

    recommended_action: str
    """Recommended action to take."""

    alert_operators: bool = False
    """Whether operators should be alerted."""


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    # ========== VALIDATION ERRORS ==========
    "VALIDATION_ERROR": ErrorCodeInfo(
        code="VALIDATION_ERROR",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        http_status=400,
        description="Order payload failed validation",
        recommended_action="Fix the listed fields and resubmit",
    ),
    # ========== ADMISSION ERRORS ==========
    "ORDER_CREATION_IN_PROGRESS": ErrorCodeInfo(
        code="ORDER_CREATION_IN_PROGRESS",
        category=ErrorCategory.ADMISSION,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        http_status=429,
        description="Another order is being created for this requester",
        recommended_action="Retry after the lock TTL",
    ),
    "MAX_ACTIVE_ORDERS_EXCEEDED": ErrorCodeInfo(
        code="MAX_ACTIVE_ORDERS_EXCEEDED",
        category=ErrorCategory.ADMISSION,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        http_status=400,
        description="Requester has too many active orders",
        recommended_action="Wait for an active order to finish",
    ),
    "DAILY_LIMIT_EXCEEDED": ErrorCodeInfo(
        code="DAILY_LIMIT_EXCEEDED",
        category=ErrorCategory.ADMISSION,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        http_status=400,
        description="Requester reached the daily order limit",
        recommended_action="Retry after UTC midnight",
    ),
    # ========== LIFECYCLE ERRORS ==========
    "INVALID_TRANSITION": ErrorCodeInfo(
        code="INVALID_TRANSITION",
        category=ErrorCategory.LIFECYCLE,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        http_status=400,
        description="Transition not allowed from the current status",
        recommended_action="Reload the order and check its status",
    ),
    "STALE_TRANSITION": ErrorCodeInfo(
        code="STALE_TRANSITION",
        category=ErrorCategory.LIFECYCLE,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        http_status=409,
        description="Order changed before the transition was applied",
        recommended_action="Reload the order; the offer may be gone",
    ),
    "ORDER_NOT_FOUND": ErrorCodeInfo(
        code="ORDER_NOT_FOUND",
        category=ErrorCategory.LIFECYCLE,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        http_status=404,
        description="Order does not exist",
        recommended_action="Check the order ID",
    ),
    "EXECUTOR_MISMATCH": ErrorCodeInfo(
        code="EXECUTOR_MISMATCH",
        category=ErrorCategory.LIFECYCLE,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        http_status=403,
        description="Acting executor is not assigned to the order",
        recommended_action="Reject the request",
    ),
    "ORDER_NOT_CANCELLABLE": ErrorCodeInfo(
        code="ORDER_NOT_CANCELLABLE",
        category=ErrorCategory.LIFECYCLE,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        http_status=400,
        description="Order status does not allow cancellation",
        recommended_action="Use fail or dispute flows instead",
    ),
    # ========== SEARCH ==========
    "SEARCH_EXHAUSTED": ErrorCodeInfo(
        code="SEARCH_EXHAUSTED",
        category=ErrorCategory.SEARCH,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        http_status=200,
        description="No executor accepted within the attempt budget",
        recommended_action="Offer the requester a new order",
        alert_operators=True,
    ),
    # ========== COLLABORATOR ERRORS ==========
    "COLLABORATOR_FAILURE": ErrorCodeInfo(
        code="COLLABORATOR_FAILURE",
        category=ErrorCategory.COLLABORATOR,
        severity=ErrorSeverity.ERROR,
        is_retryable=True,
        http_status=503,
        description="External collaborator failed or timed out",
        recommended_action="Check collaborator health",
        alert_operators=True,
    ),
    # ========== INTERNAL ERRORS ==========
    "INVARIANT_VIOLATION": ErrorCodeInfo(
        code="INVARIANT_VIOLATION",
        category=ErrorCategory.INTERNAL,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        http_status=500,
        description="Order data violates a lifecycle invariant",
        recommended_action="Investigate the order history manually",
        alert_operators=True,
    ),
    "DISPATCH_ERROR": ErrorCodeInfo(
        code="DISPATCH_ERROR",
        category=ErrorCategory.INTERNAL,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        http_status=500,
        description="Unclassified dispatch error",
        recommended_action="Investigate error",
    ),
}


def get_error_info(code: str) -> ErrorCodeInfo:
    """
    Get error info for a code.

    Args:
        code: Error code

    Returns:
        ErrorCodeInfo or default unknown error
    """
    return ERROR_CODES.get(code, ErrorCodeInfo(
        code=code,
        category=ErrorCategory.INTERNAL,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        http_status=500,
        description=f"Unknown error: {code}",
        recommended_action="Investigate error",
    ))


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_info(code).is_retryable


def should_alert(code: str) -> bool:
    """Check if an error should reach operators."""
    return get_error_info(code).alert_operators


# ============================================================
# DERIVED CODE SETS
# ============================================================

RETRYABLE_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if info.is_retryable
}

ALERT_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if info.alert_operators
}
