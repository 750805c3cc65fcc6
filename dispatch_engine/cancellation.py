"""
Dispatch Engine - Cancellation Policy.

============================================================
PURPOSE
============================================================
Decides whether a cancellation is allowed and what it costs.

RULES (first match wins):
1. Status not cancellable        -> denied
2. Executor cancels              -> free
3. System or operator cancels    -> free
4. Requester inside free window  -> free
5. Requester after arrival       -> arrived rate
6. Requester otherwise           -> standard rate

Penalties are rounded half-up to a whole amount and capped.

PURE:
No I/O, no clock reads. The caller passes `now` and the total.

============================================================
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from .config import CancellationConfig
from .types import Order, ActorRole, CancellationDecision


# Reason codes
ORDER_NOT_CANCELLABLE = "ORDER_NOT_CANCELLABLE"
EXECUTOR_CANCELLATION = "EXECUTOR_CANCELLATION"
SYSTEM_CANCELLATION = "SYSTEM_CANCELLATION"
FREE_WINDOW = "FREE_WINDOW"
EXECUTOR_ARRIVED = "EXECUTOR_ARRIVED"
STANDARD_PENALTY = "STANDARD_PENALTY"


class CancellationPolicy:
    """Pure cancellation decision."""

    def __init__(self, config: Optional[CancellationConfig] = None):
        self._config = config or CancellationConfig()

    def evaluate(
        self,
        order: Order,
        actor_role: ActorRole,
        now: datetime,
        order_total: Decimal = Decimal("0"),
    ) -> CancellationDecision:
        """
        Evaluate a cancellation request.

        Args:
            order: Order as last read
            actor_role: Who cancels
            now: Current time
            order_total: Order total, used for requester penalties

        Returns:
            CancellationDecision
        """
        if not order.status.allows_cancel():
            return CancellationDecision(allowed=False, reason_code=ORDER_NOT_CANCELLABLE)

        if actor_role == ActorRole.EXECUTOR:
            return CancellationDecision(allowed=True, reason_code=EXECUTOR_CANCELLATION)

        if actor_role in (ActorRole.SYSTEM, ActorRole.OPERATOR):
            return CancellationDecision(allowed=True, reason_code=SYSTEM_CANCELLATION)

        created_at = order.timing.created_at
        if created_at is not None:
            elapsed = (now - created_at).total_seconds()
            if elapsed < self._config.free_window_seconds:
                return CancellationDecision(allowed=True, reason_code=FREE_WINDOW)

        if order.timing.arrived_at is not None or order.timing.started_at is not None:
            rate = self._config.arrived_penalty_rate
            reason_code = EXECUTOR_ARRIVED
        else:
            rate = self._config.standard_penalty_rate
            reason_code = STANDARD_PENALTY

        return CancellationDecision(
            allowed=True,
            penalty_amount=self.penalty(order_total, rate),
            reason_code=reason_code,
        )

    def penalty(self, order_total: Decimal, rate: Decimal) -> Decimal:
        """Rate applied to the total, rounded half-up and capped."""
        raw = (Decimal(order_total) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return min(self._config.max_penalty, max(raw, Decimal("0")))
