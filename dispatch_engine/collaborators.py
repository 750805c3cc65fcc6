"""
Dispatch Engine - Collaborators.

============================================================
PURPOSE
============================================================
Narrow interfaces to systems the engine does not own.

- PricingCollaborator: order total for penalty computation
- ExecutorDirectory: reserve/release executor capacity

In-memory implementations serve tests and the simulator.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, List, Set, Tuple


logger = logging.getLogger(__name__)


# ============================================================
# PRICING
# ============================================================

class PricingCollaborator(ABC):
    """Source of order totals. Pricing itself is out of scope."""

    @abstractmethod
    async def get_order_total(self, order_id: str) -> Decimal:
        pass


class FixedPricing(PricingCollaborator):
    """Same total for every order unless overridden."""

    def __init__(self, default_total: Decimal = Decimal("0")):
        self._default_total = default_total
        self._totals: Dict[str, Decimal] = {}

    def set_total(self, order_id: str, total: Decimal) -> None:
        self._totals[order_id] = total

    async def get_order_total(self, order_id: str) -> Decimal:
        return self._totals.get(order_id, self._default_total)


# ============================================================
# EXECUTOR DIRECTORY
# ============================================================

class ExecutorDirectory(ABC):
    """Executor capacity bookkeeping."""

    @abstractmethod
    async def reserve(self, executor_id: str, order_id: str) -> None:
        """Mark the executor as busy with the order."""
        pass

    @abstractmethod
    async def release(self, executor_id: str, order_id: str) -> None:
        """Free the executor from the order."""
        pass


class InMemoryExecutorDirectory(ExecutorDirectory):
    """Tracks reservations in memory."""

    def __init__(self) -> None:
        self._reserved: Set[Tuple[str, str]] = set()
        self.released: List[Tuple[str, str]] = []

    async def reserve(self, executor_id: str, order_id: str) -> None:
        self._reserved.add((executor_id, order_id))

    async def release(self, executor_id: str, order_id: str) -> None:
        self._reserved.discard((executor_id, order_id))
        self.released.append((executor_id, order_id))

    def active_orders(self, executor_id: str) -> int:
        return sum(1 for e, _ in self._reserved if e == executor_id)

    def is_reserved(self, executor_id: str, order_id: str) -> bool:
        return (executor_id, order_id) in self._reserved
