"""
Dispatch Engine - Order Store.

============================================================
PURPOSE
============================================================
Persistence contract for order documents.

RESPONSIBILITIES:
- Insert and look up orders
- Conditional updates keyed on the expected status
- Guarded appends to history lists
- Quota counters and the day-scoped number sequence

ATOMICITY:
Every write either applies completely or not at all, and
reports whether it applied. Callers never read-modify-write
outside a conditional update.

============================================================
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .types import Order, OrderStatus, DispatchEngineError


logger = logging.getLogger(__name__)


# ============================================================
# ORDER PATCH
# ============================================================

class OrderPatch:
    """
    Ordered set of field operations applied atomically.

    Paths are dotted attribute paths, e.g. ``search_state.radius_m``.
    """

    SET = "set"
    APPEND = "append"
    ADD_TO_SET = "add_to_set"

    def __init__(self) -> None:
        self._ops: List[Tuple[str, str, Any]] = []

    def set(self, path: str, value: Any) -> "OrderPatch":
        self._ops.append((self.SET, path, value))
        return self

    def append(self, path: str, item: Any) -> "OrderPatch":
        self._ops.append((self.APPEND, path, item))
        return self

    def add_to_set(self, path: str, item: Any) -> "OrderPatch":
        self._ops.append((self.ADD_TO_SET, path, item))
        return self

    def extend(self, other: Optional["OrderPatch"]) -> "OrderPatch":
        if other is not None:
            self._ops.extend(other.ops)
        return self

    @property
    def ops(self) -> List[Tuple[str, str, Any]]:
        return list(self._ops)

    def sets(self, path: str) -> bool:
        """Whether the patch assigns `path`."""
        return any(op == self.SET and p == path for op, p, _ in self._ops)

    def value_for(self, path: str) -> Any:
        """Last value assigned to `path`, or None."""
        for op, p, value in reversed(self._ops):
            if op == self.SET and p == path:
                return value
        return None

    def __bool__(self) -> bool:
        return bool(self._ops)

    def __repr__(self) -> str:
        return f"OrderPatch({[(op, path) for op, path, _ in self._ops]})"

    def apply(self, order: Order) -> Order:
        """Apply all operations to `order` in place and return it."""
        for op, path, value in self._ops:
            parent, name = _resolve(order, path)
            if op == self.SET:
                setattr(parent, name, copy.deepcopy(value))
            elif op == self.APPEND:
                getattr(parent, name).append(copy.deepcopy(value))
            elif op == self.ADD_TO_SET:
                target = getattr(parent, name)
                if value not in target:
                    target.append(copy.deepcopy(value))
            else:
                raise ValueError(f"Unknown patch operation: {op}")
        return order


def _resolve(order: Order, path: str) -> Tuple[Any, str]:
    parts = path.split(".")
    parent: Any = order
    for part in parts[:-1]:
        parent = getattr(parent, part)
        if parent is None:
            raise ValueError(f"Cannot patch {path}: {part} is not set")
    if not hasattr(parent, parts[-1]):
        raise ValueError(f"Unknown order field: {path}")
    return parent, parts[-1]


def list_field(order: Order, path: str) -> List[Any]:
    parent, name = _resolve(order, path)
    value = getattr(parent, name)
    if not isinstance(value, list):
        raise ValueError(f"{path} is not a list")
    return value


class DuplicateOrderError(DispatchEngineError):
    """Order ID or number already stored."""

    code = "DUPLICATE_ORDER"


# ============================================================
# STORE INTERFACE
# ============================================================

class OrderStore(ABC):
    """Abstract order persistence."""

    @abstractmethod
    async def insert(self, order: Order) -> None:
        """Persist a new order."""
        pass

    @abstractmethod
    async def find_by_id(self, order_id: str) -> Optional[Order]:
        """Load an order, or None."""
        pass

    @abstractmethod
    async def conditional_update(
        self,
        order_id: str,
        expected_status: OrderStatus,
        patch: OrderPatch,
        expected_seq: Optional[int] = None,
    ) -> bool:
        """
        Apply `patch` only if the order is still in `expected_status`.

        Args:
            order_id: Order ID
            expected_status: Status the caller last observed
            patch: Operations to apply
            expected_seq: Transition sequence the caller last observed

        Returns:
            True if the patch was applied
        """
        pass

    @abstractmethod
    async def append_to_list(
        self,
        order_id: str,
        field_path: str,
        item: Any,
        expected_status: Optional[OrderStatus] = None,
        expected_length: Optional[int] = None,
    ) -> bool:
        """
        Append `item` to a list field under optional guards.

        Returns:
            True if the item was appended
        """
        pass

    @abstractmethod
    async def count_active(self, requester_id: str) -> int:
        """Orders of the requester in the active group."""
        pass

    @abstractmethod
    async def count_created_since(self, requester_id: str, since: datetime) -> int:
        """Orders of the requester created at or after `since`."""
        pass

    @abstractmethod
    async def next_sequence(self, scope: str) -> int:
        """Next value of a monotonic counter, starting at 1 per scope."""
        pass

    @abstractmethod
    async def find_by_statuses(
        self,
        statuses: Iterable[OrderStatus],
        limit: int = 1000,
    ) -> List[Order]:
        """Orders in any of the given statuses."""
        pass


# ============================================================
# IN-MEMORY STORE
# ============================================================

class InMemoryOrderStore(OrderStore):
    """
    Process-local store.

    Writes are serialized by one asyncio lock. Reads and writes
    copy orders so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._orders: Dict[str, Order] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def insert(self, order: Order) -> None:
        async with self._lock:
            if order.order_id in self._orders:
                raise DuplicateOrderError(f"Order {order.order_id} already exists")
            self._orders[order.order_id] = copy.deepcopy(order)
        logger.debug(f"Inserted order {order.order_id}")

    async def find_by_id(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return copy.deepcopy(order) if order is not None else None

    async def conditional_update(
        self,
        order_id: str,
        expected_status: OrderStatus,
        patch: OrderPatch,
        expected_seq: Optional[int] = None,
    ) -> bool:
        async with self._lock:
            current = self._orders.get(order_id)
            if current is None or current.status != expected_status:
                return False
            if expected_seq is not None and current.transition_seq != expected_seq:
                return False
            updated = patch.apply(copy.deepcopy(current))
            self._orders[order_id] = updated
            return True

    async def append_to_list(
        self,
        order_id: str,
        field_path: str,
        item: Any,
        expected_status: Optional[OrderStatus] = None,
        expected_length: Optional[int] = None,
    ) -> bool:
        async with self._lock:
            current = self._orders.get(order_id)
            if current is None:
                return False
            if expected_status is not None and current.status != expected_status:
                return False
            target = list_field(current, field_path)
            if expected_length is not None and len(target) != expected_length:
                return False
            target.append(copy.deepcopy(item))
            return True

    async def count_active(self, requester_id: str) -> int:
        return sum(
            1 for order in self._orders.values()
            if order.requester_id == requester_id and order.status.is_active()
        )

    async def count_created_since(self, requester_id: str, since: datetime) -> int:
        return sum(
            1 for order in self._orders.values()
            if order.requester_id == requester_id
            and order.timing.created_at is not None
            and order.timing.created_at >= since
        )

    async def next_sequence(self, scope: str) -> int:
        async with self._lock:
            value = self._sequences.get(scope, 0) + 1
            self._sequences[scope] = value
            return value

    async def find_by_statuses(
        self,
        statuses: Iterable[OrderStatus],
        limit: int = 1000,
    ) -> List[Order]:
        wanted = set(statuses)
        matches = [o for o in self._orders.values() if o.status in wanted]
        return [copy.deepcopy(o) for o in matches[:limit]]
