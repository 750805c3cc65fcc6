"""
Dispatch Engine - Offer Notifier.

============================================================
PURPOSE
============================================================
Delivers order offers to executors.

Physical delivery (push, SMS, socket) is out of scope. The
notifier only reports whether the offer reached the executor.
Acceptance comes back through LifecycleCoordinator.accept.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Set

from .types import OfferSummary, DispatchResult


logger = logging.getLogger(__name__)


class DispatchNotifier(ABC):
    """Offer delivery channel."""

    @abstractmethod
    async def offer(
        self,
        executor_id: str,
        summary: OfferSummary,
        deadline: datetime,
    ) -> DispatchResult:
        """
        Push an offer to one executor.

        Args:
            executor_id: Recipient
            summary: Order summary shown to the executor
            deadline: Offer expiry

        Returns:
            Delivery result
        """
        pass


@dataclass
class SentOffer:
    """Offer captured by InMemoryNotifier."""

    executor_id: str
    summary: OfferSummary
    deadline: datetime


OfferHook = Callable[[SentOffer], Awaitable[None]]


class InMemoryNotifier(DispatchNotifier):
    """
    Records offers instead of sending them.

    `unreachable` executors fail delivery. `on_offer` runs after each
    delivered offer (the simulator uses it to answer offers).
    """

    def __init__(self, on_offer: Optional[OfferHook] = None):
        self.sent: List[SentOffer] = []
        self.unreachable: Set[str] = set()
        self._on_offer = on_offer

    async def offer(
        self,
        executor_id: str,
        summary: OfferSummary,
        deadline: datetime,
    ) -> DispatchResult:
        if executor_id in self.unreachable:
            return DispatchResult(delivered=False, channel="memory", error="unreachable")
        sent = SentOffer(executor_id=executor_id, summary=summary, deadline=deadline)
        self.sent.append(sent)
        if self._on_offer is not None:
            await self._on_offer(sent)
        return DispatchResult(delivered=True, channel="memory")

    def offers_for(self, order_id: str) -> List[SentOffer]:
        return [s for s in self.sent if s.summary.order_id == order_id]

    def recipients(self, order_id: str) -> List[str]:
        return [s.executor_id for s in self.offers_for(order_id)]
