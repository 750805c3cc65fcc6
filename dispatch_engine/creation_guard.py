"""
Dispatch Engine - Creation Guard.

============================================================
PURPOSE
============================================================
Admits order creation per requester.

STEPS:
1. Take the per-requester lock (fail fast if held)
2. Check active orders against the limit
3. Check today's orders against the daily limit
4. Let the caller create the order
5. Release the lock on every exit path

============================================================
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from .clock import ClockProtocol, SystemClock
from .config import CreationConfig
from .locks import LockProvider
from .store import OrderStore
from .types import CreationInProgress, QuotaExceeded


logger = logging.getLogger(__name__)


MAX_ACTIVE_ORDERS_EXCEEDED = "MAX_ACTIVE_ORDERS_EXCEEDED"
DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"


class CreationGuard:
    """Per-requester lock plus quota check around order creation."""

    def __init__(
        self,
        store: OrderStore,
        locks: LockProvider,
        config: Optional[CreationConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._store = store
        self._locks = locks
        self._config = config or CreationConfig()
        self._clock = clock or SystemClock()

    @staticmethod
    def lock_key(requester_id: str) -> str:
        return f"order:create:{requester_id}"

    @asynccontextmanager
    async def admit(self, requester_id: str) -> AsyncIterator[None]:
        """
        Hold the creation lock while the caller creates an order.

        Raises:
            CreationInProgress: Lock held by another creation
            QuotaExceeded: Active or daily limit reached
        """
        key = self.lock_key(requester_id)
        token = await self._locks.acquire(key, self._config.lock_ttl_seconds)
        if token is None:
            logger.info(f"Creation already in progress for requester {requester_id}")
            raise CreationInProgress(requester_id)

        try:
            active = await self._store.count_active(requester_id)
            if active >= self._config.max_active_orders:
                logger.info(
                    f"Requester {requester_id} at active limit "
                    f"({active}/{self._config.max_active_orders})"
                )
                raise QuotaExceeded(
                    MAX_ACTIVE_ORDERS_EXCEEDED, active, self._config.max_active_orders
                )

            today = await self._store.count_created_since(
                requester_id, self._clock.start_of_day()
            )
            if today >= self._config.max_daily_orders:
                logger.info(
                    f"Requester {requester_id} at daily limit "
                    f"({today}/{self._config.max_daily_orders})"
                )
                raise QuotaExceeded(
                    DAILY_LIMIT_EXCEEDED, today, self._config.max_daily_orders
                )

            yield
        finally:
            await self._locks.release(key, token)
