"""
Dispatch Engine - Service.

============================================================
PURPOSE
============================================================
Wires the dispatch components into one runnable service.

STARTUP ORDER:
1. Create tables (SQL store only)
2. Start the timer worker
3. Start the search workers
4. Re-arm timers of orders that were live before a restart

SHUTDOWN ORDER:
Reverse of startup, then flush event subscribers and close
connections.

BACKENDS:
- Orders: in-memory, or SQL when a database URL is configured
- Creation locks: in-process, or Redis when a URL is configured

============================================================
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker

from .alerting import TelegramAlerter
from .candidates import CandidateSource
from .clock import ClockProtocol, SystemClock
from .collaborators import PricingCollaborator, ExecutorDirectory
from .config import DispatchEngineConfig
from .creation_guard import CreationGuard
from .events import EventBus, EventJournal, DispatchMetrics
from .lifecycle import LifecycleCoordinator
from .locks import LockProvider, InMemoryLockProvider, RedisLockProvider
from .models import Base
from .notifier import DispatchNotifier
from .repository import SqlOrderStore
from .search import SearchOrchestrator
from .store import OrderStore, InMemoryOrderStore
from .timers import TimerService, AsyncioTimerService
from .types import Order


logger = logging.getLogger(__name__)


class DispatchService:
    """
    Runnable dispatch engine.

    Anything not injected is built from configuration.
    """

    def __init__(
        self,
        candidates: CandidateSource,
        notifier: DispatchNotifier,
        config: Optional[DispatchEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        store: Optional[OrderStore] = None,
        locks: Optional[LockProvider] = None,
        timers: Optional[TimerService] = None,
        pricing: Optional[PricingCollaborator] = None,
        executors: Optional[ExecutorDirectory] = None,
        events: Optional[EventBus] = None,
    ):
        self._config = config or DispatchEngineConfig()
        self._clock = clock or SystemClock()
        self._engine: Optional[AsyncEngine] = None

        self._store = store or self._build_store()
        self._locks = locks or self._build_locks()
        self._timers = timers or AsyncioTimerService(self._clock)

        self._events = events or EventBus()
        self._journal = EventJournal(self._config.storage.journal_max_events)
        self._events.subscribe(self._journal)
        if isinstance(self._store, SqlOrderStore):
            self._events.subscribe(self._store.save_event)

        self._alerter: Optional[TelegramAlerter] = None
        if self._config.alerting.telegram_enabled:
            self._alerter = TelegramAlerter(self._config.alerting, self._clock)
            self._alerter.attach(self._events)

        self._coordinator = LifecycleCoordinator(
            store=self._store,
            timers=self._timers,
            config=self._config,
            clock=self._clock,
            events=self._events,
            guard=CreationGuard(self._store, self._locks, self._config.creation, self._clock),
            pricing=pricing,
            executors=executors,
            candidates=candidates,
        )
        self._orchestrator = SearchOrchestrator(
            store=self._store,
            coordinator=self._coordinator,
            candidates=candidates,
            notifier=notifier,
            config=self._config,
            clock=self._clock,
            events=self._events,
        )
        self._coordinator.set_search_launcher(self._orchestrator.request_search)
        self._running = False

    # --------------------------------------------------------
    # BACKENDS
    # --------------------------------------------------------

    def _build_store(self) -> OrderStore:
        url = self._config.storage.database_url
        if not url:
            return InMemoryOrderStore()
        logger.info(f"Using SQL order store at {url.split('@')[-1]}")
        self._engine = create_async_engine(url, pool_pre_ping=True)
        return SqlOrderStore(async_sessionmaker(self._engine, expire_on_commit=False))

    def _build_locks(self) -> LockProvider:
        url = self._config.storage.redis_url
        if not url:
            return InMemoryLockProvider(self._clock)
        logger.info(f"Using Redis creation locks at {url.split('@')[-1]}")
        return RedisLockProvider.from_url(url)

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self) -> int:
        """
        Start workers and recover live orders.

        Returns:
            Number of orders whose timers were re-armed
        """
        if self._running:
            return 0
        if self._engine is not None:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        if isinstance(self._timers, AsyncioTimerService):
            self._timers.start()
        self._orchestrator.start()
        self._running = True

        recovered = await self._coordinator.recover()
        logger.info(f"Dispatch service started ({recovered} live orders recovered)")
        return recovered

    async def stop(self) -> None:
        """Stop workers and release connections."""
        if not self._running:
            return
        self._running = False
        await self._orchestrator.stop()
        if isinstance(self._timers, AsyncioTimerService):
            await self._timers.stop()
        await self._events.drain()
        if self._alerter is not None:
            await self._alerter.close()
        await self._locks.close()
        if self._engine is not None:
            await self._engine.dispose()
        logger.info("Dispatch service stopped")

    # --------------------------------------------------------
    # OPERATIONS
    # --------------------------------------------------------

    async def submit_order(self, requester_id: str, payload: Dict[str, Any]) -> Order:
        """Create an order and, unless scheduled, start searching at once."""
        order = await self._coordinator.create(requester_id, payload)
        if order.is_scheduled:
            return order
        return await self._coordinator.start_search(order.order_id)

    def metrics(self) -> DispatchMetrics:
        """Counters over the events still held by the journal."""
        return DispatchMetrics.from_events(self._journal.events)

    @property
    def coordinator(self) -> LifecycleCoordinator:
        return self._coordinator

    @property
    def orchestrator(self) -> SearchOrchestrator:
        return self._orchestrator

    @property
    def store(self) -> OrderStore:
        return self._store

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def journal(self) -> EventJournal:
        return self._journal

    @property
    def is_running(self) -> bool:
        return self._running
