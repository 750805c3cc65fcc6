"""
Dispatch Engine - Status Timers.

============================================================
PURPOSE
============================================================
Per-status timeouts. Entering a status arms a timer; when it
fires, a TimeoutTask is queued and a dedicated worker hands
it to the coordinator.

SAFETY:
- A task only names the status it was armed for; the
  coordinator re-reads the order and ignores stale tasks
- Re-arming an order replaces its pending timer
- Handler errors are logged and never stop the worker

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .clock import ClockProtocol, SystemClock
from .types import OrderStatus


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimeoutTask:
    """A timer that fired (or will fire) for one order status."""

    order_id: str
    """Order the timer belongs to."""

    expected_status: OrderStatus
    """Status the order was in when the timer was armed."""

    transition_seq: Optional[int]
    """Transition sequence at arming time."""

    due_at: datetime
    """When the timer fires."""


TimeoutHandler = Callable[[TimeoutTask], Awaitable[Any]]


class TimerService(ABC):
    """Schedules status timeouts."""

    def __init__(self, clock: Optional[ClockProtocol] = None):
        self._clock = clock or SystemClock()
        self._handler: Optional[TimeoutHandler] = None

    def bind(self, handler: TimeoutHandler) -> None:
        """Set the coroutine that receives fired timers."""
        self._handler = handler

    @abstractmethod
    def schedule(
        self,
        order_id: str,
        expected_status: OrderStatus,
        delay_seconds: float,
        transition_seq: Optional[int] = None,
    ) -> TimeoutTask:
        """Arm a timer, replacing any pending timer of the order."""
        pass

    @abstractmethod
    def cancel(self, order_id: str) -> None:
        """Drop the pending timer of an order, if any."""
        pass

    def _make_task(
        self,
        order_id: str,
        expected_status: OrderStatus,
        delay_seconds: float,
        transition_seq: Optional[int],
    ) -> TimeoutTask:
        return TimeoutTask(
            order_id=order_id,
            expected_status=expected_status,
            transition_seq=transition_seq,
            due_at=self._clock.now() + timedelta(seconds=max(delay_seconds, 0.0)),
        )

    async def _dispatch(self, task: TimeoutTask) -> None:
        if self._handler is None:
            logger.warning(f"Timer for {task.order_id} fired with no handler bound")
            return
        try:
            await self._handler(task)
        except Exception as e:
            logger.exception(
                f"Timeout handling failed for {task.order_id} "
                f"({task.expected_status.value}): {e}"
            )


# ============================================================
# ASYNCIO TIMER SERVICE
# ============================================================

class AsyncioTimerService(TimerService):
    """
    Timers on the running event loop.

    Fired tasks go through a queue consumed by one worker, so
    timeout handling never runs inside a loop callback.
    """

    def __init__(self, clock: Optional[ClockProtocol] = None):
        super().__init__(clock)
        self._queue: "asyncio.Queue[TimeoutTask]" = asyncio.Queue()
        self._handles: Dict[str, asyncio.TimerHandle] = {}
        self._worker: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())
            logger.info("Timer worker started")

    async def stop(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        logger.info("Timer worker stopped")

    def schedule(
        self,
        order_id: str,
        expected_status: OrderStatus,
        delay_seconds: float,
        transition_seq: Optional[int] = None,
    ) -> TimeoutTask:
        task = self._make_task(order_id, expected_status, delay_seconds, transition_seq)
        self.cancel(order_id)
        loop = asyncio.get_running_loop()
        self._handles[order_id] = loop.call_later(
            max(delay_seconds, 0.0), self._fire, task
        )
        logger.debug(
            f"Armed {expected_status.value} timer for {order_id} in {delay_seconds:.1f}s"
        )
        return task

    def cancel(self, order_id: str) -> None:
        handle = self._handles.pop(order_id, None)
        if handle is not None:
            handle.cancel()

    def _fire(self, task: TimeoutTask) -> None:
        self._handles.pop(task.order_id, None)
        self._queue.put_nowait(task)

    async def _run(self) -> None:
        while True:
            task = await self._queue.get()
            try:
                await self._dispatch(task)
            finally:
                self._queue.task_done()

    @property
    def pending_count(self) -> int:
        return len(self._handles)


# ============================================================
# MANUAL TIMER SERVICE (TESTING)
# ============================================================

class ManualTimerService(TimerService):
    """
    Timers that fire only when a test says so.

    Every armed task is kept, so tests can also fire stale ones.
    """

    def __init__(self, clock: Optional[ClockProtocol] = None):
        super().__init__(clock)
        self.scheduled: List[TimeoutTask] = []
        self._pending: Dict[str, TimeoutTask] = {}

    def schedule(
        self,
        order_id: str,
        expected_status: OrderStatus,
        delay_seconds: float,
        transition_seq: Optional[int] = None,
    ) -> TimeoutTask:
        task = self._make_task(order_id, expected_status, delay_seconds, transition_seq)
        self.scheduled.append(task)
        self._pending[order_id] = task
        return task

    def cancel(self, order_id: str) -> None:
        self._pending.pop(order_id, None)

    def pending(self, order_id: str) -> Optional[TimeoutTask]:
        return self._pending.get(order_id)

    def armed_for(self, order_id: str) -> List[TimeoutTask]:
        return [t for t in self.scheduled if t.order_id == order_id]

    async def fire(self, order_id: str) -> None:
        """Fire the pending timer of an order."""
        task = self._pending.pop(order_id, None)
        if task is None:
            raise LookupError(f"No pending timer for {order_id}")
        await self._dispatch(task)

    async def fire_task(self, task: TimeoutTask) -> None:
        """Fire a specific (possibly superseded) task."""
        if self._pending.get(task.order_id) is task:
            del self._pending[task.order_id]
        await self._dispatch(task)
