"""
Dispatch Engine - SQL Repository.

============================================================
PURPOSE
============================================================
OrderStore backed by SQLAlchemy async sessions.

RESPONSIBILITIES:
- Save/load order documents
- Guarded writes with optimistic concurrency
- Quota counters and number sequences
- Persist domain events for audit

CRITICAL REQUIREMENTS:
- Every write is one UPDATE guarded by status and version
- A lost race returns False, never overwrites

============================================================
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .events import DispatchEvent
from .models import DispatchOrderModel, DispatchOrderSequenceModel, DispatchEventModel
from .store import OrderStore, OrderPatch, DuplicateOrderError, list_field
from .types import Order, OrderStatus, ACTIVE_STATUSES


logger = logging.getLogger(__name__)


SessionFactory = Callable[[], AsyncSession]


# ============================================================
# SQL ORDER STORE
# ============================================================

class SqlOrderStore(OrderStore):
    """
    Order store over a relational database.

    Each operation opens its own session from the factory, so the
    store can be shared by concurrent tasks.
    """

    def __init__(self, session_factory: SessionFactory, max_write_retries: int = 3):
        """
        Initialize store.

        Args:
            session_factory: Callable returning an AsyncSession
                (e.g. an ``async_sessionmaker``)
            max_write_retries: Re-reads after a version conflict
        """
        self._session_factory = session_factory
        self._max_write_retries = max_write_retries

    # --------------------------------------------------------
    # ORDER OPERATIONS
    # --------------------------------------------------------

    async def insert(self, order: Order) -> None:
        model = DispatchOrderModel(
            order_id=order.order_id,
            order_number=order.order_number,
            requester_id=order.requester_id,
            status=order.status.value,
            transition_seq=order.transition_seq,
            version=1,
            priority=int(order.priority),
            document_json=json.dumps(order.to_document()),
            created_at=order.timing.created_at,
            updated_at=order.timing.created_at,
        )
        async with self._session_factory() as session:
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateOrderError(f"Order {order.order_id} already exists: {e}")

    async def _get_model(
        self,
        session: AsyncSession,
        order_id: str,
    ) -> Optional[DispatchOrderModel]:
        result = await session.execute(
            select(DispatchOrderModel).where(DispatchOrderModel.order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def find_by_id(self, order_id: str) -> Optional[Order]:
        async with self._session_factory() as session:
            model = await self._get_model(session, order_id)
            if model is None:
                return None
            return self._model_to_order(model)

    def _model_to_order(self, model: DispatchOrderModel) -> Order:
        return Order.from_document(json.loads(model.document_json))

    async def _guarded_write(
        self,
        order_id: str,
        mutate: Callable[[Order], bool],
        expected_status: Optional[OrderStatus] = None,
        expected_seq: Optional[int] = None,
    ) -> bool:
        """
        Read, mutate and write back under a version guard.

        A version conflict with the guards still satisfied is retried.
        """
        for attempt in range(self._max_write_retries):
            async with self._session_factory() as session:
                model = await self._get_model(session, order_id)
                if model is None:
                    return False
                if expected_status is not None and model.status != expected_status.value:
                    return False
                if expected_seq is not None and model.transition_seq != expected_seq:
                    return False

                order = self._model_to_order(model)
                if not mutate(order):
                    return False

                result = await session.execute(
                    update(DispatchOrderModel)
                    .where(
                        DispatchOrderModel.order_id == order_id,
                        DispatchOrderModel.version == model.version,
                    )
                    .values(
                        status=order.status.value,
                        transition_seq=order.transition_seq,
                        version=model.version + 1,
                        document_json=json.dumps(order.to_document()),
                        updated_at=datetime.now(timezone.utc),
                    )
                )
                if result.rowcount == 1:
                    await session.commit()
                    return True
                await session.rollback()
                logger.debug(
                    f"Version conflict on order {order_id} "
                    f"(attempt {attempt + 1}/{self._max_write_retries})"
                )

        logger.warning(f"Gave up writing order {order_id} after repeated version conflicts")
        return False

    async def conditional_update(
        self,
        order_id: str,
        expected_status: OrderStatus,
        patch: OrderPatch,
        expected_seq: Optional[int] = None,
    ) -> bool:
        def mutate(order: Order) -> bool:
            patch.apply(order)
            return True

        return await self._guarded_write(order_id, mutate, expected_status, expected_seq)

    async def append_to_list(
        self,
        order_id: str,
        field_path: str,
        item: Any,
        expected_status: Optional[OrderStatus] = None,
        expected_length: Optional[int] = None,
    ) -> bool:
        def mutate(order: Order) -> bool:
            target = list_field(order, field_path)
            if expected_length is not None and len(target) != expected_length:
                return False
            target.append(item)
            return True

        return await self._guarded_write(order_id, mutate, expected_status)

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    async def count_active(self, requester_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(DispatchOrderModel.id)).where(
                    DispatchOrderModel.requester_id == requester_id,
                    DispatchOrderModel.status.in_([s.value for s in ACTIVE_STATUSES]),
                )
            )
            return int(result.scalar_one())

    async def count_created_since(self, requester_id: str, since: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(DispatchOrderModel.id)).where(
                    DispatchOrderModel.requester_id == requester_id,
                    DispatchOrderModel.created_at >= since,
                )
            )
            return int(result.scalar_one())

    async def find_by_statuses(
        self,
        statuses: Iterable[OrderStatus],
        limit: int = 1000,
    ) -> List[Order]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DispatchOrderModel)
                .where(DispatchOrderModel.status.in_([s.value for s in statuses]))
                .order_by(DispatchOrderModel.created_at)
                .limit(limit)
            )
            return [self._model_to_order(m) for m in result.scalars()]

    # --------------------------------------------------------
    # SEQUENCES
    # --------------------------------------------------------

    async def next_sequence(self, scope: str) -> int:
        for _ in range(self._max_write_retries):
            async with self._session_factory() as session:
                result = await session.execute(
                    update(DispatchOrderSequenceModel)
                    .where(DispatchOrderSequenceModel.scope == scope)
                    .values(value=DispatchOrderSequenceModel.value + 1)
                    .returning(DispatchOrderSequenceModel.value)
                )
                value = result.scalar_one_or_none()
                if value is not None:
                    await session.commit()
                    return int(value)

                session.add(DispatchOrderSequenceModel(scope=scope, value=1))
                try:
                    await session.commit()
                    return 1
                except IntegrityError:
                    # Another writer created the scope first
                    await session.rollback()

        raise DuplicateOrderError(f"Could not allocate sequence for scope {scope}")

    # --------------------------------------------------------
    # EVENT OPERATIONS
    # --------------------------------------------------------

    async def save_event(self, event: DispatchEvent) -> DispatchEventModel:
        """Persist a domain event."""
        model = DispatchEventModel(
            event_id=event.event_id,
            order_id=event.order_id,
            event_type=event.event_type,
            payload_json=json.dumps(event.payload()),
            occurred_at=event.timestamp,
        )
        async with self._session_factory() as session:
            session.add(model)
            await session.commit()
        return model

    async def get_events_for_order(self, order_id: str) -> List[DispatchEventModel]:
        """Get all recorded events for an order."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(DispatchEventModel)
                .where(DispatchEventModel.order_id == order_id)
                .order_by(DispatchEventModel.occurred_at)
            )
            return list(result.scalars())
