"""
Dispatch Engine - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for dispatch persistence.

TABLES:
- dispatch_orders: Order documents with indexed status columns
- dispatch_order_sequences: Day-scoped order number counters
- dispatch_events: Domain events for audit

AUDIT REQUIREMENTS:
- Orders are never deleted
- Every status change is recorded as an event

============================================================
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Text,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ============================================================
# BASE
# ============================================================

class Base(DeclarativeBase):
    """Declarative base for dispatch models. Timestamps are timezone-aware."""

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


# ============================================================
# DISPATCH ORDER MODEL
# ============================================================

class DispatchOrderModel(Base):
    """
    Persisted order.

    The full order lives in `document_json`. Status, requester and
    creation time are duplicated into columns for guards and quota
    queries. `version` increments on every write.
    """

    __tablename__ = "dispatch_orders"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Identifiers
    order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    transition_seq: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Document
    document_json: Mapped[str] = mapped_column(Text, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column()

    __table_args__ = (
        Index("ix_dispatch_orders_requester_status", "requester_id", "status"),
        Index("ix_dispatch_orders_requester_created", "requester_id", "created_at"),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "order_id": self.order_id,
            "order_number": self.order_number,
            "requester_id": self.requester_id,
            "status": self.status,
            "transition_seq": self.transition_seq,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ============================================================
# ORDER NUMBER SEQUENCES
# ============================================================

class DispatchOrderSequenceModel(Base):
    """Counter per scope (one scope per UTC day)."""

    __tablename__ = "dispatch_order_sequences"

    scope: Mapped[str] = mapped_column(String(32), primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# ============================================================
# DISPATCH EVENT MODEL
# ============================================================

class DispatchEventModel(Base):
    """
    Domain event record.

    Captures status changes and search activity for audit.
    """

    __tablename__ = "dispatch_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payload_json: Mapped[Optional[str]] = mapped_column(Text)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False, index=True)

    __table_args__ = (
        Index("ix_dispatch_events_order_occurred", "order_id", "occurred_at"),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "event_id": self.event_id,
            "order_id": self.order_id,
            "event_type": self.event_type,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
        }
