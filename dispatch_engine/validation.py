"""
Dispatch Engine - Order Payload Validation.

============================================================
PURPOSE
============================================================
Validates creation payloads before any lock is taken.

VALIDATION STEPS:
1. Service type and description present
2. Coordinates within range
3. Enumerated fields recognized
4. Scheduled time inside the allowed window

All field errors are collected and raised together.

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .config import CreationConfig
from .types import (
    Location,
    OrderType,
    OrderSource,
    PaymentMethod,
    OrderPriority,
    ValidationError,
)


logger = logging.getLogger(__name__)


MAX_DESCRIPTION_LENGTH = 1000


@dataclass
class OrderRequest:
    """Validated creation payload."""

    service_type: str
    location: Location
    description: str = ""
    order_type: OrderType = OrderType.IMMEDIATE
    scheduled_for: Optional[datetime] = None
    source: OrderSource = OrderSource.MOBILE_APP
    payment_method: PaymentMethod = PaymentMethod.CASH
    preferred_executor_ids: List[str] = field(default_factory=list)
    is_urgent: bool = False
    is_vip: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


class OrderPayloadValidator:
    """Turns a raw payload dict into an OrderRequest."""

    def __init__(self, config: Optional[CreationConfig] = None):
        self._config = config or CreationConfig()

    def validate(self, payload: Dict[str, Any], now: datetime) -> OrderRequest:
        """
        Validate a creation payload.

        Args:
            payload: Raw request fields
            now: Current time, for scheduling bounds

        Returns:
            OrderRequest

        Raises:
            ValidationError: With one message per bad field
        """
        errors: Dict[str, str] = {}

        service_type = payload.get("service_type")
        if not isinstance(service_type, str) or not service_type.strip():
            errors["service_type"] = "required"

        location = self._parse_location(payload.get("location"), errors)

        description = payload.get("description") or ""
        if not isinstance(description, str):
            errors["description"] = "must be a string"
        elif len(description) > MAX_DESCRIPTION_LENGTH:
            errors["description"] = f"longer than {MAX_DESCRIPTION_LENGTH} characters"

        order_type = self._parse_enum(OrderType, payload.get("order_type", "immediate"), "order_type", errors)
        source = self._parse_enum(OrderSource, payload.get("source", "mobile_app"), "source", errors)
        payment = self._parse_enum(PaymentMethod, payload.get("payment_method", "cash"), "payment_method", errors)

        scheduled_for = None
        if order_type == OrderType.SCHEDULED:
            scheduled_for = self._parse_schedule(payload.get("scheduled_for"), now, errors)

        preferred = payload.get("preferred_executor_ids") or []
        if not isinstance(preferred, list) or not all(isinstance(p, str) for p in preferred):
            errors["preferred_executor_ids"] = "must be a list of IDs"
            preferred = []

        if errors:
            logger.info(f"Rejected order payload: {errors}")
            raise ValidationError(errors)

        return OrderRequest(
            service_type=service_type.strip(),
            location=location,
            description=description,
            order_type=order_type,
            scheduled_for=scheduled_for,
            source=source,
            payment_method=payment,
            preferred_executor_ids=list(preferred),
            is_urgent=bool(payload.get("is_urgent", False)),
            is_vip=bool(payload.get("is_vip", False)),
            metadata=dict(payload.get("metadata") or {}),
        )

    def determine_priority(self, request: OrderRequest) -> OrderPriority:
        """Critical services first, then urgent or VIP requests."""
        if request.service_type in self._config.critical_service_types:
            return OrderPriority.URGENT
        if request.is_urgent or request.is_vip:
            return OrderPriority.HIGH
        return OrderPriority.NORMAL

    # --------------------------------------------------------
    # FIELD PARSERS
    # --------------------------------------------------------

    @staticmethod
    def _parse_location(raw: Any, errors: Dict[str, str]) -> Optional[Location]:
        if isinstance(raw, Location):
            raw = raw.to_dict()
        if not isinstance(raw, dict):
            errors["location"] = "required"
            return None
        try:
            lat = float(raw["lat"])
            lng = float(raw["lng"])
        except (KeyError, TypeError, ValueError):
            errors["location"] = "lat and lng must be numbers"
            return None
        if not -90.0 <= lat <= 90.0 or not -180.0 <= lng <= 180.0:
            errors["location"] = "coordinates out of range"
            return None
        return Location(lat=lat, lng=lng, address=str(raw.get("address", "")))

    @staticmethod
    def _parse_enum(enum_cls, raw: Any, name: str, errors: Dict[str, str]):
        if isinstance(raw, enum_cls):
            return raw
        try:
            return enum_cls(raw)
        except ValueError:
            allowed = ", ".join(e.value for e in enum_cls)
            errors[name] = f"must be one of: {allowed}"
            return None

    def _parse_schedule(
        self,
        raw: Any,
        now: datetime,
        errors: Dict[str, str],
    ) -> Optional[datetime]:
        if isinstance(raw, str):
            try:
                raw = datetime.fromisoformat(raw)
            except ValueError:
                errors["scheduled_for"] = "not an ISO 8601 datetime"
                return None
        if not isinstance(raw, datetime):
            errors["scheduled_for"] = "required for scheduled orders"
            return None
        if raw.tzinfo is None:
            raw = raw.replace(tzinfo=timezone.utc)

        earliest = now + timedelta(seconds=self._config.min_schedule_ahead_seconds)
        latest = now + timedelta(seconds=self._config.max_schedule_ahead_seconds)
        if raw < earliest:
            errors["scheduled_for"] = "too soon"
            return None
        if raw > latest:
            errors["scheduled_for"] = "too far ahead"
            return None
        return raw
