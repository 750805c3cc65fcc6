"""
Order Payload Validation Tests.
"""

from datetime import timedelta

import pytest

from dispatch_engine.config import CreationConfig
from dispatch_engine.types import (
    OrderPriority,
    OrderSource,
    OrderType,
    PaymentMethod,
    ValidationError,
)
from dispatch_engine.validation import OrderPayloadValidator, MAX_DESCRIPTION_LENGTH

from conftest import START, PICKUP, order_payload


@pytest.fixture
def validator():
    return OrderPayloadValidator(CreationConfig())


class TestValidate:
    """Tests for OrderPayloadValidator.validate."""

    def test_minimal_payload(self, validator):
        """Test defaults for an immediate order."""
        request = validator.validate(order_payload(), START)

        assert request.service_type == "tire_change"
        assert request.location == PICKUP
        assert request.order_type == OrderType.IMMEDIATE
        assert request.source == OrderSource.MOBILE_APP
        assert request.payment_method == PaymentMethod.CASH
        assert request.scheduled_for is None

    def test_location_object_accepted(self, validator):
        """Test that a Location can be passed directly."""
        request = validator.validate(order_payload(location=PICKUP), START)
        assert request.location.lat == PICKUP.lat

    def test_all_errors_reported(self, validator):
        """Test that every bad field is reported at once."""
        with pytest.raises(ValidationError) as exc_info:
            validator.validate({
                "service_type": " ",
                "location": {"lat": 95.0, "lng": 10.0},
                "description": "x" * (MAX_DESCRIPTION_LENGTH + 1),
                "payment_method": "barter",
                "preferred_executor_ids": "exec-1",
            }, START)

        errors = exc_info.value.errors
        assert errors["service_type"] == "required"
        assert errors["location"] == "coordinates out of range"
        assert "longer than" in errors["description"]
        assert errors["payment_method"].startswith("must be one of")
        assert errors["preferred_executor_ids"] == "must be a list of IDs"
        assert exc_info.value.code == "VALIDATION_ERROR"

    @pytest.mark.parametrize("location, message", [
        (None, "required"),
        ({"lat": "north", "lng": 1.0}, "lat and lng must be numbers"),
        ({"lng": 1.0}, "lat and lng must be numbers"),
    ])
    def test_bad_location(self, validator, location, message):
        """Test location parsing errors."""
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(order_payload(location=location), START)
        assert exc_info.value.errors["location"] == message


class TestSchedule:
    """Tests for scheduled orders."""

    def test_scheduled_order(self, validator):
        """Test a valid scheduled time."""
        when = START + timedelta(hours=3)
        request = validator.validate(
            order_payload(order_type="scheduled", scheduled_for=when.isoformat()), START
        )
        assert request.order_type == OrderType.SCHEDULED
        assert request.scheduled_for == when

    def test_naive_time_is_utc(self, validator):
        """Test that a time without offset is read as UTC."""
        when = (START + timedelta(hours=3)).replace(tzinfo=None)
        request = validator.validate(
            order_payload(order_type="scheduled", scheduled_for=when), START
        )
        assert request.scheduled_for == START + timedelta(hours=3)

    @pytest.mark.parametrize("scheduled_for, message", [
        (None, "required for scheduled orders"),
        ("next tuesday", "not an ISO 8601 datetime"),
        ((START + timedelta(minutes=2)).isoformat(), "too soon"),
        ((START + timedelta(days=31)).isoformat(), "too far ahead"),
    ])
    def test_bad_schedule(self, validator, scheduled_for, message):
        """Test scheduling bounds."""
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(
                order_payload(order_type="scheduled", scheduled_for=scheduled_for), START
            )
        assert exc_info.value.errors["scheduled_for"] == message


class TestPriority:
    """Tests for determine_priority."""

    @pytest.mark.parametrize("overrides, expected", [
        ({}, OrderPriority.NORMAL),
        ({"is_urgent": True}, OrderPriority.HIGH),
        ({"is_vip": True}, OrderPriority.HIGH),
        ({"service_type": "accident_assistance"}, OrderPriority.URGENT),
        ({"service_type": "towing", "is_vip": True}, OrderPriority.URGENT),
    ])
    def test_priority(self, validator, overrides, expected):
        """Test priority rules."""
        request = validator.validate(order_payload(**overrides), START)
        assert validator.determine_priority(request) == expected
