"""
Status Registry Tests.

============================================================
PURPOSE
============================================================
The lifecycle tables are the contract every other component
relies on.

TEST CATEGORIES:
- Transition table shape
- Timeouts and timeout actions
- Entry actions
- Reason code normalization

============================================================
"""

from datetime import timedelta

import pytest

from dispatch_engine.config import StatusTimeoutConfig
from dispatch_engine.status_registry import (
    STATUS_TRANSITIONS,
    ENTRY_ACTIONS,
    TIMEOUT_ACTIONS,
    StatusRegistry,
    TimeoutAction,
    EntryAction,
    normalize_cancellation_reason,
    normalize_failure_reason,
)
from dispatch_engine.types import OrderStatus, ActorRole, FINAL_STATUSES

from conftest import START


class TestTransitionTable:
    """Tests for the transition table."""

    def test_every_status_has_an_entry(self):
        """Test that the table covers every status."""
        assert set(STATUS_TRANSITIONS) == set(OrderStatus)

    @pytest.mark.parametrize("status", sorted(FINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_statuses_have_no_edges(self, status):
        """Test that nothing leaves a terminal status."""
        assert STATUS_TRANSITIONS[status] == frozenset()
        allowed, reason = StatusRegistry.check_transition(status, OrderStatus.SEARCHING)
        assert allowed is False
        assert "terminal" in reason

    def test_happy_path_is_allowed(self):
        """Test the full fulfilment path."""
        path = [
            OrderStatus.NEW,
            OrderStatus.SEARCHING,
            OrderStatus.ASSIGNED,
            OrderStatus.ACCEPTED,
            OrderStatus.EN_ROUTE,
            OrderStatus.ARRIVED,
            OrderStatus.IN_PROGRESS,
            OrderStatus.COMPLETED,
        ]
        for from_status, to_status in zip(path, path[1:]):
            assert StatusRegistry.can_transition(from_status, to_status)

    def test_rejected_only_returns_to_search(self):
        """Test that REJECTED leads back to SEARCHING only."""
        assert StatusRegistry.next_statuses(OrderStatus.REJECTED) == [OrderStatus.SEARCHING]

    def test_skipping_a_step_is_refused(self):
        """Test that NEW cannot jump to ACCEPTED."""
        allowed, reason = StatusRegistry.check_transition(OrderStatus.NEW, OrderStatus.ACCEPTED)
        assert allowed is False
        assert reason == "Invalid transition: new -> accepted"

    def test_searching_cannot_be_put_on_hold(self):
        """Test that only fulfilment statuses can be paused."""
        assert not StatusRegistry.can_transition(OrderStatus.SEARCHING, OrderStatus.ON_HOLD)
        assert StatusRegistry.can_transition(OrderStatus.IN_PROGRESS, OrderStatus.ON_HOLD)

    def test_groups(self):
        """Test status group membership."""
        assert StatusRegistry.in_group(OrderStatus.ON_HOLD, "ACTIVE")
        assert not StatusRegistry.in_group(OrderStatus.DISPUTED, "ACTIVE")
        assert StatusRegistry.in_group(OrderStatus.EN_ROUTE, "CANCELLABLE")
        assert not StatusRegistry.in_group(OrderStatus.ARRIVED, "CANCELLABLE")


class TestTimeouts:
    """Tests for per-status timeouts."""

    def test_terminal_statuses_have_no_timeout(self):
        """Test that terminal statuses never arm a timer."""
        registry = StatusRegistry()
        for status in FINAL_STATUSES:
            assert registry.timeout_for(status) is None
            assert registry.timeout_action(status) is None

    def test_every_live_status_has_timeout_and_action(self):
        """Test that no live order can be forgotten."""
        registry = StatusRegistry()
        for status in OrderStatus:
            if status.is_terminal():
                continue
            assert registry.timeout_for(status) > 0
            assert status in TIMEOUT_ACTIONS

    def test_timeouts_come_from_config(self):
        """Test that configured timeouts are used."""
        registry = StatusRegistry(StatusTimeoutConfig(assigned=12.0))
        assert registry.timeout_for(OrderStatus.ASSIGNED) == 12.0

    def test_timeout_actions(self):
        """Test the action mapped to each waiting status."""
        assert StatusRegistry.timeout_action(OrderStatus.NEW) == TimeoutAction.START_SEARCH
        assert StatusRegistry.timeout_action(OrderStatus.SEARCHING) == TimeoutAction.CONTINUE_OR_EXPIRE
        assert StatusRegistry.timeout_action(OrderStatus.ASSIGNED) == TimeoutAction.REVERT_TO_SEARCH
        assert StatusRegistry.timeout_action(OrderStatus.ACCEPTED) == TimeoutAction.REMIND_EXECUTOR
        assert StatusRegistry.timeout_action(OrderStatus.IN_PROGRESS) == TimeoutAction.ESCALATE

    def test_is_status_expired(self):
        """Test expiry relative to the status change time."""
        registry = StatusRegistry(StatusTimeoutConfig(assigned=30.0))
        assert not registry.is_status_expired(
            OrderStatus.ASSIGNED, START, START + timedelta(seconds=30)
        )
        assert registry.is_status_expired(
            OrderStatus.ASSIGNED, START, START + timedelta(seconds=31)
        )
        assert not registry.is_status_expired(
            OrderStatus.COMPLETED, START, START + timedelta(days=365)
        )


class TestEntryActions:
    """Tests for entry actions."""

    def test_every_status_has_entry_actions(self):
        """Test that the entry table covers every status."""
        assert set(ENTRY_ACTIONS) == set(OrderStatus)

    def test_searching_launches_search(self):
        """Test that entering SEARCHING arms a timer and launches search."""
        actions = StatusRegistry.entry_actions(OrderStatus.SEARCHING)
        assert EntryAction.ARM_TIMER in actions
        assert EntryAction.LAUNCH_SEARCH in actions

    def test_terminal_statuses_close(self):
        """Test that terminal statuses cancel timers instead of arming them."""
        for status in FINAL_STATUSES:
            actions = StatusRegistry.entry_actions(status)
            assert EntryAction.CLOSE in actions
            assert EntryAction.ARM_TIMER not in actions

    def test_progress(self):
        """Test the requester-facing progress value."""
        assert StatusRegistry.progress(OrderStatus.NEW) == 10
        assert StatusRegistry.progress(OrderStatus.COMPLETED) == 100
        assert StatusRegistry.progress(OrderStatus.CANCELLED) == 0


class TestReasonCodes:
    """Tests for reason code normalization."""

    def test_known_reason_kept(self):
        """Test that a valid reason passes through."""
        assert normalize_cancellation_reason(ActorRole.REQUESTER, "long_wait") == "long_wait"

    def test_unknown_reason_falls_back_to_other(self):
        """Test the fallback for roles that allow 'other'."""
        assert normalize_cancellation_reason(ActorRole.EXECUTOR, "flat_battery") == "other"

    def test_system_fallback(self):
        """Test the fallback for the system role."""
        assert normalize_cancellation_reason(ActorRole.SYSTEM, None) == "technical_error"

    def test_failure_reason(self):
        """Test failure reason normalization."""
        assert normalize_failure_reason("cannot_fix") == "cannot_fix"
        assert normalize_failure_reason("aliens") == "other"
