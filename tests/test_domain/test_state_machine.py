"""Tests for the order and milestone state machine guards.

These tests verify that:
    1. All valid transitions are allowed.
    2. All invalid transitions are blocked.
    3. The next_*_status helpers raise domain errors, not library ones.
    4. Final states have no outgoing edges.
"""

from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from marketplace_escrow.domain.exceptions import InvalidStateTransitionError
from marketplace_escrow.domain.state_machine import (
    MilestoneStateMachine,
    OrderStateMachine,
    next_milestone_status,
    next_order_status,
)


class TestHappyPath:
    """Test the full happy-path lifecycle: active -> completed."""

    def test_full_lifecycle(self) -> None:
        sm = OrderStateMachine("active")
        assert sm.status == "active"

        sm.mark_delivered()
        assert sm.status == "delivered"

        sm.complete_order()
        assert sm.status == "completed"

    def test_partial_release_reopens(self) -> None:
        sm = OrderStateMachine("delivered")
        sm.reopen_order()
        assert sm.status == "active"

        sm.mark_delivered()
        sm.complete_order()
        assert sm.status == "completed"


class TestCancelAndDispute:
    @pytest.mark.parametrize("start", ["active", "delivered"])
    def test_cancel(self, start: str) -> None:
        assert next_order_status(start, "cancel_order") == "cancelled"

    @pytest.mark.parametrize("start", ["active", "delivered"])
    def test_dispute(self, start: str) -> None:
        assert next_order_status(start, "raise_dispute") == "disputed"


class TestInvalidTransitions:
    def test_complete_from_active(self) -> None:
        sm = OrderStateMachine("active")
        with pytest.raises(TransitionNotAllowed):
            sm.complete_order()

    @pytest.mark.parametrize("final", ["completed", "cancelled", "disputed"])
    def test_final_states_have_no_events(self, final: str) -> None:
        sm = OrderStateMachine(final)
        assert sm.get_allowed_events() == []

    def test_helper_raises_domain_error(self) -> None:
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            next_order_status("completed", "reopen_order")
        assert exc_info.value.current_state == "completed"
        assert exc_info.value.attempted == "reopen_order"

    def test_unknown_event(self) -> None:
        with pytest.raises(InvalidStateTransitionError):
            next_order_status("active", "teleport")

    def test_unknown_start_status(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            OrderStateMachine("shipped")


class TestAllowedEvents:
    def test_from_delivered(self) -> None:
        events = set(OrderStateMachine("delivered").get_allowed_events())
        assert events == {"complete_order", "reopen_order", "cancel_order", "raise_dispute"}


class TestMilestoneMachine:
    def test_monotonic_progression(self) -> None:
        sm = MilestoneStateMachine("pending")
        sm.confirm_payment()
        assert sm.status == "paid"
        sm.release_funds()
        assert sm.status == "released"

    def test_cannot_release_pending(self) -> None:
        with pytest.raises(InvalidStateTransitionError):
            next_milestone_status("pending", "release_funds")

    def test_cannot_go_backwards(self) -> None:
        with pytest.raises(InvalidStateTransitionError):
            next_milestone_status("released", "confirm_payment")

    def test_cannot_pay_twice(self) -> None:
        with pytest.raises(InvalidStateTransitionError):
            next_milestone_status("paid", "confirm_payment")
