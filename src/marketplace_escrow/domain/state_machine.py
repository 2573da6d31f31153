"""Order and milestone state machine guards.

Uses python-statemachine to enforce legal transitions at the domain level.
Services instantiate a machine at the record's current status, fire the
event, and only then write the resulting status.

Order transition table:
    active     -> delivered   (mark_delivered)
    delivered  -> completed   (complete_order)
    delivered  -> active      (reopen_order, partial release)
    active     -> cancelled   (cancel_order)
    delivered  -> cancelled   (cancel_order)
    active     -> disputed    (raise_dispute)
    delivered  -> disputed    (raise_dispute)

completed, cancelled and disputed have no outgoing edges.

Milestone transition table:
    pending -> paid      (confirm_payment)
    paid    -> released  (release_funds)
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from marketplace_escrow.domain.exceptions import InvalidStateTransitionError


class _GuardMixin:
    """Shared construction and query helpers for the status guards."""

    def _validate_start(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the enum value)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return the event identifiers that can fire from the current state."""
        return [event.id for event in self.allowed_events]


class OrderStateMachine(_GuardMixin, StateMachine):
    """State machine that guards the order lifecycle.

    Usage:
        sm = OrderStateMachine(current_status="delivered")
        sm.complete_order()
        sm.status  # "completed"
    """

    # --- States ---
    ACTIVE = State("Active", value="active", initial=True)
    DELIVERED = State("Delivered", value="delivered")
    COMPLETED = State("Completed", value="completed", final=True)
    CANCELLED = State("Cancelled", value="cancelled", final=True)
    DISPUTED = State("Disputed", value="disputed", final=True)

    # --- Events / Transitions ---
    mark_delivered = ACTIVE.to(DELIVERED)
    complete_order = DELIVERED.to(COMPLETED)
    reopen_order = DELIVERED.to(ACTIVE)
    cancel_order = ACTIVE.to(CANCELLED) | DELIVERED.to(CANCELLED)
    raise_dispute = ACTIVE.to(DISPUTED) | DELIVERED.to(DISPUTED)

    def __init__(self, current_status: str = "active") -> None:
        """Initialize the state machine at a given order status.

        Args:
            current_status: An OrderStatus value (e.g., "delivered").
        """
        self._validate_start(current_status)
        super().__init__(start_value=current_status)


class MilestoneStateMachine(_GuardMixin, StateMachine):
    """State machine that keeps milestone progress monotonic."""

    PENDING = State("Pending", value="pending", initial=True)
    PAID = State("Paid", value="paid")
    RELEASED = State("Released", value="released", final=True)

    confirm_payment = PENDING.to(PAID)
    release_funds = PAID.to(RELEASED)

    def __init__(self, current_status: str = "pending") -> None:
        self._validate_start(current_status)
        super().__init__(start_value=current_status)


def fire(machine: StateMachine, event_name: str) -> str:
    """Fire ``event_name`` on ``machine`` and return the resulting status.

    Raises:
        InvalidStateTransitionError: If the event is unknown or not allowed
            from the machine's current state.
    """
    current = str(machine.current_state.value)
    event_method = getattr(machine, event_name, None)
    if event_method is None or not callable(event_method):
        raise InvalidStateTransitionError(current, event_name)
    try:
        event_method()
    except TransitionNotAllowed as err:
        raise InvalidStateTransitionError(current, event_name) from err
    return str(machine.current_state.value)


def next_order_status(current_status: str, event_name: str) -> str:
    """Validate an order transition and return the new status."""
    return fire(OrderStateMachine(current_status=current_status), event_name)


def next_milestone_status(current_status: str, event_name: str) -> str:
    """Validate a milestone transition and return the new status."""
    return fire(MilestoneStateMachine(current_status=current_status), event_name)
