"""
Commission status state machine.

Every status change on a commission goes through validate_transition().
Status only moves forward; rejected and clawed_back are terminal.
"""
from __future__ import annotations

from app.core.errors import InvalidTransitionError


class CommissionStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"
    CLAWED_BACK = "clawed_back"

    @classmethod
    def all(cls) -> list[str]:
        return [cls.PENDING, cls.APPROVED, cls.REJECTED, cls.PAID, cls.CLAWED_BACK]


COMMISSION_TRANSITIONS: dict[str, list[str]] = {
    CommissionStatus.PENDING: [
        CommissionStatus.APPROVED,
        CommissionStatus.REJECTED,
        CommissionStatus.CLAWED_BACK,
    ],
    CommissionStatus.APPROVED: [
        CommissionStatus.PAID,
        CommissionStatus.CLAWED_BACK,
    ],
    CommissionStatus.PAID: [
        CommissionStatus.CLAWED_BACK,
    ],
    CommissionStatus.REJECTED: [],     # terminal
    CommissionStatus.CLAWED_BACK: [],  # terminal
}

# Statuses a manual bonus/correction may be applied in
ADJUSTABLE_STATUSES = (CommissionStatus.PENDING, CommissionStatus.APPROVED, CommissionStatus.PAID)
# Statuses a (full or partial) clawback may be applied in
CLAWBACK_STATUSES = (CommissionStatus.APPROVED, CommissionStatus.PAID)


def can_transition(current_status: str, new_status: str) -> bool:
    return new_status in COMMISSION_TRANSITIONS.get(current_status, [])


def get_allowed_transitions(current_status: str) -> list[str]:
    return list(COMMISSION_TRANSITIONS.get(current_status, []))


def is_terminal(status: str) -> bool:
    return status in COMMISSION_TRANSITIONS and not COMMISSION_TRANSITIONS[status]


def validate_transition(current_status: str, new_status: str) -> None:
    """
    Raise InvalidTransitionError unless current -> new is in the table.

    A same-state request is invalid too: nothing is ever coerced.
    """
    if new_status not in COMMISSION_TRANSITIONS:
        raise InvalidTransitionError(current_status, new_status, f"Unknown commission status {new_status}")
    if not can_transition(current_status, new_status):
        raise InvalidTransitionError(current_status, new_status)


def status_change_reason(old_status: str, new_status: str, reason: str | None = None) -> str:
    base = f"Status changed from {old_status} to {new_status}"
    return f"{base}: {reason}" if reason else base
