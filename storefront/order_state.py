"""
Order lifecycle state machine. Valid transitions enforce business rules.

Normal flow: pending -> paid -> processing -> shipped -> delivered.
Any active state may exit to cancelled/refunded; pending/paid may also enter the
customer cancellation-request sub-path, which resolves to refunded or back to processing.
"""
from dataclasses import dataclass
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    CANCELLATION_REQUESTED = "cancellation_requested"


# Current status -> allowed next statuses
VALID_TRANSITIONS: dict[str, list[str]] = {
    "pending": ["paid", "cancelled", "refunded", "cancellation_requested"],
    "paid": ["processing", "cancelled", "refunded", "cancellation_requested"],
    "processing": ["shipped", "cancelled", "refunded"],
    "cancellation_requested": ["refunded", "processing"],
    "shipped": ["delivered", "cancelled", "refunded"],
    "delivered": [],  # terminal
    "cancelled": [],  # terminal
    "refunded": [],  # terminal
}

# Statuses that give reserved stock back
REFUND_CLASS_STATUSES = frozenset({"cancelled", "refunded"})

# Customers may only ask for cancellation before the parcel leaves
CANCELLATION_REQUESTABLE_STATUSES = frozenset({"pending", "paid", "processing"})


@dataclass(frozen=True)
class TransitionResult:
    valid: bool
    error: str | None = None


def _value(status) -> str | None:
    if isinstance(status, Enum):
        return status.value
    return status


def validate_transition(from_status, to_status) -> TransitionResult:
    """
    Check whether an order may move from from_status to to_status.
    Re-submitting the current status is always valid, terminal or not.
    """
    current = _value(from_status)
    target = _value(to_status)

    if current == target:
        return TransitionResult(valid=True)

    valid_targets = VALID_TRANSITIONS.get(current)
    if valid_targets is None:
        return TransitionResult(valid=False, error=f'Unknown order status: "{current}"')

    if not valid_targets:
        return TransitionResult(
            valid=False,
            error=f'Cannot change status from "{current}" to "{target}". State "{current}" is terminal.',
        )

    if target not in valid_targets:
        allowed = ", ".join(f'"{s}"' for s in valid_targets)
        return TransitionResult(
            valid=False,
            error=f'Invalid status transition from "{current}" to "{target}". Valid transitions: {allowed}',
        )

    return TransitionResult(valid=True)


def get_valid_next_statuses(status) -> list[str]:
    """Statuses reachable from status (empty for terminal or unknown)."""
    return list(VALID_TRANSITIONS.get(_value(status), []))


def is_terminal_status(status) -> bool:
    return VALID_TRANSITIONS.get(_value(status)) == []


def is_active_status(status) -> bool:
    return bool(VALID_TRANSITIONS.get(_value(status)))


def is_refund_class(status) -> bool:
    return _value(status) in REFUND_CLASS_STATUSES
