"""
Booking, payment and payout state machines.

Booking:
    PENDING → CONFIRMED → PENDING_EXECUTION → IN_PROGRESS
        → AWAITING_CONFIRMATION → COMPLETED
    PENDING | CONFIRMED | PENDING_EXECUTION → CANCELLED
    any non-terminal state → DISPUTED → COMPLETED | CANCELLED | pre-dispute state

Payment:
    PENDING → ESCROW → RELEASED | REFUNDED
    PENDING → FAILED

Payout:
    PENDING → SUCCESS | FAILED
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional, Type

from escrow_ledger.domain.errors import InvalidTransition


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PENDING_EXECUTION = "PENDING_EXECUTION"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    ESCROW = "ESCROW"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class DisputeStatus(str, Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


class DisputeResolution(str, Enum):
    RELEASE = "RELEASE"
    REFUND = "REFUND"
    RESUME = "RESUME"


class ActorRole(str, Enum):
    CLIENT = "CLIENT"
    PROVIDER = "PROVIDER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


B = BookingStatus
P = PaymentStatus

BOOKING_TERMINAL: FrozenSet[BookingStatus] = frozenset({B.COMPLETED, B.CANCELLED})

# Cancellation is only possible before work starts; afterwards disputes apply.
CANCELLABLE: FrozenSet[BookingStatus] = frozenset({B.PENDING, B.CONFIRMED, B.PENDING_EXECUTION})

DISPUTABLE: FrozenSet[BookingStatus] = frozenset(
    {B.PENDING, B.CONFIRMED, B.PENDING_EXECUTION, B.IN_PROGRESS, B.AWAITING_CONFIRMATION}
)

BOOKING_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    B.PENDING: frozenset({B.CONFIRMED, B.CANCELLED, B.DISPUTED}),
    B.CONFIRMED: frozenset({B.PENDING_EXECUTION, B.CANCELLED, B.DISPUTED}),
    B.PENDING_EXECUTION: frozenset({B.IN_PROGRESS, B.CANCELLED, B.DISPUTED}),
    B.IN_PROGRESS: frozenset({B.AWAITING_CONFIRMATION, B.DISPUTED}),
    B.AWAITING_CONFIRMATION: frozenset({B.COMPLETED, B.DISPUTED}),
    B.DISPUTED: frozenset(
        {
            B.COMPLETED,
            B.CANCELLED,
            B.PENDING,
            B.CONFIRMED,
            B.PENDING_EXECUTION,
            B.IN_PROGRESS,
            B.AWAITING_CONFIRMATION,
        }
    ),
    B.COMPLETED: frozenset(),
    B.CANCELLED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    P.PENDING: frozenset({P.ESCROW, P.FAILED}),
    P.ESCROW: frozenset({P.RELEASED, P.REFUNDED}),
    P.RELEASED: frozenset(),
    P.REFUNDED: frozenset(),
    P.FAILED: frozenset(),
}

PAYOUT_TRANSITIONS: Dict[PayoutStatus, FrozenSet[PayoutStatus]] = {
    PayoutStatus.PENDING: frozenset({PayoutStatus.SUCCESS, PayoutStatus.FAILED}),
    PayoutStatus.SUCCESS: frozenset(),
    PayoutStatus.FAILED: frozenset(),
}

_MACHINES = {
    BookingStatus: ("booking", BOOKING_TRANSITIONS),
    PaymentStatus: ("payment", PAYMENT_TRANSITIONS),
    PayoutStatus: ("payout", PAYOUT_TRANSITIONS),
}

# A payment holding funds is consistent with these booking states. DISPUTED
# freezes escrow in place.
ESCROW_COMPATIBLE_BOOKING: FrozenSet[BookingStatus] = frozenset(
    {B.PENDING_EXECUTION, B.IN_PROGRESS, B.AWAITING_CONFIRMATION, B.COMPLETED, B.DISPUTED}
)

UNSETTLED_PAYMENT: FrozenSet[PaymentStatus] = frozenset({P.PENDING, P.FAILED})

# Legacy values found in production data. COMPLETED is deliberately absent:
# its meaning is ambiguous and needs an explicit operator decision.
LEGACY_PAYMENT_STATUS_MAP: Dict[str, PaymentStatus] = {
    "HELD_IN_ESCROW": P.ESCROW,
    "PROCESSING_RELEASE": P.RELEASED,
}
AMBIGUOUS_LEGACY_PAYMENT_STATUSES: FrozenSet[str] = frozenset({"COMPLETED"})


def can_transition(current: Enum, target: Enum) -> bool:
    """Whether ``current -> target`` is an edge of its state machine."""
    _, table = _MACHINES[type(current)]
    return target in table.get(current, frozenset())


def ensure_transition(current: Enum, target: Enum, entity_id: Optional[str] = None) -> None:
    """
    Raise InvalidTransition unless ``current -> target`` is allowed.

    Raises:
        InvalidTransition: If the state machine has no such edge
    """
    machine, _ = _MACHINES[type(current)]
    if not can_transition(current, target):
        raise InvalidTransition(
            f"{machine} cannot move from {current.value} to {target.value}",
            entity=machine,
            entity_id=entity_id,
            current=current.value,
            target=target.value,
        )


def is_terminal(status: Enum) -> bool:
    _, table = _MACHINES[type(status)]
    return not table.get(status)


def parse_status(enum_cls: Type[Enum], raw: str) -> Optional[Enum]:
    """Return the canonical member for ``raw`` or None when it is not canonical."""
    try:
        return enum_cls(raw)
    except ValueError:
        return None


def normalize_legacy_payment_status(
    raw: str, completed_as: Optional[PaymentStatus] = None
) -> Optional[PaymentStatus]:
    """
    Map a stored payment status onto the canonical enum.

    Returns None when the value cannot be mapped without an operator decision
    (legacy COMPLETED with no ``completed_as``) or is unknown.
    """
    canonical = parse_status(PaymentStatus, raw)
    if canonical is not None:
        return canonical

    upper = raw.strip().upper()
    canonical = parse_status(PaymentStatus, upper)
    if canonical is not None:
        return canonical
    if upper in LEGACY_PAYMENT_STATUS_MAP:
        return LEGACY_PAYMENT_STATUS_MAP[upper]
    if upper in AMBIGUOUS_LEGACY_PAYMENT_STATUSES:
        return completed_as
    return None
