"""
Tests for the booking, payment and payout state machines.
"""
import pytest

from escrow_ledger.domain.errors import InvalidTransition
from escrow_ledger.domain.states import (
    BOOKING_TRANSITIONS,
    BookingStatus,
    PaymentStatus,
    PayoutStatus,
    can_transition,
    ensure_transition,
    is_terminal,
    normalize_legacy_payment_status,
    parse_status,
)

B = BookingStatus
P = PaymentStatus


class TestBookingMachine:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (B.PENDING, B.CONFIRMED),
            (B.CONFIRMED, B.PENDING_EXECUTION),
            (B.PENDING_EXECUTION, B.IN_PROGRESS),
            (B.IN_PROGRESS, B.AWAITING_CONFIRMATION),
            (B.AWAITING_CONFIRMATION, B.COMPLETED),
            (B.CONFIRMED, B.CANCELLED),
            (B.AWAITING_CONFIRMATION, B.DISPUTED),
            (B.DISPUTED, B.IN_PROGRESS),
        ],
    )
    def test_allowed_edges(self, current: BookingStatus, target: BookingStatus) -> None:
        assert can_transition(current, target)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (B.PENDING, B.IN_PROGRESS),
            (B.IN_PROGRESS, B.CANCELLED),
            (B.AWAITING_CONFIRMATION, B.CANCELLED),
            (B.COMPLETED, B.DISPUTED),
            (B.CANCELLED, B.PENDING),
        ],
    )
    def test_forbidden_edges(self, current: BookingStatus, target: BookingStatus) -> None:
        assert not can_transition(current, target)
        with pytest.raises(InvalidTransition) as exc_info:
            ensure_transition(current, target, entity_id="bk_1")
        assert exc_info.value.context["current"] == current.value
        assert exc_info.value.context["entity_id"] == "bk_1"

    @pytest.mark.unit
    def test_terminal_states(self) -> None:
        assert is_terminal(B.COMPLETED)
        assert is_terminal(B.CANCELLED)
        assert not is_terminal(B.DISPUTED)
        assert all(BOOKING_TRANSITIONS[s] == frozenset() for s in (B.COMPLETED, B.CANCELLED))


class TestPaymentMachine:
    @pytest.mark.unit
    def test_escrow_flows(self) -> None:
        assert can_transition(P.PENDING, P.ESCROW)
        assert can_transition(P.ESCROW, P.RELEASED)
        assert can_transition(P.ESCROW, P.REFUNDED)
        assert can_transition(P.PENDING, P.FAILED)

    @pytest.mark.unit
    def test_released_never_refunded(self) -> None:
        assert not can_transition(P.RELEASED, P.REFUNDED)
        assert is_terminal(P.RELEASED)

    @pytest.mark.unit
    def test_payout_machine(self) -> None:
        assert can_transition(PayoutStatus.PENDING, PayoutStatus.SUCCESS)
        assert can_transition(PayoutStatus.PENDING, PayoutStatus.FAILED)
        assert not can_transition(PayoutStatus.FAILED, PayoutStatus.PENDING)


class TestLegacyStatuses:
    @pytest.mark.unit
    def test_parse_status(self) -> None:
        assert parse_status(PaymentStatus, "ESCROW") is P.ESCROW
        assert parse_status(PaymentStatus, "HELD_IN_ESCROW") is None

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("ESCROW", P.ESCROW),
            ("escrow", P.ESCROW),
            (" released ", P.RELEASED),
            ("HELD_IN_ESCROW", P.ESCROW),
            ("held_in_escrow", P.ESCROW),
            ("PROCESSING_RELEASE", P.RELEASED),
            ("SOMETHING_ELSE", None),
        ],
    )
    def test_normalize(self, raw: str, expected: PaymentStatus) -> None:
        assert normalize_legacy_payment_status(raw) is expected

    @pytest.mark.unit
    def test_completed_needs_explicit_target(self) -> None:
        assert normalize_legacy_payment_status("COMPLETED") is None
        assert normalize_legacy_payment_status("completed", P.RELEASED) is P.RELEASED
        assert normalize_legacy_payment_status("COMPLETED", P.ESCROW) is P.ESCROW
