"""
Consistency checker for bookings, payments and payouts.

Read-only: it reports every violation of the cross-entity invariants and never
corrects anything. Safe to run against production at any time, concurrently
with everything else.

Checks:
- Orphaned payments and payouts
- Bookings with more than one payment
- Escrow split and booking/payment amount mismatches
- Non-canonical (legacy) payment statuses, still checked as the status they
  map to when that mapping is unambiguous
- Payment status incompatible with the booking status
- Released payments without exactly one active payout of the escrow amount
- Overdue AWAITING_CONFIRMATION bookings (sweep not keeping up)
- Ledger postings: duplicates, unbalanced references and per-payment
  balances that disagree with the payment status
"""
import time
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.config import Settings, get_settings
from escrow_ledger.core.ledger import PAYMENT_REFERENCE, EntryType, expected_balances
from escrow_ledger.database.models import Booking, JobProof, LedgerEntry, Payment, Payout
from escrow_ledger.domain.errors import InvariantViolation
from escrow_ledger.domain.states import (
    ESCROW_COMPATIBLE_BOOKING,
    UNSETTLED_PAYMENT,
    BookingStatus,
    PaymentStatus,
    PayoutStatus,
    normalize_legacy_payment_status,
    parse_status,
)
from escrow_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

VIOLATION_CODES = (
    "orphaned_payment",
    "multiple_payments_for_booking",
    "payment_split_mismatch",
    "booking_payment_amount_mismatch",
    "non_canonical_payment_status",
    "released_without_completed_booking",
    "escrow_with_incompatible_booking",
    "unfunded_booking_in_execution",
    "completed_booking_with_unsettled_payment",
    "released_payment_payout_count",
    "payout_amount_mismatch",
    "payout_for_unreleased_payment",
    "orphaned_payout",
    "stale_auto_confirm",
    "duplicate_ledger_entry",
    "unbalanced_ledger_posting",
    "ledger_payment_mismatch",
    "orphaned_ledger_entry",
)

# Bookings past this point must have had their capture recorded
_FUNDED_BOOKING = frozenset(
    {
        BookingStatus.PENDING_EXECUTION,
        BookingStatus.IN_PROGRESS,
        BookingStatus.AWAITING_CONFIRMATION,
    }
)


@dataclass(frozen=True)
class BookingRow:
    id: str
    status: str
    total_amount: int
    platform_fee: int


@dataclass(frozen=True)
class PaymentRow:
    id: str
    booking_id: str
    status: str
    amount: int
    escrow_amount: int
    platform_fee: int


@dataclass(frozen=True)
class PayoutRow:
    id: str
    payment_id: str
    status: str
    amount: int


@dataclass(frozen=True)
class LedgerRow:
    id: int
    reference_type: str
    reference_id: str
    account: str
    entry_type: str
    amount: int


@dataclass
class Violation:
    """One broken invariant, with the ids and states needed to investigate it."""

    code: str
    message: str
    booking_id: Optional[str] = None
    payment_id: Optional[str] = None
    payout_id: Optional[str] = None
    observed: Dict[str, Any] = field(default_factory=dict)

    def as_error(self) -> InvariantViolation:
        return InvariantViolation(
            self.message,
            code=self.code,
            booking_id=self.booking_id,
            payment_id=self.payment_id,
            payout_id=self.payout_id,
            **self.observed,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v not in (None, {})}


@dataclass
class ReconciliationReport:
    checked_at: datetime
    bookings: int = 0
    payments: int = 0
    payouts: int = 0
    violations: List[Violation] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.violations

    def counts_by_code(self) -> Dict[str, int]:
        counts = Counter(v.code for v in self.violations)
        return {code: counts.get(code, 0) for code in VIOLATION_CODES}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked_at": self.checked_at.isoformat(),
            "ok": self.ok,
            "counts": {
                "bookings": self.bookings,
                "payments": self.payments,
                "payouts": self.payouts,
            },
            "violation_counts": {k: v for k, v in self.counts_by_code().items() if v},
            "violations": [v.to_dict() for v in self.violations],
            "duration_seconds": round(self.duration_seconds, 3),
        }


def find_violations(
    bookings: Iterable[BookingRow],
    payments: Iterable[PaymentRow],
    payouts: Iterable[PayoutRow],
    stale_booking_ids: Iterable[str] = (),
) -> List[Violation]:
    """
    Check the cross-entity invariants over full table snapshots.

    Pure function; the database is only read by ``ConsistencyChecker``.
    """
    bookings_by_id = {b.id: b for b in bookings}
    payments = list(payments)
    payments_by_id = {p.id: p for p in payments}
    payments_by_booking: Dict[str, List[PaymentRow]] = defaultdict(list)
    for p in payments:
        payments_by_booking[p.booking_id].append(p)
    payouts_by_payment: Dict[str, List[PayoutRow]] = defaultdict(list)
    payouts = list(payouts)
    for po in payouts:
        payouts_by_payment[po.payment_id].append(po)

    violations: List[Violation] = []

    for booking_id, booking_payments in payments_by_booking.items():
        if len(booking_payments) > 1:
            violations.append(
                Violation(
                    "multiple_payments_for_booking",
                    f"Booking has {len(booking_payments)} payments",
                    booking_id=booking_id,
                    observed={"payment_ids": sorted(p.id for p in booking_payments)},
                )
            )

    for p in payments:
        if p.escrow_amount + p.platform_fee != p.amount:
            violations.append(
                Violation(
                    "payment_split_mismatch",
                    "escrow_amount + platform_fee != amount",
                    booking_id=p.booking_id,
                    payment_id=p.id,
                    observed={
                        "amount": p.amount,
                        "escrow_amount": p.escrow_amount,
                        "platform_fee": p.platform_fee,
                    },
                )
            )

        status = parse_status(PaymentStatus, p.status)
        if status is None:
            violations.append(
                Violation(
                    "non_canonical_payment_status",
                    f"Payment status {p.status!r} is not canonical",
                    booking_id=p.booking_id,
                    payment_id=p.id,
                    observed={"payment_status": p.status},
                )
            )
            # A legacy value with a single meaning is still checked as that status
            status = normalize_legacy_payment_status(p.status)

        booking = bookings_by_id.get(p.booking_id)
        if booking is None:
            violations.append(
                Violation(
                    "orphaned_payment",
                    "Payment references a booking that does not exist",
                    booking_id=p.booking_id,
                    payment_id=p.id,
                    observed={"payment_status": p.status},
                )
            )
            continue

        if p.amount != booking.total_amount or p.platform_fee != booking.platform_fee:
            violations.append(
                Violation(
                    "booking_payment_amount_mismatch",
                    "Payment amounts differ from the booking",
                    booking_id=booking.id,
                    payment_id=p.id,
                    observed={
                        "booking_total": booking.total_amount,
                        "booking_fee": booking.platform_fee,
                        "payment_amount": p.amount,
                        "payment_fee": p.platform_fee,
                    },
                )
            )

        if status is None:
            continue
        booking_status = parse_status(BookingStatus, booking.status)
        observed = {"payment_status": p.status, "booking_status": booking.status}

        if status is PaymentStatus.RELEASED and booking_status is not BookingStatus.COMPLETED:
            violations.append(
                Violation(
                    "released_without_completed_booking",
                    "Payment released but booking is not completed",
                    booking_id=booking.id,
                    payment_id=p.id,
                    observed=observed,
                )
            )
        if status is PaymentStatus.ESCROW and booking_status not in ESCROW_COMPATIBLE_BOOKING:
            violations.append(
                Violation(
                    "escrow_with_incompatible_booking",
                    "Payment held in escrow for a booking that cannot hold funds",
                    booking_id=booking.id,
                    payment_id=p.id,
                    observed=observed,
                )
            )
        if booking_status in _FUNDED_BOOKING and status is not PaymentStatus.ESCROW:
            violations.append(
                Violation(
                    "unfunded_booking_in_execution",
                    "Booking past payment but its payment is not in escrow",
                    booking_id=booking.id,
                    payment_id=p.id,
                    observed=observed,
                )
            )
        if booking_status is BookingStatus.COMPLETED and status in UNSETTLED_PAYMENT:
            violations.append(
                Violation(
                    "completed_booking_with_unsettled_payment",
                    "Completed booking has an unpaid or failed payment",
                    booking_id=booking.id,
                    payment_id=p.id,
                    observed=observed,
                )
            )

        if status is PaymentStatus.RELEASED:
            active = [
                po
                for po in payouts_by_payment.get(p.id, [])
                if po.status != PayoutStatus.FAILED.value
            ]
            if len(active) != 1:
                violations.append(
                    Violation(
                        "released_payment_payout_count",
                        f"Released payment has {len(active)} active payouts",
                        booking_id=booking.id,
                        payment_id=p.id,
                        observed={"active_payout_ids": sorted(po.id for po in active)},
                    )
                )

    for po in payouts:
        payment = payments_by_id.get(po.payment_id)
        if payment is None:
            violations.append(
                Violation(
                    "orphaned_payout",
                    "Payout references a payment that does not exist",
                    payment_id=po.payment_id,
                    payout_id=po.id,
                    observed={"payout_status": po.status},
                )
            )
            continue
        if po.amount != payment.escrow_amount:
            violations.append(
                Violation(
                    "payout_amount_mismatch",
                    "Payout amount differs from the payment's escrow amount",
                    booking_id=payment.booking_id,
                    payment_id=payment.id,
                    payout_id=po.id,
                    observed={"payout_amount": po.amount, "escrow_amount": payment.escrow_amount},
                )
            )
        if normalize_legacy_payment_status(payment.status) is not PaymentStatus.RELEASED:
            violations.append(
                Violation(
                    "payout_for_unreleased_payment",
                    "Payout exists for a payment that was not released",
                    booking_id=payment.booking_id,
                    payment_id=payment.id,
                    payout_id=po.id,
                    observed={"payment_status": payment.status, "payout_status": po.status},
                )
            )

    for booking in bookings_by_id.values():
        if booking.id in payments_by_booking:
            continue
        if parse_status(BookingStatus, booking.status) in _FUNDED_BOOKING:
            violations.append(
                Violation(
                    "unfunded_booking_in_execution",
                    "Booking past payment but has no payment",
                    booking_id=booking.id,
                    observed={"booking_status": booking.status},
                )
            )

    for booking_id in stale_booking_ids:
        violations.append(
            Violation(
                "stale_auto_confirm",
                "Booking is past its auto-confirm deadline but not completed",
                booking_id=booking_id,
            )
        )

    return violations


def _nonzero(balances: Dict[str, int]) -> Dict[str, int]:
    return {account: amount for account, amount in balances.items() if amount}


def find_ledger_violations(
    payments: Iterable[PaymentRow], entries: Iterable[LedgerRow]
) -> List[Violation]:
    """
    Check the ledger on its own and against payment statuses.

    Each posting balances, no account is credited (or debited) twice for the
    same reference, and every payment's net per account is what its status
    implies. Payments whose status cannot be mapped are left to the
    status checks.
    """
    payments_by_id = {p.id: p for p in payments}
    by_reference: Dict[Tuple[str, str], List[LedgerRow]] = defaultdict(list)
    for entry in entries:
        by_reference[(entry.reference_type, entry.reference_id)].append(entry)

    violations: List[Violation] = []

    for (reference_type, reference_id), rows in by_reference.items():
        payment_id = reference_id if reference_type == PAYMENT_REFERENCE else None
        reference = {"reference_type": reference_type, "reference_id": reference_id}

        sides = Counter((e.account, e.entry_type) for e in rows)
        for (account, entry_type), count in sorted(sides.items()):
            if count > 1:
                violations.append(
                    Violation(
                        "duplicate_ledger_entry",
                        f"{entry_type} {account} posted {count} times",
                        payment_id=payment_id,
                        observed={
                            **reference,
                            "entry_ids": sorted(
                                e.id
                                for e in rows
                                if (e.account, e.entry_type) == (account, entry_type)
                            ),
                        },
                    )
                )

        credits = sum(e.amount for e in rows if e.entry_type == EntryType.CREDIT.value)
        debits = sum(e.amount for e in rows if e.entry_type == EntryType.DEBIT.value)
        if credits != debits:
            violations.append(
                Violation(
                    "unbalanced_ledger_posting",
                    "Ledger credits and debits differ for one reference",
                    payment_id=payment_id,
                    observed={**reference, "credits": credits, "debits": debits},
                )
            )

        if payment_id is not None and payment_id not in payments_by_id:
            violations.append(
                Violation(
                    "orphaned_ledger_entry",
                    "Ledger entries reference a payment that does not exist",
                    payment_id=payment_id,
                    observed={"entry_ids": sorted(e.id for e in rows)},
                )
            )

    for p in payments_by_id.values():
        status = normalize_legacy_payment_status(p.status)
        if status is None:
            continue
        actual: Dict[str, int] = defaultdict(int)
        for e in by_reference.get((PAYMENT_REFERENCE, p.id), []):
            actual[e.account] += e.amount if e.entry_type == EntryType.CREDIT.value else -e.amount
        expected = expected_balances(status, p.amount, p.escrow_amount, p.platform_fee)
        if _nonzero(actual) != _nonzero(expected):
            violations.append(
                Violation(
                    "ledger_payment_mismatch",
                    "Ledger balances do not match the payment status",
                    booking_id=p.booking_id,
                    payment_id=p.id,
                    observed={
                        "payment_status": p.status,
                        "expected": _nonzero(expected),
                        "actual": _nonzero(actual),
                    },
                )
            )

    return violations


class ConsistencyChecker:
    """Loads table snapshots and reports invariant violations."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def _stale_auto_confirm(self, db: AsyncSession, now: datetime) -> Set[str]:
        # Two sweep intervals of grace before the lag counts as a violation
        cutoff = now - timedelta(seconds=2 * self.settings.auto_confirm_interval_seconds)
        result = await db.execute(
            select(Booking.id)
            .join(JobProof, JobProof.booking_id == Booking.id)
            .where(
                Booking.status == BookingStatus.AWAITING_CONFIRMATION.value,
                JobProof.client_confirmed.is_(False),
                JobProof.auto_confirm_at <= cutoff,
            )
        )
        return set(result.scalars())

    async def run(self, db: AsyncSession, now: Optional[datetime] = None) -> ReconciliationReport:
        """
        Run every check against the current database state.

        Args:
            db: Database session (nothing is written)
            now: Reference time for deadline checks

        Returns:
            ReconciliationReport: Entity counts and all violations found
        """
        now = now or datetime.now(timezone.utc)
        started = time.perf_counter()
        logger.info("reconciliation_started")

        bookings = [
            BookingRow(*row)
            for row in await db.execute(
                select(Booking.id, Booking.status, Booking.total_amount, Booking.platform_fee)
            )
        ]
        payments = [
            PaymentRow(*row)
            for row in await db.execute(
                select(
                    Payment.id,
                    Payment.booking_id,
                    Payment.status,
                    Payment.amount,
                    Payment.escrow_amount,
                    Payment.platform_fee,
                )
            )
        ]
        payouts = [
            PayoutRow(*row)
            for row in await db.execute(
                select(Payout.id, Payout.payment_id, Payout.status, Payout.amount)
            )
        ]
        entries = [
            LedgerRow(*row)
            for row in await db.execute(
                select(
                    LedgerEntry.id,
                    LedgerEntry.reference_type,
                    LedgerEntry.reference_id,
                    LedgerEntry.account,
                    LedgerEntry.entry_type,
                    LedgerEntry.amount,
                )
            )
        ]
        stale = await self._stale_auto_confirm(db, now)
        await db.rollback()

        report = ReconciliationReport(
            checked_at=now,
            bookings=len(bookings),
            payments=len(payments),
            payouts=len(payouts),
            violations=find_violations(bookings, payments, payouts, sorted(stale))
            + find_ledger_violations(payments, entries),
        )
        report.duration_seconds = time.perf_counter() - started
        metrics.set_reconciliation_metrics(report.counts_by_code(), report.duration_seconds)

        for violation in report.violations:
            logger.warning("invariant_violation", **violation.to_dict())
        logger.info(
            "reconciliation_completed",
            bookings=report.bookings,
            payments=report.payments,
            payouts=report.payouts,
            violations=len(report.violations),
            duration_seconds=round(report.duration_seconds, 3),
        )
        return report
