"""Service layer: booking commands, escrow transitions, the ledger and batch jobs."""
from .auto_confirm import AutoConfirmSweep, SweepReport
from .backfill import BackfillReport, normalize_payment_statuses
from .bookings import Actor, BookingService, BookingSnapshot, NewBooking
from .escrow import EscrowService
from .idempotency import WebhookEventStore
from .ledger import EntryType, LedgerAccount
from .reconciliation import (
    ConsistencyChecker,
    ReconciliationReport,
    Violation,
    find_ledger_violations,
    find_violations,
)

__all__ = [
    "Actor",
    "AutoConfirmSweep",
    "BackfillReport",
    "BookingService",
    "BookingSnapshot",
    "ConsistencyChecker",
    "EntryType",
    "EscrowService",
    "LedgerAccount",
    "NewBooking",
    "ReconciliationReport",
    "SweepReport",
    "Violation",
    "WebhookEventStore",
    "find_ledger_violations",
    "find_violations",
    "normalize_payment_statuses",
]
