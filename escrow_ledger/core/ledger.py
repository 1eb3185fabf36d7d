"""
Double-entry ledger for captured funds.

Every payment transition that moves money posts a balanced set of entries in
the same transaction as the status change:

    capture  DEBIT  GATEWAY_CLEARING  amount
             CREDIT ESCROW_HOLDING    amount
    release  DEBIT  ESCROW_HOLDING    amount
             CREDIT PROVIDER_BALANCE  escrow_amount
             CREDIT PLATFORM_REVENUE  platform_fee
    refund   DEBIT  ESCROW_HOLDING    amount
             CREDIT GATEWAY_CLEARING  amount

Postings are idempotent: UNIQUE(reference_type, reference_id, account,
entry_type) means a payment's escrow can be credited once and debited once,
whichever of release or refund gets there.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.database.models import LedgerEntry, Payment
from escrow_ledger.domain.states import PaymentStatus
from escrow_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PLATFORM_ACCOUNT_ID = "PLATFORM"
GATEWAY_ACCOUNT_ID = "GATEWAY"
PAYMENT_REFERENCE = "PAYMENT"


class LedgerAccount(str, Enum):
    GATEWAY_CLEARING = "GATEWAY_CLEARING"
    ESCROW_HOLDING = "ESCROW_HOLDING"
    PROVIDER_BALANCE = "PROVIDER_BALANCE"
    PLATFORM_REVENUE = "PLATFORM_REVENUE"


class EntryType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


@dataclass(frozen=True)
class Posting:
    account: LedgerAccount
    account_id: str
    entry_type: EntryType
    amount: int

    @property
    def signed_amount(self) -> int:
        return self.amount if self.entry_type is EntryType.CREDIT else -self.amount


A = LedgerAccount
CREDIT = EntryType.CREDIT
DEBIT = EntryType.DEBIT


def capture_postings(payment: Payment) -> List[Posting]:
    return [
        Posting(A.GATEWAY_CLEARING, GATEWAY_ACCOUNT_ID, DEBIT, payment.amount),
        Posting(A.ESCROW_HOLDING, payment.booking_id, CREDIT, payment.amount),
    ]


def release_postings(payment: Payment, provider_id: str) -> List[Posting]:
    postings = [
        Posting(A.ESCROW_HOLDING, payment.booking_id, DEBIT, payment.amount),
        Posting(A.PROVIDER_BALANCE, provider_id, CREDIT, payment.escrow_amount),
    ]
    # A zero fee has nothing to post
    if payment.platform_fee:
        postings.append(
            Posting(A.PLATFORM_REVENUE, PLATFORM_ACCOUNT_ID, CREDIT, payment.platform_fee)
        )
    return postings


def refund_postings(payment: Payment) -> List[Posting]:
    return [
        Posting(A.ESCROW_HOLDING, payment.booking_id, DEBIT, payment.amount),
        Posting(A.GATEWAY_CLEARING, GATEWAY_ACCOUNT_ID, CREDIT, payment.amount),
    ]


def expected_balances(
    status: Optional[PaymentStatus], amount: int, escrow_amount: int, platform_fee: int
) -> Dict[str, int]:
    """
    Net (credits - debits) each account must hold for one payment in ``status``.

    Summed over all payments this is the accounting invariant: provider
    balances + platform revenue + funds held = captured - refunded.
    """
    balances = {account.value: 0 for account in LedgerAccount}
    if status in (PaymentStatus.ESCROW, PaymentStatus.RELEASED):
        balances[A.GATEWAY_CLEARING.value] = -amount
    if status is PaymentStatus.ESCROW:
        balances[A.ESCROW_HOLDING.value] = amount
    if status is PaymentStatus.RELEASED:
        balances[A.PROVIDER_BALANCE.value] = escrow_amount
        balances[A.PLATFORM_REVENUE.value] = platform_fee
    return balances


async def post_entries(
    db: AsyncSession,
    kind: str,
    payment: Payment,
    postings: List[Posting],
    correlation_id: Optional[str] = None,
) -> bool:
    """
    Write one balanced posting for ``payment`` in the caller's transaction.

    Args:
        db: Database session (the caller owns the transaction)
        kind: capture, release or refund
        payment: Payment the entries reference
        postings: Entries to write; debits must equal credits
        correlation_id: Correlation ID for tracing

    Returns:
        bool: False if the posting already exists and nothing was written

    Raises:
        ValueError: If the postings do not balance
    """
    if sum(p.signed_amount for p in postings) != 0:
        raise ValueError(f"Unbalanced {kind} posting for payment {payment.id}")

    try:
        async with db.begin_nested():
            db.add_all(
                [
                    LedgerEntry(
                        account=p.account.value,
                        account_id=p.account_id,
                        entry_type=p.entry_type.value,
                        amount=p.amount,
                        currency=payment.currency,
                        reference_type=PAYMENT_REFERENCE,
                        reference_id=payment.id,
                        description=f"{kind} {p.account.value.lower()}",
                        correlation_id=correlation_id,
                    )
                    for p in postings
                ]
            )
            await db.flush()
    except IntegrityError:
        logger.warning(
            "ledger_posting_exists",
            kind=kind,
            payment_id=payment.id,
            correlation_id=correlation_id,
        )
        metrics.record_ledger_posting(kind, "skipped")
        return False

    metrics.record_ledger_posting(kind, "posted")
    logger.debug("ledger_posted", kind=kind, payment_id=payment.id, entries=len(postings))
    return True
