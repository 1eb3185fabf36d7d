"""
One-time normalization of legacy payment statuses.

Legacy rows carry HELD_IN_ESCROW, PROCESSING_RELEASE, COMPLETED or lower-case
variants of canonical values. Each row is rewritten with a conditional update on
its old value, so re-running the backfill is a no-op. Legacy COMPLETED is
ambiguous and is only mapped when the operator names the target explicitly.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.core.transitions import compare_and_swap, record_event
from escrow_ledger.database.models import Payment
from escrow_ledger.domain.states import PaymentStatus, normalize_legacy_payment_status

logger = structlog.get_logger(__name__)

ALLOWED_COMPLETED_TARGETS = (PaymentStatus.RELEASED, PaymentStatus.ESCROW)


@dataclass
class BackfillReport:
    dry_run: bool
    completed_as: Optional[str] = None
    scanned: int = 0
    # "OLD -> NEW" -> rows
    mapped: Dict[str, int] = field(default_factory=dict)
    # raw status -> rows left untouched
    unresolved: Dict[str, int] = field(default_factory=dict)

    @property
    def changed(self) -> int:
        return sum(self.mapped.values())

    def to_dict(self) -> dict:
        return {
            "dry_run": self.dry_run,
            "completed_as": self.completed_as,
            "scanned": self.scanned,
            "changed": self.changed,
            "mapped": self.mapped,
            "unresolved": self.unresolved,
        }


async def normalize_payment_statuses(
    db: AsyncSession,
    completed_as: Optional[PaymentStatus] = None,
    dry_run: bool = True,
) -> BackfillReport:
    """
    Map non-canonical payment statuses onto the canonical enum.

    Args:
        db: Database session; committed unless ``dry_run``
        completed_as: Target for legacy COMPLETED (RELEASED or ESCROW); left
            unresolved when None
        dry_run: Report what would change without writing

    Returns:
        BackfillReport: Rows mapped per old/new pair and rows left unresolved

    Raises:
        ValueError: If ``completed_as`` is not an allowed target
    """
    if completed_as is not None and completed_as not in ALLOWED_COMPLETED_TARGETS:
        raise ValueError(
            f"completed_as must be one of {[s.value for s in ALLOWED_COMPLETED_TARGETS]}"
        )

    report = BackfillReport(
        dry_run=dry_run, completed_as=completed_as.value if completed_as else None
    )
    rows = await db.execute(
        select(Payment.status, func.count(Payment.id))
        .where(Payment.status.not_in([s.value for s in PaymentStatus]))
        .group_by(Payment.status)
    )
    legacy_counts = {status: count for status, count in rows}
    report.scanned = sum(legacy_counts.values())

    mapped: Dict[str, int] = defaultdict(int)
    for raw, count in sorted(legacy_counts.items()):
        target = normalize_legacy_payment_status(raw, completed_as)
        if target is None:
            report.unresolved[raw] = count
            logger.warning("payment_status_unresolved", status=raw, rows=count)
            continue

        key = f"{raw} -> {target.value}"
        if dry_run:
            mapped[key] += count
            continue

        ids = (await db.execute(select(Payment.id).where(Payment.status == raw))).scalars().all()
        for payment_id in ids:
            if await compare_and_swap(db, Payment, payment_id, raw, {"status": target}):
                record_event(
                    db,
                    "payment",
                    payment_id,
                    "payment.status_backfilled",
                    from_status=raw,
                    to_status=target,
                    actor_id="backfill",
                )
                mapped[key] += 1

    report.mapped = dict(mapped)
    if dry_run:
        await db.rollback()
    else:
        await db.commit()

    logger.info(
        "payment_status_backfill_finished",
        dry_run=dry_run,
        scanned=report.scanned,
        changed=report.changed,
        unresolved=sum(report.unresolved.values()),
    )
    return report
