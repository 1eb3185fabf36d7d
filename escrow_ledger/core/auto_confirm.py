"""
Auto-confirm sweep.

Completes bookings whose client never confirmed before the job proof's
auto-confirm deadline. The sweep and explicit client confirmation share the
same conditional completion, so running it often, or concurrently with
confirmations or other sweeps, completes each booking exactly once.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrow_ledger.config import Settings, get_settings
from escrow_ledger.core.bookings import BookingService
from escrow_ledger.database.models import Booking, JobProof
from escrow_ledger.domain.errors import Outcome
from escrow_ledger.domain.states import BookingStatus
from escrow_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    scanned: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0
    completed_booking_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "completed": self.completed,
            "skipped": self.skipped,
            "failed": self.failed,
            "completed_booking_ids": self.completed_booking_ids,
        }


class AutoConfirmSweep:
    """
    Periodic batch job completing overdue AWAITING_CONFIRMATION bookings.

    Each booking is completed in its own session and transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        booking_service: Optional[BookingService] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.booking_service = booking_service or BookingService(self.settings)

    async def find_due(self, db: AsyncSession, now: datetime) -> List[str]:
        """Booking ids past their deadline, oldest deadline first, batch-limited."""
        result = await db.execute(
            select(Booking.id)
            .join(JobProof, JobProof.booking_id == Booking.id)
            .where(
                JobProof.auto_confirm_at <= now,
                JobProof.client_confirmed.is_(False),
                Booking.status == BookingStatus.AWAITING_CONFIRMATION.value,
            )
            .order_by(JobProof.auto_confirm_at)
            .limit(self.settings.auto_confirm_batch_size)
        )
        return list(result.scalars())

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Run one sweep.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            SweepReport: Counts of scanned, completed, skipped and failed bookings
        """
        now = now or datetime.now(timezone.utc)
        started = time.perf_counter()
        report = SweepReport()

        async with self.session_factory() as db:
            booking_ids = await self.find_due(db, now)
            await db.commit()
        report.scanned = len(booking_ids)

        for booking_id in booking_ids:
            try:
                async with self.session_factory() as db:
                    result = await self.booking_service.auto_complete(db, booking_id, now=now)
            except Exception as e:
                # One broken row must not stop the rest of the batch
                report.failed += 1
                logger.error(
                    "auto_confirm_booking_failed",
                    booking_id=booking_id,
                    error=str(e),
                    exc_info=True,
                )
                continue

            if result.outcome is Outcome.APPLIED:
                report.completed += 1
                report.completed_booking_ids.append(booking_id)
            elif result.outcome is Outcome.REJECTED:
                report.failed += 1
                logger.error(
                    "auto_confirm_rejected",
                    booking_id=booking_id,
                    error=result.error.to_dict() if result.error else result.message,
                )
            else:
                report.skipped += 1

        duration = time.perf_counter() - started
        metrics.record_sweep(report.completed, duration)
        logger.info(
            "auto_confirm_sweep_finished",
            scanned=report.scanned,
            completed=report.completed,
            skipped=report.skipped,
            failed=report.failed,
            duration_seconds=round(duration, 3),
        )
        return report
