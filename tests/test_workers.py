"""
Tests for the background worker helpers.
"""
from datetime import datetime, timedelta, timezone

import pytest

from escrow_ledger.domain.states import BookingStatus
from escrow_ledger.workers.auto_confirm_worker import run_sweep
from escrow_ledger.workers.reconciliation_worker import seconds_until_next_run

from .conftest import PROVIDER


class TestReconciliationSchedule:
    @pytest.mark.unit
    def test_later_today(self) -> None:
        now = datetime(2026, 10, 18, 1, 30, tzinfo=timezone.utc)

        assert seconds_until_next_run(2, now) == 30 * 60

    @pytest.mark.unit
    def test_rolls_over_to_tomorrow(self) -> None:
        now = datetime(2026, 10, 18, 2, 0, tzinfo=timezone.utc)

        assert seconds_until_next_run(2, now) == 24 * 3600

    @pytest.mark.unit
    def test_after_target_hour(self) -> None:
        now = datetime(2026, 10, 18, 23, 0, tzinfo=timezone.utc)

        assert seconds_until_next_run(2, now) == 3 * 3600


class TestAutoConfirmWorker:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_run_sweep_completes_overdue(self, flow, sweep) -> None:
        info = await flow.to_state(BookingStatus.IN_PROGRESS)
        proof = await flow.run(
            flow.bookings.submit_proof,
            PROVIDER,
            info["booking_id"],
            ["after.jpg"],
            now=datetime.now(timezone.utc) - timedelta(days=4),
        )
        assert proof.ok

        report = await run_sweep(sweep)

        assert report.completed_booking_ids == [info["booking_id"]]
        snapshot = await flow.snapshot(info["booking_id"])
        assert snapshot.booking.status == BookingStatus.COMPLETED.value
        assert snapshot.proof.auto_confirmed is True
