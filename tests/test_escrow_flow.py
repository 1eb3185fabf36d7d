"""
End-to-end escrow flows: capture, completion, release, payout settlement.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from escrow_ledger.database.models import EscrowEvent, LedgerEntry, Payout
from escrow_ledger.domain.errors import Outcome
from escrow_ledger.domain.states import BookingStatus, PaymentStatus, PayoutStatus

from .conftest import ADMIN, CLIENT, PROOF_TIME, PROVIDER


class TestHappyPath:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_client_confirms_early(self, flow, bookings) -> None:
        """
        Booking 1000 with fee 100: escrow 900, released on early confirmation,
        paid out after the provider reports success.
        """
        booking_id = await flow.create(total_amount=1000, platform_fee=100)
        accepted = await flow.accept(booking_id)
        reference = accepted.data["payment_reference"]

        snapshot = await flow.snapshot(booking_id)
        assert snapshot.payment.status == PaymentStatus.PENDING.value
        assert (snapshot.payment.amount, snapshot.payment.escrow_amount) == (1000, 900)
        assert snapshot.payment.platform_fee == 100

        captured = await flow.capture(reference, 1000)
        assert captured.outcome is Outcome.APPLIED
        snapshot = await flow.snapshot(booking_id)
        assert snapshot.payment.status == PaymentStatus.ESCROW.value
        assert snapshot.booking.status == BookingStatus.PENDING_EXECUTION.value
        assert snapshot.payment.gateway_transaction_id == f"ch_{reference}"

        assert (await flow.run(bookings.start_job, PROVIDER, booking_id)).ok
        proof = await flow.run(
            bookings.submit_proof, PROVIDER, booking_id, ["after.jpg"], now=PROOF_TIME
        )
        assert proof.data["auto_confirm_at"] == (PROOF_TIME + timedelta(days=3)).isoformat()

        confirmed = await flow.run(bookings.confirm_completion, CLIENT, booking_id)
        assert confirmed.outcome is Outcome.APPLIED
        assert confirmed.data["auto_confirmed"] is False

        snapshot = await flow.snapshot(booking_id)
        assert snapshot.booking.status == BookingStatus.COMPLETED.value
        assert snapshot.payment.status == PaymentStatus.RELEASED.value
        assert snapshot.proof.client_confirmed is True
        assert len(snapshot.payouts) == 1
        payout = snapshot.payouts[0]
        assert payout.amount == 900
        assert payout.status == PayoutStatus.PENDING.value
        assert payout.provider_id == PROVIDER.id

        settled = await flow.payout_event(payout.reference, 900)
        assert settled.outcome is Outcome.APPLIED
        snapshot = await flow.snapshot(booking_id)
        assert snapshot.payouts[0].status == PayoutStatus.SUCCESS.value
        assert snapshot.payouts[0].completed_at is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_auto_confirm_after_deadline(self, flow, sweep) -> None:
        info = await flow.to_state(BookingStatus.AWAITING_CONFIRMATION)
        due = PROOF_TIME + timedelta(days=3, minutes=1)

        early = await sweep.run_once(now=PROOF_TIME + timedelta(days=2))
        assert early.scanned == 0

        # A sweep every 15 minutes keeps finding nothing new once completed
        reports = [
            await sweep.run_once(now=due + timedelta(minutes=15 * i)) for i in range(4)
        ]

        assert [r.completed for r in reports] == [1, 0, 0, 0]
        assert reports[0].completed_booking_ids == [info["booking_id"]]
        snapshot = await flow.snapshot(info["booking_id"])
        assert snapshot.booking.status == BookingStatus.COMPLETED.value
        assert snapshot.payment.status == PaymentStatus.RELEASED.value
        assert snapshot.proof.auto_confirmed is True
        assert snapshot.proof.client_confirmed is False
        assert len(snapshot.payouts) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_auto_complete_of_stale_row_is_noop(self, flow, bookings) -> None:
        """A sweep acting on a row it read before the booking completed does nothing."""
        info = await flow.to_state(BookingStatus.COMPLETED)
        before = await flow.event_count()

        result = await flow.run(
            bookings.auto_complete, info["booking_id"], now=PROOF_TIME + timedelta(days=4)
        )

        assert result.outcome is Outcome.NOOP
        assert await flow.event_count() == before

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_auto_complete_before_deadline_is_noop(self, flow, bookings) -> None:
        info = await flow.to_state(BookingStatus.AWAITING_CONFIRMATION)

        result = await flow.run(
            bookings.auto_complete, info["booking_id"], now=PROOF_TIME + timedelta(days=1)
        )

        assert result.outcome is Outcome.NOOP
        snapshot = await flow.snapshot(info["booking_id"])
        assert snapshot.booking.status == BookingStatus.AWAITING_CONFIRMATION.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transitions_share_correlation_id(self, flow) -> None:
        info = await flow.to_state(BookingStatus.COMPLETED)

        async with flow.session_factory() as db:
            completed = (
                await db.execute(
                    select(EscrowEvent).where(
                        EscrowEvent.aggregate_id == info["booking_id"],
                        EscrowEvent.event_type == "booking.completed",
                    )
                )
            ).scalar_one()
            related = (
                await db.execute(
                    select(EscrowEvent.event_type).where(
                        EscrowEvent.correlation_id == completed.correlation_id
                    )
                )
            ).scalars().all()

        assert sorted(related) == ["booking.completed", "payment.released", "payout.created"]


class TestCaptureFailure:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_charge_cancels_booking(self, flow) -> None:
        info = await flow.to_state(BookingStatus.CONFIRMED)

        result = await flow.capture(
            info["payment_reference"], info["amount"], event="charge.failed",
            gateway_response="Insufficient funds",
        )

        assert result.outcome is Outcome.APPLIED
        snapshot = await flow.snapshot(info["booking_id"])
        assert snapshot.payment.status == PaymentStatus.FAILED.value
        assert snapshot.payment.error_message == "Insufficient funds"
        assert snapshot.booking.status == BookingStatus.CANCELLED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_amount_mismatch_rejected(self, flow) -> None:
        info = await flow.to_state(BookingStatus.CONFIRMED)

        result = await flow.capture(info["payment_reference"], 999)

        assert result.outcome is Outcome.REJECTED
        assert result.error.code == "invariant_violation"
        snapshot = await flow.snapshot(info["booking_id"])
        assert snapshot.payment.status == PaymentStatus.PENDING.value
        assert snapshot.booking.status == BookingStatus.CONFIRMED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_capture_after_cancellation_refunded(self, flow, bookings, checker) -> None:
        info = await flow.to_state(BookingStatus.CONFIRMED)
        cancelled = await flow.run(bookings.cancel, CLIENT, info["booking_id"])
        assert cancelled.data["payment_status"] == PaymentStatus.PENDING.value

        result = await flow.capture(info["payment_reference"], info["amount"])

        assert result.outcome is Outcome.APPLIED
        assert result.data["payment_status"] == PaymentStatus.REFUNDED.value
        snapshot = await flow.snapshot(info["booking_id"])
        assert snapshot.payment.status == PaymentStatus.REFUNDED.value
        assert snapshot.booking.status == BookingStatus.CANCELLED.value

        async with flow.session_factory() as db:
            events = (
                await db.execute(
                    select(EscrowEvent)
                    .where(EscrowEvent.aggregate_id == info["payment_id"])
                    .order_by(EscrowEvent.id)
                )
            ).scalars().all()
            entries = (
                await db.execute(
                    select(LedgerEntry).where(LedgerEntry.reference_id == info["payment_id"])
                )
            ).scalars().all()
        assert [e.event_type for e in events][-2:] == ["payment.captured", "payment.refunded"]
        assert events[-1].data["reason"] == "captured_after_cancellation"
        assert events[-1].correlation_id == events[-2].correlation_id
        assert len(entries) == 4
        assert sum(e.amount if e.entry_type == "CREDIT" else -e.amount for e in entries) == 0

        async with flow.session_factory() as db:
            report = await checker.run(db)
        assert report.ok, report.to_dict()


class TestPayouts:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initiate_payout_stores_transfer_code(
        self, flow, escrow, payout_provider
    ) -> None:
        info = await flow.to_state(BookingStatus.COMPLETED)

        result = await flow.run(escrow.initiate_payout, info["payout_id"])

        assert result.outcome is Outcome.APPLIED
        assert payout_provider.requests[0]["reference"] == info["payout_reference"]
        assert payout_provider.requests[0]["amount"] == 900
        assert payout_provider.requests[0]["recipient"] == PROVIDER.id
        snapshot = await flow.snapshot(info["booking_id"])
        assert snapshot.payouts[0].transfer_code == "TRF_1"
        assert snapshot.payouts[0].status == PayoutStatus.PENDING.value

        again = await flow.run(escrow.initiate_payout, info["payout_id"])
        assert again.outcome is Outcome.NOOP
        assert len(payout_provider.requests) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initiation_failure_marks_payout_failed(
        self, flow, escrow, payout_provider
    ) -> None:
        info = await flow.to_state(BookingStatus.COMPLETED)
        payout_provider.queue(400, {"status": False, "message": "Invalid recipient"})

        result = await flow.run(escrow.initiate_payout, info["payout_id"])

        assert result.outcome is Outcome.REJECTED
        assert result.error.code == "external_service_error"
        assert len(payout_provider.requests) == 1  # permanent errors are not retried
        snapshot = await flow.snapshot(info["booking_id"])
        assert snapshot.payouts[0].status == PayoutStatus.FAILED.value
        # A failed payout never touches the payment
        assert snapshot.payment.status == PaymentStatus.RELEASED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_receipt_without_transfer_code_fails_payout(
        self, flow, escrow, payout_provider
    ) -> None:
        info = await flow.to_state(BookingStatus.COMPLETED)
        payout_provider.queue(200, {"status": True, "data": {"status": "pending"}})

        result = await flow.run(escrow.initiate_payout, info["payout_id"])

        assert result.outcome is Outcome.REJECTED
        assert result.error.retryable is False
        snapshot = await flow.snapshot(info["booking_id"])
        assert snapshot.payouts[0].status == PayoutStatus.FAILED.value
        assert snapshot.payouts[0].failure_reason == "Payout provider response has no transfer code"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_payout_retried_with_new_payout(self, flow, escrow) -> None:
        info = await flow.to_state(BookingStatus.COMPLETED)
        failed = await flow.payout_event(
            info["payout_reference"], 900, event="transfer.failed", reason="Account closed"
        )
        assert failed.outcome is Outcome.APPLIED

        retried = await flow.run(escrow.retry_payout, info["payment_id"], actor_id=ADMIN.id)

        assert retried.outcome is Outcome.APPLIED
        assert retried.data["attempt"] == 2
        snapshot = await flow.snapshot(info["booking_id"])
        assert [(p.attempt, p.status) for p in snapshot.payouts] == [
            (1, PayoutStatus.FAILED.value),
            (2, PayoutStatus.PENDING.value),
        ]
        assert snapshot.payouts[0].failure_reason == "Account closed"
        assert snapshot.payouts[1].reference != info["payout_reference"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_retry_refused_while_payout_active(self, flow, escrow) -> None:
        info = await flow.to_state(BookingStatus.COMPLETED)

        result = await flow.run(escrow.retry_payout, info["payment_id"])

        assert result.error.code == "invalid_transition"
        assert len((await flow.snapshot(info["booking_id"])).payouts) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_retry_attempts_bounded(self, flow, escrow, settings) -> None:
        info = await flow.to_state(BookingStatus.COMPLETED)
        reference = info["payout_reference"]

        for _ in range(settings.payout_max_attempts - 1):
            await flow.payout_event(reference, 900, event="transfer.failed")
            retried = await flow.run(escrow.retry_payout, info["payment_id"])
            assert retried.ok
            reference = retried.data["payout_reference"]
        await flow.payout_event(reference, 900, event="transfer.failed")

        exhausted = await flow.run(escrow.retry_payout, info["payment_id"])

        assert exhausted.outcome is Outcome.REJECTED
        assert exhausted.error.context["attempts"] == settings.payout_max_attempts

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reversal_after_success_rejected(self, flow) -> None:
        info = await flow.to_state(BookingStatus.COMPLETED)
        await flow.payout_event(info["payout_reference"], 900)

        reversed_ = await flow.payout_event(
            info["payout_reference"], 900, event="transfer.reversed"
        )

        assert reversed_.outcome is Outcome.REJECTED
        async with flow.session_factory() as db:
            payout = (
                await db.execute(select(Payout).where(Payout.id == info["payout_id"]))
            ).scalar_one()
        assert payout.status == PayoutStatus.SUCCESS.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_payout_reference(self, flow) -> None:
        result = await flow.payout_event("po_missing", 900)

        assert result.outcome is Outcome.REJECTED
        assert result.error.code == "not_found"


class TestRefundRules:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_released_payment_never_refunded(self, flow, escrow) -> None:
        info = await flow.to_state(BookingStatus.COMPLETED)

        async with flow.session_factory() as db:
            result = await escrow.refund(db, info["booking_id"], actor_id=ADMIN.id)
            await db.rollback()

        assert result.outcome is Outcome.REJECTED
        snapshot = await flow.snapshot(info["booking_id"])
        assert snapshot.payment.status == PaymentStatus.RELEASED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_without_capture_is_noop(self, flow, escrow) -> None:
        info = await flow.to_state(BookingStatus.CONFIRMED)

        async with flow.session_factory() as db:
            result = await escrow.refund(db, info["booking_id"])
            await db.rollback()

        assert result.outcome is Outcome.NOOP
        assert result.data["payment_status"] == PaymentStatus.PENDING.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_release_requires_escrow(self, flow, escrow) -> None:
        info = await flow.to_state(BookingStatus.CONFIRMED)

        async with flow.session_factory() as db:
            result = await escrow.release(db, info["booking_id"], PROVIDER.id)
            await db.rollback()

        assert result.error.code == "invariant_violation"


