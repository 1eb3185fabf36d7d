"""
Payment and payout transitions.

Transition methods (``record_capture``, ``record_capture_failure``, ``release``,
``refund``, ``record_payout_result``) run inside the caller's transaction and
never commit: a booking command or webhook delivery decides whether the whole
unit commits. ``retry_payout`` and ``initiate_payout`` are commands and own
their transactions.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.config import Settings, get_settings
from escrow_ledger.core.ledger import (
    capture_postings,
    post_entries,
    refund_postings,
    release_postings,
)
from escrow_ledger.core.transitions import (
    compare_and_swap,
    finalize,
    load,
    new_correlation_id,
    record_event,
    transition,
)
from escrow_ledger.database.models import Booking, Payment, Payout
from escrow_ledger.domain.errors import (
    ExternalServiceError,
    InvalidTransition,
    InvariantViolation,
    NotFound,
    OperationResult,
    Outcome,
)
from escrow_ledger.domain.states import BookingStatus, PaymentStatus, PayoutStatus
from escrow_ledger.integrations.payout_client import PayoutClient
from escrow_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Statuses reached only after a successful capture
_CAPTURED = {PaymentStatus.ESCROW.value, PaymentStatus.RELEASED.value, PaymentStatus.REFUNDED.value}


def new_payout_reference() -> str:
    return f"po_{uuid.uuid4().hex}"


class EscrowService:
    """Applies payment and payout state changes with compare-and-swap updates."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        payout_client: Optional[PayoutClient] = None,
    ):
        self.settings = settings or get_settings()
        self._payout_client = payout_client

    @property
    def payout_client(self) -> PayoutClient:
        if self._payout_client is None:
            self._payout_client = PayoutClient(self.settings)
        return self._payout_client

    async def _payment_by_reference(self, db: AsyncSession, reference: str) -> Optional[Payment]:
        result = await db.execute(
            select(Payment)
            .where(Payment.external_reference == reference)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _payment_for_booking(self, db: AsyncSession, booking_id: str) -> Optional[Payment]:
        result = await db.execute(
            select(Payment)
            .where(Payment.booking_id == booking_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def record_capture(
        self,
        db: AsyncSession,
        reference: str,
        amount: int,
        currency: str,
        transaction_id: Optional[str] = None,
        paid_at: Optional[datetime] = None,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """
        Move a captured payment into escrow and fund its booking.

        Payment PENDING -> ESCROW and booking CONFIRMED -> PENDING_EXECUTION, in
        the caller's transaction, with the capture posted to the ledger. A
        booking disputed while CONFIRMED stays DISPUTED; its remembered status
        moves to PENDING_EXECUTION so a RESUME lands on the funded state. Funds
        captured for a booking that was cancelled first are refunded straight
        away (ESCROW -> REFUNDED). Any other booking state rejects the capture
        and the caller must roll back.

        Args:
            db: Database session
            reference: Gateway transaction reference of the payment
            amount: Captured amount in minor units
            currency: Captured currency
            transaction_id: Gateway's id for the charge
            paid_at: Capture time reported by the gateway
            correlation_id: Correlation ID for tracing

        Returns:
            OperationResult: APPLIED, NOOP (already captured) or REJECTED
        """
        correlation_id = correlation_id or new_correlation_id()
        payment = await self._payment_by_reference(db, reference)
        if payment is None:
            return OperationResult.rejected(NotFound("Payment not found", reference=reference))

        if payment.status in _CAPTURED:
            logger.info(
                "capture_already_recorded",
                payment_id=payment.id,
                status=payment.status,
                correlation_id=correlation_id,
            )
            return OperationResult.noop(
                "Payment already captured", payment_id=payment.id, status=payment.status
            )
        if payment.status != PaymentStatus.PENDING.value:
            return OperationResult.rejected(
                InvalidTransition(
                    f"payment cannot move from {payment.status} to ESCROW",
                    entity="payment",
                    entity_id=payment.id,
                    current=payment.status,
                    target=PaymentStatus.ESCROW.value,
                )
            )
        if amount != payment.amount or currency.upper() != payment.currency:
            return OperationResult.rejected(
                InvariantViolation(
                    "Captured amount does not match payment",
                    payment_id=payment.id,
                    expected_amount=payment.amount,
                    expected_currency=payment.currency,
                    captured_amount=amount,
                    captured_currency=currency,
                )
            )

        booking = await load(db, Booking, payment.booking_id)
        if booking is None:
            return OperationResult.rejected(
                InvariantViolation(
                    "Payment has no booking", payment_id=payment.id, booking_id=payment.booking_id
                )
            )

        captured = await transition(
            db,
            Payment,
            payment.id,
            PaymentStatus.PENDING,
            PaymentStatus.ESCROW,
            values={
                "paid_at": paid_at or datetime.now(timezone.utc),
                "gateway_transaction_id": transaction_id,
            },
            event_type="payment.captured",
            correlation_id=correlation_id,
            data={"amount": amount, "currency": currency, "transaction_id": transaction_id},
        )
        if not captured:
            return OperationResult.noop("Payment captured concurrently", payment_id=payment.id)
        await post_entries(db, "capture", payment, capture_postings(payment), correlation_id)

        if booking.status == BookingStatus.DISPUTED.value:
            funded = await compare_and_swap(
                db,
                Booking,
                booking.id,
                BookingStatus.DISPUTED,
                {"status_before_dispute": BookingStatus.PENDING_EXECUTION.value},
                Booking.status_before_dispute == BookingStatus.CONFIRMED.value,
            )
            if funded:
                record_event(
                    db,
                    "booking",
                    booking.id,
                    "booking.funded_while_disputed",
                    from_status=BookingStatus.CONFIRMED,
                    to_status=BookingStatus.PENDING_EXECUTION,
                    correlation_id=correlation_id,
                )
        else:
            # Payment was moved to ESCROW above; the EXISTS check makes the
            # funding precondition part of the booking CAS itself.
            escrowed = (
                select(Payment.id)
                .where(
                    Payment.booking_id == Booking.id,
                    Payment.status == PaymentStatus.ESCROW.value,
                )
                .correlate(Booking)
                .exists()
            )
            funded = await transition(
                db,
                Booking,
                booking.id,
                BookingStatus.CONFIRMED,
                BookingStatus.PENDING_EXECUTION,
                escrowed,
                event_type="booking.funded",
                correlation_id=correlation_id,
                data={"payment_id": payment.id},
            )

        if not funded:
            current = await load(db, Booking, booking.id)
            if current is not None and current.status == BookingStatus.CANCELLED.value:
                return await self._refund_late_capture(db, payment, correlation_id)
            return OperationResult.rejected(
                InvalidTransition(
                    "Booking is not awaiting payment",
                    entity="booking",
                    entity_id=booking.id,
                    current=current.status if current else None,
                    target=BookingStatus.PENDING_EXECUTION.value,
                ),
                payment_id=payment.id,
            )

        logger.info(
            "payment_captured",
            payment_id=payment.id,
            booking_id=booking.id,
            amount=amount,
            correlation_id=correlation_id,
        )
        return OperationResult.applied(
            "Payment held in escrow",
            payment_id=payment.id,
            booking_id=booking.id,
            payment_status=PaymentStatus.ESCROW.value,
        )

    async def _refund_late_capture(
        self, db: AsyncSession, payment: Payment, correlation_id: str
    ) -> OperationResult:
        # Charge landed after the booking was cancelled: the money is returned
        refund = await self.refund(
            db,
            payment.booking_id,
            correlation_id=correlation_id,
            reason="captured_after_cancellation",
        )
        if refund.outcome is not Outcome.APPLIED:
            return refund

        logger.warning(
            "late_capture_refunded",
            payment_id=payment.id,
            booking_id=payment.booking_id,
            amount=payment.amount,
            correlation_id=correlation_id,
        )
        return OperationResult.applied(
            "Payment captured for a cancelled booking and refunded",
            payment_id=payment.id,
            booking_id=payment.booking_id,
            payment_status=PaymentStatus.REFUNDED.value,
        )

    async def record_capture_failure(
        self,
        db: AsyncSession,
        reference: str,
        reason: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """
        Mark a payment FAILED and cancel its unfunded booking.

        A booking that is already cancelled or under dispute is left alone.
        """
        correlation_id = correlation_id or new_correlation_id()
        payment = await self._payment_by_reference(db, reference)
        if payment is None:
            return OperationResult.rejected(NotFound("Payment not found", reference=reference))
        if payment.status == PaymentStatus.FAILED.value:
            return OperationResult.noop("Payment already failed", payment_id=payment.id)

        failed = await transition(
            db,
            Payment,
            payment.id,
            PaymentStatus.PENDING,
            PaymentStatus.FAILED,
            values={"error_message": reason},
            event_type="payment.failed",
            correlation_id=correlation_id,
            data={"reason": reason},
        )
        if not failed:
            return OperationResult.rejected(
                InvalidTransition(
                    f"payment cannot move from {payment.status} to FAILED",
                    entity="payment",
                    entity_id=payment.id,
                    current=payment.status,
                    target=PaymentStatus.FAILED.value,
                )
            )

        cancelled = await transition(
            db,
            Booking,
            payment.booking_id,
            [BookingStatus.PENDING, BookingStatus.CONFIRMED],
            BookingStatus.CANCELLED,
            event_type="booking.cancelled",
            correlation_id=correlation_id,
            data={"reason": "payment_failed"},
        )
        if not cancelled:
            logger.info(
                "booking_not_reverted_after_payment_failure",
                booking_id=payment.booking_id,
                payment_id=payment.id,
            )

        logger.warning(
            "payment_capture_failed",
            payment_id=payment.id,
            booking_id=payment.booking_id,
            reason=reason,
            correlation_id=correlation_id,
        )
        return OperationResult.applied(
            "Payment failed",
            payment_id=payment.id,
            booking_id=payment.booking_id,
            payment_status=PaymentStatus.FAILED.value,
            booking_cancelled=cancelled,
        )

    async def release(
        self,
        db: AsyncSession,
        booking_id: str,
        provider_id: str,
        actor_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """
        Release escrow for a completed booking and create its payout.

        Called inside the completion transaction; a payment that is not in
        ESCROW rejects the whole completion.
        """
        payment = await self._payment_for_booking(db, booking_id)
        if payment is None:
            return OperationResult.rejected(
                InvariantViolation("Completed booking has no payment", booking_id=booking_id)
            )

        released = await transition(
            db,
            Payment,
            payment.id,
            PaymentStatus.ESCROW,
            PaymentStatus.RELEASED,
            event_type="payment.released",
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
        if not released:
            return OperationResult.rejected(
                InvariantViolation(
                    "Payment is not held in escrow",
                    booking_id=booking_id,
                    payment_id=payment.id,
                    payment_status=payment.status,
                )
            )
        await post_entries(
            db, "release", payment, release_postings(payment, provider_id), correlation_id
        )

        payout = Payout(
            payment_id=payment.id,
            provider_id=provider_id,
            amount=payment.escrow_amount,
            currency=payment.currency,
            status=PayoutStatus.PENDING.value,
            reference=new_payout_reference(),
            attempt=1,
        )
        db.add(payout)
        await db.flush()
        record_event(
            db,
            "payout",
            payout.id,
            "payout.created",
            to_status=PayoutStatus.PENDING,
            actor_id=actor_id,
            correlation_id=correlation_id,
            data={"payment_id": payment.id, "amount": payout.amount, "attempt": 1},
        )
        metrics.record_payout_created(payout.amount)

        logger.info(
            "escrow_released",
            booking_id=booking_id,
            payment_id=payment.id,
            payout_id=payout.id,
            amount=payout.amount,
            correlation_id=correlation_id,
        )
        return OperationResult.applied(
            "Escrow released",
            payment_id=payment.id,
            payout_id=payout.id,
            payout_reference=payout.reference,
            payout_amount=payout.amount,
        )

    async def refund(
        self,
        db: AsyncSession,
        booking_id: str,
        actor_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> OperationResult:
        """
        Refund escrowed funds for a cancelled booking.

        Nothing to refund (no payment, never captured, already refunded) is a
        NOOP; a released payment can never be refunded.
        """
        payment = await self._payment_for_booking(db, booking_id)
        if payment is None or payment.status in (
            PaymentStatus.PENDING.value,
            PaymentStatus.FAILED.value,
            PaymentStatus.REFUNDED.value,
        ):
            return OperationResult.noop(
                "No captured funds to refund",
                payment_id=payment.id if payment else None,
                payment_status=payment.status if payment else None,
            )

        refunded = await transition(
            db,
            Payment,
            payment.id,
            PaymentStatus.ESCROW,
            PaymentStatus.REFUNDED,
            event_type="payment.refunded",
            actor_id=actor_id,
            correlation_id=correlation_id,
            data={"reason": reason},
        )
        if not refunded:
            return OperationResult.rejected(
                InvalidTransition(
                    f"payment cannot move from {payment.status} to REFUNDED",
                    entity="payment",
                    entity_id=payment.id,
                    current=payment.status,
                    target=PaymentStatus.REFUNDED.value,
                )
            )
        await post_entries(db, "refund", payment, refund_postings(payment), correlation_id)

        logger.info(
            "escrow_refunded",
            booking_id=booking_id,
            payment_id=payment.id,
            amount=payment.amount,
            correlation_id=correlation_id,
        )
        return OperationResult.applied(
            "Escrow refunded", payment_id=payment.id, payment_status=PaymentStatus.REFUNDED.value
        )

    async def record_payout_result(
        self,
        db: AsyncSession,
        reference: str,
        success: bool,
        reason: Optional[str] = None,
        transfer_code: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """
        Apply a payout provider outcome. A failure never touches the payment.
        """
        result = await db.execute(
            select(Payout)
            .where(Payout.reference == reference)
            .execution_options(populate_existing=True)
        )
        payout = result.scalar_one_or_none()
        if payout is None:
            return OperationResult.rejected(NotFound("Payout not found", reference=reference))

        target = PayoutStatus.SUCCESS if success else PayoutStatus.FAILED
        if payout.status == target.value:
            return OperationResult.noop("Payout already settled", payout_id=payout.id)

        values = {"completed_at": datetime.now(timezone.utc)}
        if transfer_code:
            values["transfer_code"] = transfer_code
        if not success:
            values["failure_reason"] = reason or "transfer failed"

        applied = await transition(
            db,
            Payout,
            payout.id,
            PayoutStatus.PENDING,
            target,
            values=values,
            event_type=f"payout.{target.value.lower()}",
            correlation_id=correlation_id,
            data={"reason": reason, "transfer_code": transfer_code},
        )
        if not applied:
            return OperationResult.rejected(
                InvalidTransition(
                    f"payout cannot move from {payout.status} to {target.value}",
                    entity="payout",
                    entity_id=payout.id,
                    current=payout.status,
                    target=target.value,
                )
            )

        log = logger.info if success else logger.warning
        log(
            "payout_settled",
            payout_id=payout.id,
            payment_id=payout.payment_id,
            status=target.value,
            reason=reason,
            correlation_id=correlation_id,
        )
        return OperationResult.applied(
            "Payout settled", payout_id=payout.id, payout_status=target.value
        )

    async def retry_payout(
        self, db: AsyncSession, payment_id: str, actor_id: Optional[str] = None
    ) -> OperationResult:
        """
        Create a fresh payout for a released payment whose payouts all failed.

        Failed payouts are never reused; the number of attempts is bounded by
        ``payout_max_attempts``.
        """
        correlation_id = new_correlation_id()
        payment = await load(db, Payment, payment_id)
        if payment is None:
            return await finalize(
                db,
                "retry_payout",
                OperationResult.rejected(NotFound("Payment not found", payment_id=payment_id)),
            )
        if payment.status != PaymentStatus.RELEASED.value:
            return await finalize(
                db,
                "retry_payout",
                OperationResult.rejected(
                    InvalidTransition(
                        "Only released payments can be paid out",
                        entity="payment",
                        entity_id=payment_id,
                        current=payment.status,
                    )
                ),
            )

        counts = await db.execute(
            select(
                func.count(Payout.id),
                func.count(Payout.id).filter(Payout.status != PayoutStatus.FAILED.value),
            ).where(Payout.payment_id == payment_id)
        )
        total, active = counts.one()
        if active:
            return await finalize(
                db,
                "retry_payout",
                OperationResult.rejected(
                    InvalidTransition(
                        "Payment already has an active payout",
                        entity="payout",
                        payment_id=payment_id,
                    )
                ),
            )
        if total >= self.settings.payout_max_attempts:
            return await finalize(
                db,
                "retry_payout",
                OperationResult.rejected(
                    InvalidTransition(
                        "Payout attempts exhausted",
                        entity="payout",
                        payment_id=payment_id,
                        attempts=total,
                    )
                ),
            )

        booking = await load(db, Booking, payment.booking_id)
        payout = Payout(
            payment_id=payment.id,
            provider_id=booking.provider_id if booking else "",
            amount=payment.escrow_amount,
            currency=payment.currency,
            status=PayoutStatus.PENDING.value,
            reference=new_payout_reference(),
            attempt=total + 1,
        )
        try:
            async with db.begin_nested():
                db.add(payout)
                await db.flush()
        except IntegrityError:
            return await finalize(
                db,
                "retry_payout",
                OperationResult.rejected(
                    InvalidTransition(
                        "Payment already has an active payout",
                        entity="payout",
                        payment_id=payment_id,
                    )
                ),
            )

        record_event(
            db,
            "payout",
            payout.id,
            "payout.created",
            to_status=PayoutStatus.PENDING,
            actor_id=actor_id,
            correlation_id=correlation_id,
            data={"payment_id": payment.id, "amount": payout.amount, "attempt": payout.attempt},
        )
        metrics.record_payout_created(payout.amount)
        logger.info(
            "payout_recreated",
            payment_id=payment_id,
            payout_id=payout.id,
            attempt=payout.attempt,
            correlation_id=correlation_id,
        )
        return await finalize(
            db,
            "retry_payout",
            OperationResult.applied(
                "Payout created",
                payout_id=payout.id,
                payout_reference=payout.reference,
                attempt=payout.attempt,
            ),
        )

    async def initiate_payout(self, db: AsyncSession, payout_id: str) -> OperationResult:
        """
        Ask the payout provider to transfer a pending payout.

        The provider call happens outside any database transaction. When the
        client exhausts its retries the payout is marked FAILED; a retry then
        means creating a new payout.
        """
        correlation_id = new_correlation_id()
        payout = await load(db, Payout, payout_id)
        if payout is None:
            return await finalize(
                db,
                "initiate_payout",
                OperationResult.rejected(NotFound("Payout not found", payout_id=payout_id)),
            )
        if payout.status != PayoutStatus.PENDING.value:
            return await finalize(
                db,
                "initiate_payout",
                OperationResult.rejected(
                    InvalidTransition(
                        f"payout is {payout.status}",
                        entity="payout",
                        entity_id=payout_id,
                        current=payout.status,
                    )
                ),
            )
        if payout.transfer_code:
            return await finalize(
                db,
                "initiate_payout",
                OperationResult.noop(
                    "Transfer already initiated",
                    payout_id=payout_id,
                    transfer_code=payout.transfer_code,
                ),
            )

        transfer = {
            "amount": payout.amount,
            "currency": payout.currency,
            "recipient": payout.provider_id,
            "reference": payout.reference,
        }
        # End the read transaction before the outbound call
        await db.rollback()

        try:
            receipt = await self.payout_client.create_transfer(**transfer)
        except ExternalServiceError as e:
            await transition(
                db,
                Payout,
                payout_id,
                PayoutStatus.PENDING,
                PayoutStatus.FAILED,
                values={"failure_reason": e.message, "completed_at": datetime.now(timezone.utc)},
                event_type="payout.initiation_failed",
                correlation_id=correlation_id,
                data={"error": e.to_dict()},
            )
            await db.commit()
            metrics.record_command("initiate_payout", "rejected")
            return OperationResult.rejected(e, payout_id=payout_id)

        stored = await compare_and_swap(
            db,
            Payout,
            payout_id,
            [s for s in PayoutStatus],
            {"transfer_code": receipt.transfer_code},
            Payout.transfer_code.is_(None),
        )
        if stored:
            record_event(
                db,
                "payout",
                payout_id,
                "payout.transfer_initiated",
                correlation_id=correlation_id,
                data={"transfer_code": receipt.transfer_code, "provider_status": receipt.status},
            )
        return await finalize(
            db,
            "initiate_payout",
            OperationResult.applied(
                "Transfer initiated",
                payout_id=payout_id,
                transfer_code=receipt.transfer_code,
                provider_status=receipt.status,
            ),
        )
