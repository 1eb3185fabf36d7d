"""
Booking commands.

Each public method is one command: it validates the actor and the current
state, applies its transitions with compare-and-swap updates and commits (or
rolls back) its own transaction. Results are returned as OperationResult; only
infrastructure failures raise.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.config import Settings, get_settings
from escrow_ledger.core.escrow import EscrowService
from escrow_ledger.core.transitions import (
    finalize,
    load,
    new_correlation_id,
    record_event,
    transition,
)
from escrow_ledger.database.models import Booking, Dispute, JobProof, Payment, Payout
from escrow_ledger.domain.errors import (
    InvalidTransition,
    NotAuthorized,
    NotFound,
    OperationResult,
)
from escrow_ledger.domain.money import split_platform_fee, split_with_fee
from escrow_ledger.domain.states import (
    CANCELLABLE,
    DISPUTABLE,
    ActorRole,
    BookingStatus,
    DisputeResolution,
    DisputeStatus,
    PaymentStatus,
    can_transition,
    parse_status,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Actor:
    """Authenticated caller of a booking command."""

    id: str
    role: ActorRole

    @classmethod
    def system(cls) -> "Actor":
        return cls(id="system", role=ActorRole.SYSTEM)


class NewBooking(BaseModel):
    """Booking request. Amounts are integer minor units."""

    provider_id: str = Field(..., min_length=1, max_length=64)
    service_id: str = Field(..., min_length=1, max_length=64)
    scheduled_at: datetime
    duration_minutes: int = Field(..., gt=0)
    total_amount: int = Field(..., gt=0)
    platform_fee: Optional[int] = Field(default=None, ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    address: str = Field(..., min_length=1)
    description: Optional[str] = None
    client_id: Optional[str] = Field(
        default=None, description="Required when an admin books on a client's behalf"
    )


@dataclass
class BookingSnapshot:
    """Last committed state of a booking and everything hanging off it."""

    booking: Booking
    payment: Optional[Payment] = None
    payouts: List[Payout] = field(default_factory=list)
    proof: Optional[JobProof] = None
    disputes: List[Dispute] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingService:
    """Validates and applies booking commands."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        escrow: Optional[EscrowService] = None,
    ):
        self.settings = settings or get_settings()
        self.escrow = escrow or EscrowService(self.settings)

    @staticmethod
    def _authorize(actor: Actor, booking: Booking, *roles: ActorRole) -> Optional[NotAuthorized]:
        """
        Check that ``actor`` plays one of ``roles`` on this booking.

        ADMIN is accepted when listed; CLIENT and PROVIDER must also own the
        booking side they act for.
        """
        if actor.role not in roles:
            return NotAuthorized(
                f"{actor.role.value} may not perform this action",
                booking_id=booking.id,
                actor_id=actor.id,
            )
        if actor.role is ActorRole.CLIENT and actor.id != booking.client_id:
            return NotAuthorized("Not the client of this booking", booking_id=booking.id)
        if actor.role is ActorRole.PROVIDER and actor.id != booking.provider_id:
            return NotAuthorized("Not the provider of this booking", booking_id=booking.id)
        return None

    @staticmethod
    def _invalid(
        booking: Booking, target: BookingStatus, message: Optional[str] = None
    ) -> InvalidTransition:
        return InvalidTransition(
            message or f"booking cannot move from {booking.status} to {target.value}",
            entity="booking",
            entity_id=booking.id,
            current=booking.status,
            target=target.value,
        )

    async def _load_for(
        self, db: AsyncSession, booking_id: str, actor: Actor, *roles: ActorRole
    ):
        booking = await load(db, Booking, booking_id)
        if booking is None:
            return None, NotFound("Booking not found", booking_id=booking_id)
        error = self._authorize(actor, booking, *roles)
        return booking, error

    async def _step(
        self,
        db: AsyncSession,
        command: str,
        actor: Actor,
        booking_id: str,
        source: BookingStatus,
        target: BookingStatus,
        roles: tuple,
        **event_data,
    ) -> OperationResult:
        """Single-edge command: load, authorize, CAS, commit."""
        booking, error = await self._load_for(db, booking_id, actor, *roles)
        if error is None and booking.status != source.value:
            error = self._invalid(booking, target)
        if error is not None:
            return await finalize(
                db, command, OperationResult.rejected(error, booking_id=booking_id)
            )

        applied = await transition(
            db,
            Booking,
            booking_id,
            source,
            target,
            actor_id=actor.id,
            correlation_id=new_correlation_id(),
            data=event_data or None,
        )
        if not applied:
            return await finalize(
                db,
                command,
                OperationResult.rejected(
                    self._invalid(booking, target, "Booking changed concurrently"),
                    booking_id=booking_id,
                ),
            )
        return await finalize(
            db, command, OperationResult.applied(booking_id=booking_id, status=target.value)
        )

    async def create_booking(
        self, db: AsyncSession, actor: Actor, request: NewBooking
    ) -> OperationResult:
        """
        Create a PENDING booking.

        The platform fee is taken from the request or computed from
        ``platform_fee_bps``.
        """
        if actor.role is ActorRole.CLIENT:
            client_id = actor.id
        elif actor.role is ActorRole.ADMIN and request.client_id:
            client_id = request.client_id
        else:
            return await finalize(
                db,
                "create_booking",
                OperationResult.rejected(
                    NotAuthorized(
                        "Only clients (or admins for a client) can book", actor_id=actor.id
                    )
                ),
            )

        try:
            if request.platform_fee is not None:
                split = split_with_fee(request.total_amount, request.platform_fee)
            else:
                split = split_platform_fee(request.total_amount, self.settings.platform_fee_bps)
        except ValueError as e:
            return await finalize(
                db,
                "create_booking",
                OperationResult.rejected(InvalidTransition(str(e), entity="booking")),
            )

        booking = Booking(
            client_id=client_id,
            provider_id=request.provider_id,
            service_id=request.service_id,
            status=BookingStatus.PENDING.value,
            scheduled_at=request.scheduled_at,
            duration_minutes=request.duration_minutes,
            total_amount=split.total,
            platform_fee=split.platform_fee,
            currency=(request.currency or self.settings.default_currency).upper(),
            address=request.address,
            description=request.description,
        )
        db.add(booking)
        await db.flush()
        record_event(
            db,
            "booking",
            booking.id,
            "booking.created",
            to_status=BookingStatus.PENDING,
            actor_id=actor.id,
            data={"total_amount": split.total, "platform_fee": split.platform_fee},
        )
        logger.info(
            "booking_created",
            booking_id=booking.id,
            client_id=client_id,
            provider_id=booking.provider_id,
            total_amount=split.total,
            platform_fee=split.platform_fee,
        )
        return await finalize(
            db,
            "create_booking",
            OperationResult.applied(
                "Booking created",
                booking_id=booking.id,
                status=BookingStatus.PENDING.value,
                total_amount=split.total,
                platform_fee=split.platform_fee,
                escrow_amount=split.escrow_amount,
            ),
        )

    async def accept(self, db: AsyncSession, actor: Actor, booking_id: str) -> OperationResult:
        """
        Provider accepts: PENDING -> CONFIRMED and the PENDING payment is created.

        The returned ``payment_reference`` is what the client pays against.
        """
        command = "accept"
        booking, error = await self._load_for(
            db, booking_id, actor, ActorRole.PROVIDER, ActorRole.ADMIN
        )
        if error is None and booking.status != BookingStatus.PENDING.value:
            error = self._invalid(booking, BookingStatus.CONFIRMED)
        if error is not None:
            return await finalize(
                db, command, OperationResult.rejected(error, booking_id=booking_id)
            )

        correlation_id = new_correlation_id()
        accepted = await transition(
            db,
            Booking,
            booking_id,
            BookingStatus.PENDING,
            BookingStatus.CONFIRMED,
            actor_id=actor.id,
            correlation_id=correlation_id,
        )
        if not accepted:
            return await finalize(
                db,
                command,
                OperationResult.rejected(
                    self._invalid(booking, BookingStatus.CONFIRMED, "Booking changed concurrently"),
                    booking_id=booking_id,
                ),
            )

        split = split_with_fee(booking.total_amount, booking.platform_fee)
        payment = Payment(
            booking_id=booking_id,
            status=PaymentStatus.PENDING.value,
            amount=split.total,
            escrow_amount=split.escrow_amount,
            platform_fee=split.platform_fee,
            currency=booking.currency,
            external_reference=f"bk_{new_correlation_id().replace('-', '')}",
        )
        db.add(payment)
        await db.flush()
        record_event(
            db,
            "payment",
            payment.id,
            "payment.created",
            to_status=PaymentStatus.PENDING,
            actor_id=actor.id,
            correlation_id=correlation_id,
            data={"amount": payment.amount, "escrow_amount": payment.escrow_amount},
        )
        logger.info(
            "booking_accepted",
            booking_id=booking_id,
            payment_id=payment.id,
            reference=payment.external_reference,
            correlation_id=correlation_id,
        )
        return await finalize(
            db,
            command,
            OperationResult.applied(
                "Booking confirmed; awaiting payment",
                booking_id=booking_id,
                status=BookingStatus.CONFIRMED.value,
                payment_id=payment.id,
                payment_reference=payment.external_reference,
                amount=payment.amount,
                currency=payment.currency,
            ),
        )

    async def start_job(self, db: AsyncSession, actor: Actor, booking_id: str) -> OperationResult:
        return await self._step(
            db,
            "start_job",
            actor,
            booking_id,
            BookingStatus.PENDING_EXECUTION,
            BookingStatus.IN_PROGRESS,
            (ActorRole.PROVIDER,),
        )

    async def submit_proof(
        self,
        db: AsyncSession,
        actor: Actor,
        booking_id: str,
        photos: List[str],
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """
        Provider submits proof: IN_PROGRESS -> AWAITING_CONFIRMATION.

        The auto-confirm deadline is fixed here at ``now + auto_confirm_days``.
        """
        command = "submit_proof"
        now = now or _utcnow()
        booking, error = await self._load_for(db, booking_id, actor, ActorRole.PROVIDER)
        if error is None and booking.status != BookingStatus.IN_PROGRESS.value:
            error = self._invalid(booking, BookingStatus.AWAITING_CONFIRMATION)
        if error is not None:
            return await finalize(
                db, command, OperationResult.rejected(error, booking_id=booking_id)
            )

        auto_confirm_at = now + timedelta(days=self.settings.auto_confirm_days)
        applied = await transition(
            db,
            Booking,
            booking_id,
            BookingStatus.IN_PROGRESS,
            BookingStatus.AWAITING_CONFIRMATION,
            actor_id=actor.id,
            correlation_id=new_correlation_id(),
            data={"photos": len(photos), "auto_confirm_at": auto_confirm_at.isoformat()},
        )
        if not applied:
            return await finalize(
                db,
                command,
                OperationResult.rejected(
                    self._invalid(booking, BookingStatus.AWAITING_CONFIRMATION),
                    booking_id=booking_id,
                ),
            )

        db.add(
            JobProof(
                booking_id=booking_id,
                photos=list(photos),
                notes=notes,
                completed_at=now,
                auto_confirm_at=auto_confirm_at,
                client_confirmed=False,
                auto_confirmed=False,
            )
        )
        return await finalize(
            db,
            command,
            OperationResult.applied(
                "Proof submitted",
                booking_id=booking_id,
                status=BookingStatus.AWAITING_CONFIRMATION.value,
                auto_confirm_at=auto_confirm_at.isoformat(),
            ),
        )

    async def _complete(
        self,
        db: AsyncSession,
        booking: Booking,
        actor: Actor,
        auto: bool,
        now: datetime,
    ) -> OperationResult:
        """
        AWAITING_CONFIRMATION -> COMPLETED plus escrow release.

        Client confirmation and the auto-confirm sweep race on the same CAS;
        whichever commits first wins and the other sees a NOOP.
        """
        correlation_id = new_correlation_id()
        extra = []
        if auto:
            due = (
                select(JobProof.id)
                .where(
                    JobProof.booking_id == Booking.id,
                    JobProof.client_confirmed.is_(False),
                    JobProof.auto_confirm_at <= now,
                )
                .correlate(Booking)
                .exists()
            )
            extra.append(due)

        completed = await transition(
            db,
            Booking,
            booking.id,
            BookingStatus.AWAITING_CONFIRMATION,
            BookingStatus.COMPLETED,
            *extra,
            event_type="booking.auto_confirmed" if auto else "booking.completed",
            actor_id=actor.id,
            correlation_id=correlation_id,
        )
        if not completed:
            current = await load(db, Booking, booking.id)
            if current is not None and current.status == BookingStatus.COMPLETED.value:
                return OperationResult.noop(
                    "Booking already completed",
                    booking_id=booking.id,
                    status=BookingStatus.COMPLETED.value,
                )
            return OperationResult.rejected(
                InvalidTransition(
                    "Booking is not awaiting confirmation",
                    entity="booking",
                    entity_id=booking.id,
                    current=current.status if current else None,
                    target=BookingStatus.COMPLETED.value,
                ),
                booking_id=booking.id,
            )

        proof_values = (
            {"auto_confirmed": True}
            if auto
            else {"client_confirmed": True, "client_confirmed_at": now}
        )
        await db.execute(
            update(JobProof)
            .where(JobProof.booking_id == booking.id)
            .values(**proof_values)
            .execution_options(synchronize_session=False)
        )

        released = await self.escrow.release(
            db,
            booking.id,
            booking.provider_id,
            actor_id=actor.id,
            correlation_id=correlation_id,
        )
        if not released.ok:
            return released

        logger.info(
            "booking_completed",
            booking_id=booking.id,
            auto_confirmed=auto,
            payout_id=released.data.get("payout_id"),
            correlation_id=correlation_id,
        )
        return OperationResult.applied(
            "Booking completed",
            booking_id=booking.id,
            status=BookingStatus.COMPLETED.value,
            auto_confirmed=auto,
            **released.data,
        )

    async def confirm_completion(
        self, db: AsyncSession, actor: Actor, booking_id: str, now: Optional[datetime] = None
    ) -> OperationResult:
        """Client confirms the job is done; escrow is released to the provider."""
        booking, error = await self._load_for(
            db, booking_id, actor, ActorRole.CLIENT, ActorRole.ADMIN
        )
        if error is not None:
            return await finalize(
                db, "confirm_completion", OperationResult.rejected(error, booking_id=booking_id)
            )
        result = await self._complete(db, booking, actor, auto=False, now=now or _utcnow())
        return await finalize(db, "confirm_completion", result)

    async def auto_complete(
        self, db: AsyncSession, booking_id: str, now: Optional[datetime] = None
    ) -> OperationResult:
        """Complete a booking whose auto-confirm deadline has passed."""
        booking = await load(db, Booking, booking_id)
        if booking is None:
            return await finalize(
                db,
                "auto_complete",
                OperationResult.rejected(NotFound("Booking not found", booking_id=booking_id)),
            )
        result = await self._complete(db, booking, Actor.system(), auto=True, now=now or _utcnow())
        if result.error is not None and isinstance(result.error, InvalidTransition):
            # Confirmed, disputed or not yet due: the sweep simply skips it
            result = OperationResult.noop(result.message, booking_id=booking_id)
            await db.rollback()
        return await finalize(db, "auto_complete", result)

    async def cancel(
        self,
        db: AsyncSession,
        actor: Actor,
        booking_id: str,
        reason: Optional[str] = None,
    ) -> OperationResult:
        """
        Cancel before work starts. Escrowed funds are refunded in the same transaction.
        """
        command = "cancel"
        booking, error = await self._load_for(
            db, booking_id, actor, ActorRole.CLIENT, ActorRole.PROVIDER, ActorRole.ADMIN
        )
        if error is None and booking.status not in {s.value for s in CANCELLABLE}:
            error = self._invalid(
                booking,
                BookingStatus.CANCELLED,
                "Cancellation is only possible before the job starts",
            )
        if error is not None:
            return await finalize(
                db, command, OperationResult.rejected(error, booking_id=booking_id)
            )

        correlation_id = new_correlation_id()
        cancelled = await transition(
            db,
            Booking,
            booking_id,
            list(CANCELLABLE),
            BookingStatus.CANCELLED,
            actor_id=actor.id,
            correlation_id=correlation_id,
            data={"reason": reason, "from_status": booking.status},
        )
        if not cancelled:
            return await finalize(
                db,
                command,
                OperationResult.rejected(
                    self._invalid(booking, BookingStatus.CANCELLED, "Booking changed concurrently"),
                    booking_id=booking_id,
                ),
            )

        refund = await self.escrow.refund(
            db, booking_id, actor_id=actor.id, correlation_id=correlation_id, reason=reason
        )
        if not refund.ok:
            return await finalize(db, command, refund)

        logger.info(
            "booking_cancelled",
            booking_id=booking_id,
            actor_id=actor.id,
            refunded=refund.outcome.value == "applied",
            correlation_id=correlation_id,
        )
        return await finalize(
            db,
            command,
            OperationResult.applied(
                "Booking cancelled",
                booking_id=booking_id,
                status=BookingStatus.CANCELLED.value,
                payment_status=refund.data.get("payment_status"),
            ),
        )

    async def raise_dispute(
        self, db: AsyncSession, actor: Actor, booking_id: str, reason: str
    ) -> OperationResult:
        """
        Client or provider disputes the booking.

        The current status is remembered so the dispute can be resumed; all
        automatic transitions stop while the booking is DISPUTED.
        """
        command = "raise_dispute"
        booking, error = await self._load_for(
            db, booking_id, actor, ActorRole.CLIENT, ActorRole.PROVIDER
        )
        if error is None and booking.status not in {s.value for s in DISPUTABLE}:
            error = self._invalid(booking, BookingStatus.DISPUTED)
        if error is not None:
            return await finalize(
                db, command, OperationResult.rejected(error, booking_id=booking_id)
            )

        previous = booking.status
        disputed = await transition(
            db,
            Booking,
            booking_id,
            previous,
            BookingStatus.DISPUTED,
            values={"status_before_dispute": previous},
            actor_id=actor.id,
            correlation_id=new_correlation_id(),
            data={"reason": reason},
        )
        if not disputed:
            return await finalize(
                db,
                command,
                OperationResult.rejected(
                    self._invalid(booking, BookingStatus.DISPUTED, "Booking changed concurrently"),
                    booking_id=booking_id,
                ),
            )

        dispute = Dispute(
            booking_id=booking_id,
            raised_by=actor.id,
            raised_by_role=actor.role.value,
            reason=reason,
            status=DisputeStatus.OPEN.value,
        )
        db.add(dispute)
        await db.flush()
        logger.warning(
            "booking_disputed",
            booking_id=booking_id,
            dispute_id=dispute.id,
            raised_by=actor.id,
            previous_status=previous,
        )
        return await finalize(
            db,
            command,
            OperationResult.applied(
                "Dispute opened",
                booking_id=booking_id,
                status=BookingStatus.DISPUTED.value,
                dispute_id=dispute.id,
                previous_status=previous,
            ),
        )

    async def resolve_dispute(
        self,
        db: AsyncSession,
        actor: Actor,
        booking_id: str,
        resolution: DisputeResolution,
        notes: Optional[str] = None,
    ) -> OperationResult:
        """
        Admin resolves an open dispute.

        RELEASE completes the booking and pays the provider, REFUND cancels it
        and refunds the client, RESUME returns it to its pre-dispute status.
        """
        command = "resolve_dispute"
        booking, error = await self._load_for(db, booking_id, actor, ActorRole.ADMIN)
        if error is None and booking.status != BookingStatus.DISPUTED.value:
            error = self._invalid(booking, BookingStatus.COMPLETED, "Booking is not disputed")
        if error is not None:
            return await finalize(
                db, command, OperationResult.rejected(error, booking_id=booking_id)
            )

        correlation_id = new_correlation_id()
        if resolution is DisputeResolution.RELEASE:
            target = BookingStatus.COMPLETED
        elif resolution is DisputeResolution.REFUND:
            target = BookingStatus.CANCELLED
        else:
            target = parse_status(BookingStatus, booking.status_before_dispute or "")
            if target is None or not can_transition(BookingStatus.DISPUTED, target):
                return await finalize(
                    db,
                    command,
                    OperationResult.rejected(
                        InvalidTransition(
                            "Pre-dispute status unknown; cannot resume",
                            entity="booking",
                            entity_id=booking_id,
                            status_before_dispute=booking.status_before_dispute,
                        )
                    ),
                )

        extra = []
        if resolution is DisputeResolution.RESUME:
            extra.append(Booking.status_before_dispute == target.value)
        resolved = await transition(
            db,
            Booking,
            booking_id,
            BookingStatus.DISPUTED,
            target,
            *extra,
            values={"status_before_dispute": None},
            event_type=f"booking.dispute_{resolution.value.lower()}",
            actor_id=actor.id,
            correlation_id=correlation_id,
            data={"resolution": resolution.value, "notes": notes},
        )
        if not resolved:
            return await finalize(
                db,
                command,
                OperationResult.rejected(
                    self._invalid(booking, target, "Booking changed concurrently"),
                    booking_id=booking_id,
                ),
            )

        money = OperationResult.noop()
        if resolution is DisputeResolution.RELEASE:
            money = await self.escrow.release(
                db,
                booking_id,
                booking.provider_id,
                actor_id=actor.id,
                correlation_id=correlation_id,
            )
        elif resolution is DisputeResolution.REFUND:
            money = await self.escrow.refund(
                db, booking_id, actor_id=actor.id, correlation_id=correlation_id, reason=notes
            )
        if not money.ok:
            return await finalize(db, command, money)

        await db.execute(
            update(Dispute)
            .where(Dispute.booking_id == booking_id, Dispute.status == DisputeStatus.OPEN.value)
            .values(
                status=DisputeStatus.RESOLVED.value,
                resolution=resolution.value,
                resolved_by=actor.id,
                resolution_notes=notes,
                resolved_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "dispute_resolved",
            booking_id=booking_id,
            resolution=resolution.value,
            status=target.value,
            resolved_by=actor.id,
            correlation_id=correlation_id,
        )
        return await finalize(
            db,
            command,
            OperationResult.applied(
                "Dispute resolved",
                booking_id=booking_id,
                status=target.value,
                resolution=resolution.value,
                **money.data,
            ),
        )

    async def get_booking(self, db: AsyncSession, booking_id: str) -> Optional[BookingSnapshot]:
        """Read the last committed state of a booking."""
        booking = await load(db, Booking, booking_id)
        if booking is None:
            return None

        payment = (
            await db.execute(
                select(Payment)
                .where(Payment.booking_id == booking_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        payouts: List[Payout] = []
        if payment is not None:
            payouts = list(
                (
                    await db.execute(
                        select(Payout)
                        .where(Payout.payment_id == payment.id)
                        .order_by(Payout.attempt)
                        .execution_options(populate_existing=True)
                    )
                ).scalars()
            )
        proof = (
            await db.execute(
                select(JobProof)
                .where(JobProof.booking_id == booking_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        disputes = list(
            (
                await db.execute(
                    select(Dispute)
                    .where(Dispute.booking_id == booking_id)
                    .order_by(Dispute.created_at)
                    .execution_options(populate_existing=True)
                )
            ).scalars()
        )
        # Release the read transaction
        await db.commit()
        return BookingSnapshot(
            booking=booking, payment=payment, payouts=payouts, proof=proof, disputes=disputes
        )
