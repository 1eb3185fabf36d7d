"""
API routes for bookings, escrow payouts, webhooks and operations.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrow_ledger.core.auto_confirm import AutoConfirmSweep
from escrow_ledger.core.bookings import Actor, BookingService
from escrow_ledger.core.escrow import EscrowService
from escrow_ledger.core.reconciliation import ConsistencyChecker
from escrow_ledger.database.connection import get_db
from escrow_ledger.domain.states import ActorRole
from escrow_ledger.integrations.webhooks import WebhookProcessor
from escrow_ledger.monitoring.health import HealthCheck

from .deps import (
    get_actor,
    get_booking_service,
    get_consistency_checker,
    get_escrow_service,
    get_health_check,
    get_sessions,
    get_webhook_processor,
    raise_for_result,
    require_admin,
)
from .schemas import (
    BookingDetailResponse,
    CancelRequest,
    CommandResponse,
    CreateBookingRequest,
    DisputeRequest,
    HealthCheckResponse,
    ProofRequest,
    ReconciliationResponse,
    ResolveDisputeRequest,
    SweepResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
bookings_router = APIRouter(prefix="/bookings", tags=["bookings"])
payout_router = APIRouter(tags=["payouts"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


@bookings_router.post(
    "",
    response_model=CommandResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a booking",
    description="Create a PENDING booking; amounts are integer minor units",
)
async def create_booking(
    request: CreateBookingRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    service: BookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    logger.info(
        "api_create_booking_request",
        actor_id=actor.id,
        provider_id=request.provider_id,
        total_amount=request.total_amount,
    )
    result = await service.create_booking(db, actor, request)
    return raise_for_result(result).to_dict()


@bookings_router.get(
    "/{booking_id}",
    response_model=BookingDetailResponse,
    summary="Get booking",
    description="Booking with its payment, payouts, job proof and disputes",
)
async def get_booking(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    service: BookingService = Depends(get_booking_service),
) -> BookingDetailResponse:
    snapshot = await service.get_booking(db, booking_id)
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")

    booking = snapshot.booking
    if (actor.role is ActorRole.CLIENT and actor.id != booking.client_id) or (
        actor.role is ActorRole.PROVIDER and actor.id != booking.provider_id
    ):
        # Do not reveal bookings of other parties
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")

    return BookingDetailResponse.model_validate(snapshot, from_attributes=True)


@bookings_router.post(
    "/{booking_id}/accept",
    response_model=CommandResponse,
    summary="Accept a booking",
    description="Provider accepts; returns the payment reference the client pays against",
)
async def accept_booking(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    service: BookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    result = await service.accept(db, actor, booking_id)
    return raise_for_result(result).to_dict()


@bookings_router.post(
    "/{booking_id}/start",
    response_model=CommandResponse,
    summary="Start the job",
)
async def start_job(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    service: BookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    result = await service.start_job(db, actor, booking_id)
    return raise_for_result(result).to_dict()


@bookings_router.post(
    "/{booking_id}/proof",
    response_model=CommandResponse,
    summary="Submit job proof",
    description="Provider submits photos; starts the auto-confirm countdown",
)
async def submit_proof(
    booking_id: str,
    request: ProofRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    service: BookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    result = await service.submit_proof(db, actor, booking_id, request.photos, notes=request.notes)
    return raise_for_result(result).to_dict()


@bookings_router.post(
    "/{booking_id}/confirm",
    response_model=CommandResponse,
    summary="Confirm completion",
    description="Client confirms the job; escrow is released and a payout created",
)
async def confirm_completion(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    service: BookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    result = await service.confirm_completion(db, actor, booking_id)
    return raise_for_result(result).to_dict()


@bookings_router.post(
    "/{booking_id}/cancel",
    response_model=CommandResponse,
    summary="Cancel a booking",
    description="Cancel before the job starts; escrowed funds are refunded",
)
async def cancel_booking(
    booking_id: str,
    request: Optional[CancelRequest] = None,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    service: BookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    reason = request.reason if request else None
    logger.info("api_cancel_booking_request", booking_id=booking_id, actor_id=actor.id)
    result = await service.cancel(db, actor, booking_id, reason=reason)
    return raise_for_result(result).to_dict()


@bookings_router.post(
    "/{booking_id}/disputes",
    response_model=CommandResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Raise a dispute",
)
async def raise_dispute(
    booking_id: str,
    request: DisputeRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    service: BookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    result = await service.raise_dispute(db, actor, booking_id, request.reason)
    return raise_for_result(result).to_dict()


@bookings_router.post(
    "/{booking_id}/disputes/resolve",
    response_model=CommandResponse,
    summary="Resolve a dispute",
    description="Admin releases, refunds or resumes a disputed booking",
)
async def resolve_dispute(
    booking_id: str,
    request: ResolveDisputeRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    service: BookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    logger.info(
        "api_resolve_dispute_request",
        booking_id=booking_id,
        resolution=request.resolution.value,
        actor_id=actor.id,
    )
    result = await service.resolve_dispute(
        db, actor, booking_id, request.resolution, notes=request.notes
    )
    return raise_for_result(result).to_dict()


@payout_router.post(
    "/payouts/{payout_id}/initiate",
    response_model=CommandResponse,
    summary="Initiate a payout transfer",
    description="Ask the payout provider to transfer a pending payout",
)
async def initiate_payout(
    payout_id: str,
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    escrow: EscrowService = Depends(get_escrow_service),
) -> Dict[str, Any]:
    logger.info("api_initiate_payout_request", payout_id=payout_id, actor_id=actor.id)
    result = await escrow.initiate_payout(db, payout_id)
    return raise_for_result(result).to_dict()


@payout_router.post(
    "/payments/{payment_id}/payouts/retry",
    response_model=CommandResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Retry a failed payout",
    description="Create a new payout for a released payment whose payouts all failed",
)
async def retry_payout(
    payment_id: str,
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    escrow: EscrowService = Depends(get_escrow_service),
) -> Dict[str, Any]:
    logger.info("api_retry_payout_request", payment_id=payment_id, actor_id=actor.id)
    result = await escrow.retry_payout(db, payment_id, actor_id=actor.id)
    return raise_for_result(result).to_dict()


def _webhook_response(result) -> Dict[str, Any]:
    # Senders retry on non-2xx; only unauthenticated or malformed bodies are refused
    if result.error is not None and result.error.code in (
        "signature_verification_failed",
        "invalid_webhook_payload",
    ):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.to_dict())
    return result.to_dict()


@webhook_router.post(
    "/gateway",
    response_model=CommandResponse,
    summary="Payment gateway webhook endpoint",
    description="Handle charge.success and charge.failed events",
)
async def gateway_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias="X-Gateway-Signature"),
    db: AsyncSession = Depends(get_db),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> Dict[str, Any]:
    """
    Handle payment gateway events.

    The signature is verified over the raw body before anything is parsed.
    """
    body = await request.body()
    result = await processor.handle_gateway(db, body, signature)
    return _webhook_response(result)


@webhook_router.post(
    "/payouts",
    response_model=CommandResponse,
    summary="Payout provider webhook endpoint",
    description="Handle transfer.success, transfer.failed and transfer.reversed events",
)
async def payout_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias="X-Payout-Signature"),
    db: AsyncSession = Depends(get_db),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> Dict[str, Any]:
    body = await request.body()
    result = await processor.handle_payout_provider(db, body, signature)
    return _webhook_response(result)


@admin_router.get(
    "/reconciliation",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Check every cross-entity invariant and report violations",
)
async def run_reconciliation(
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    checker: ConsistencyChecker = Depends(get_consistency_checker),
) -> Dict[str, Any]:
    logger.info("api_reconciliation_started", actor_id=actor.id)
    report = await checker.run(db)
    logger.info(
        "api_reconciliation_completed",
        violations=len(report.violations),
        duration_seconds=report.duration_seconds,
    )
    return report.to_dict()


@admin_router.post(
    "/auto-confirm/run",
    response_model=SweepResponse,
    summary="Run the auto-confirm sweep",
    description="Complete every booking past its auto-confirm deadline",
)
async def run_auto_confirm(
    actor: Actor = Depends(require_admin),
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
    service: BookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    logger.info("api_auto_confirm_started", actor_id=actor.id)
    sweep = AutoConfirmSweep(sessions, booking_service=service, settings=service.settings)
    report = await sweep.run_once()
    return report.to_dict()


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] == "unhealthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
