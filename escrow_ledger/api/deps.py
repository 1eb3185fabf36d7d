"""
FastAPI dependencies: caller identity, services and result-to-HTTP mapping.

Services are built once per process; tests replace them through
``app.dependency_overrides``.
"""
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrow_ledger.config import get_settings
from escrow_ledger.core.bookings import Actor, BookingService
from escrow_ledger.core.escrow import EscrowService
from escrow_ledger.core.reconciliation import ConsistencyChecker
from escrow_ledger.database.connection import get_session_factory
from escrow_ledger.domain.errors import OperationResult
from escrow_ledger.domain.states import ActorRole
from escrow_ledger.integrations.webhooks import WebhookProcessor
from escrow_ledger.monitoring.health import HealthCheck

ERROR_STATUS = {
    "invalid_transition": status.HTTP_409_CONFLICT,
    "invariant_violation": status.HTTP_409_CONFLICT,
    "not_authorized": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "external_service_error": status.HTTP_502_BAD_GATEWAY,
    "signature_verification_failed": status.HTTP_400_BAD_REQUEST,
    "invalid_webhook_payload": status.HTTP_400_BAD_REQUEST,
}


async def get_actor(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
) -> Actor:
    """
    Resolve the caller from the X-Actor-Id and X-Actor-Role headers.

    Authentication happens upstream; this service trusts the gateway that
    sets these headers.
    """
    if not x_actor_id or not x_actor_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor-Id and X-Actor-Role headers are required",
        )
    try:
        role = ActorRole(x_actor_role.strip().upper())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown actor role: {x_actor_role}",
        )
    if role is ActorRole.SYSTEM:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="SYSTEM role is reserved for background jobs",
        )
    return Actor(id=x_actor_id, role=role)


async def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role is not ActorRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return actor


@lru_cache()
def get_escrow_service() -> EscrowService:
    return EscrowService(get_settings())


@lru_cache()
def get_booking_service() -> BookingService:
    return BookingService(get_settings(), escrow=get_escrow_service())


@lru_cache()
def get_webhook_processor() -> WebhookProcessor:
    return WebhookProcessor(get_settings(), escrow=get_escrow_service())


@lru_cache()
def get_consistency_checker() -> ConsistencyChecker:
    return ConsistencyChecker(get_settings())


@lru_cache()
def get_health_check() -> HealthCheck:
    return HealthCheck(settings=get_settings())


def get_sessions() -> async_sessionmaker[AsyncSession]:
    """Session factory for endpoints that open their own sessions."""
    return get_session_factory()


def raise_for_result(result: OperationResult) -> OperationResult:
    """
    Map a rejected result onto an HTTPException.

    Applied, NOOP and duplicate results pass through unchanged.
    """
    if result.ok:
        return result
    code = result.error.code if result.error else "invalid_transition"
    raise HTTPException(
        status_code=ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST),
        detail=result.to_dict(),
    )
