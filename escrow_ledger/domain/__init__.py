"""
Domain layer: money, state machines and the error taxonomy.

No database or HTTP dependencies live here.
"""
from .errors import (
    DuplicateEvent,
    EscrowError,
    ExternalServiceError,
    InvalidTransition,
    InvalidWebhookPayload,
    InvariantViolation,
    NotAuthorized,
    NotFound,
    OperationResult,
    Outcome,
    SignatureVerificationFailed,
)
from .money import FeeSplit, Money, split_platform_fee, split_with_fee
from .states import (
    ActorRole,
    BookingStatus,
    DisputeResolution,
    DisputeStatus,
    PaymentStatus,
    PayoutStatus,
)

__all__ = [
    "ActorRole",
    "BookingStatus",
    "DisputeResolution",
    "DisputeStatus",
    "DuplicateEvent",
    "EscrowError",
    "ExternalServiceError",
    "FeeSplit",
    "InvalidTransition",
    "InvalidWebhookPayload",
    "InvariantViolation",
    "Money",
    "NotAuthorized",
    "NotFound",
    "OperationResult",
    "Outcome",
    "PaymentStatus",
    "PayoutStatus",
    "SignatureVerificationFailed",
    "split_platform_fee",
    "split_with_fee",
]
