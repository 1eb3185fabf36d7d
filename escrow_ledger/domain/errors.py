"""
Error taxonomy and typed operation results.

Service operations return an ``OperationResult``; domain errors travel inside
it instead of being raised through the call stack. Only infrastructure failures
(database down, programming errors) propagate as exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class EscrowError(Exception):
    """Base exception for escrow ledger errors."""

    code = "escrow_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": self.context}


class InvalidTransition(EscrowError):
    """Command attempted against a state that does not permit it."""

    code = "invalid_transition"


class NotAuthorized(EscrowError):
    """Actor may not issue this command for this booking."""

    code = "not_authorized"


class NotFound(EscrowError):
    code = "not_found"


class SignatureVerificationFailed(EscrowError):
    """Webhook signature missing or not matching the shared secret."""

    code = "signature_verification_failed"


class InvalidWebhookPayload(EscrowError):
    code = "invalid_webhook_payload"


class DuplicateEvent(EscrowError):
    """Idempotency key already processed; callers treat this as success."""

    code = "duplicate_event"


class InvariantViolation(EscrowError):
    """Cross-entity invariant does not hold. Reported, never auto-corrected."""

    code = "invariant_violation"


class ExternalServiceError(EscrowError):
    """Gateway or payout provider call failed after retries."""

    code = "external_service_error"

    def __init__(self, message: str, retryable: bool = True, **context: Any):
        super().__init__(message, **context)
        self.retryable = retryable


class Outcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


@dataclass
class OperationResult:
    """Result of a service operation."""

    outcome: Outcome
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[EscrowError] = None

    @property
    def ok(self) -> bool:
        return self.outcome is not Outcome.REJECTED

    @classmethod
    def applied(cls, message: str = "", **data: Any) -> OperationResult:
        return cls(Outcome.APPLIED, message, data)

    @classmethod
    def noop(cls, message: str = "", **data: Any) -> OperationResult:
        return cls(Outcome.NOOP, message, data)

    @classmethod
    def duplicate(cls, message: str = "Event already processed", **data: Any) -> OperationResult:
        return cls(Outcome.DUPLICATE, message, data)

    @classmethod
    def rejected(cls, error: EscrowError, **data: Any) -> OperationResult:
        return cls(Outcome.REJECTED, error.message, data, error)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "outcome": self.outcome.value,
            "message": self.message,
            "data": self.data,
        }
        if self.error is not None:
            body["error"] = self.error.to_dict()
        return body
