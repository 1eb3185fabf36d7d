"""
Pydantic schemas for API request/response models.

Amounts are integer minor units throughout.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from escrow_ledger.core.bookings import NewBooking
from escrow_ledger.domain.states import DisputeResolution


class CreateBookingRequest(NewBooking):
    """Request schema for creating a booking."""

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Validate currency format."""
        if v is not None and not v.isalpha():
            raise ValueError("Currency must be a 3-letter ISO 4217 code")
        return v.upper() if v else v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "provider_id": "prov_42",
                    "service_id": "svc_deep_clean",
                    "scheduled_at": "2026-11-02T09:00:00Z",
                    "duration_minutes": 120,
                    "total_amount": 1000,
                    "platform_fee": 100,
                    "currency": "ZAR",
                    "address": "12 Long Street, Cape Town",
                }
            ]
        }
    }


class ProofRequest(BaseModel):
    """Request schema for submitting job proof."""

    photos: List[str] = Field(..., min_length=1, description="Ordered photo references")
    notes: Optional[str] = Field(default=None, description="Provider notes")


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class DisputeRequest(BaseModel):
    reason: str = Field(
        ..., min_length=1, max_length=2000, description="Why the booking is disputed"
    )


class ResolveDisputeRequest(BaseModel):
    """Request schema for resolving a dispute."""

    resolution: DisputeResolution = Field(
        ..., description="RELEASE pays the provider, REFUND refunds the client, RESUME continues"
    )
    notes: Optional[str] = Field(default=None, max_length=2000)


class CommandResponse(BaseModel):
    """Outcome of a booking, escrow or payout command."""

    outcome: str = Field(..., description="applied, noop, duplicate or rejected")
    message: str = Field(default="", description="Human readable summary")
    data: Dict[str, Any] = Field(default_factory=dict, description="Affected ids and statuses")
    error: Optional[Dict[str, Any]] = Field(default=None, description="Error when rejected")


class PaymentView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    amount: int
    escrow_amount: int
    platform_fee: int
    currency: str
    external_reference: str
    paid_at: Optional[datetime] = None


class PayoutView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    amount: int
    currency: str
    reference: str
    transfer_code: Optional[str] = None
    failure_reason: Optional[str] = None
    attempt: int
    completed_at: Optional[datetime] = None


class JobProofView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    photos: List[str]
    notes: Optional[str] = None
    completed_at: datetime
    auto_confirm_at: datetime
    client_confirmed: bool
    auto_confirmed: bool


class DisputeView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    raised_by: str
    reason: str
    status: str
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None


class BookingView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    client_id: str
    provider_id: str
    service_id: str
    status: str
    status_before_dispute: Optional[str] = None
    scheduled_at: datetime
    duration_minutes: int
    total_amount: int
    platform_fee: int
    currency: str
    address: str
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class BookingDetailResponse(BaseModel):
    """Last committed state of a booking."""

    booking: BookingView
    payment: Optional[PaymentView] = None
    payouts: List[PayoutView] = Field(default_factory=list)
    proof: Optional[JobProofView] = None
    disputes: List[DisputeView] = Field(default_factory=list)


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/degraded/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ReconciliationResponse(BaseModel):
    """Response schema for reconciliation."""

    checked_at: str = Field(..., description="Check time (ISO 8601)")
    ok: bool = Field(..., description="True when no invariant is violated")
    counts: Dict[str, int] = Field(..., description="Rows checked per entity")
    violation_counts: Dict[str, int] = Field(..., description="Violations per code")
    violations: List[Dict[str, Any]] = Field(..., description="Every violation with context")
    duration_seconds: float


class SweepResponse(BaseModel):
    scanned: int
    completed: int
    skipped: int
    failed: int
    completed_booking_ids: List[str]
