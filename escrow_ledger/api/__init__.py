"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    BookingDetailResponse,
    CommandResponse,
    CreateBookingRequest,
    ResolveDisputeRequest,
)

__all__ = [
    "app",
    "create_app",
    "BookingDetailResponse",
    "CommandResponse",
    "CreateBookingRequest",
    "ResolveDisputeRequest",
]
