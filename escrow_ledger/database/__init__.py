"""Database package: models and async session management."""
from .connection import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
    get_db,
    get_engine,
    get_session_factory,
    init_db,
    session_scope,
)
from .models import (
    Base,
    Booking,
    Dispute,
    EscrowEvent,
    JobProof,
    LedgerEntry,
    Payment,
    Payout,
    WebhookEvent,
)

__all__ = [
    "Base",
    "Booking",
    "Dispute",
    "EscrowEvent",
    "JobProof",
    "LedgerEntry",
    "Payment",
    "Payout",
    "WebhookEvent",
    "close_db",
    "create_engine_from_settings",
    "create_session_factory",
    "get_db",
    "get_engine",
    "get_session_factory",
    "init_db",
    "session_scope",
]
