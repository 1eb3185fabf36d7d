"""
Pytest configuration and fixtures.

Every test gets its own file-backed SQLite database; commands run against it
through fresh sessions, the way the API and the workers use the service layer.
"""
import json
import os
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, List, Optional

# Settings are read at import time by the API module
os.environ.setdefault("GATEWAY_WEBHOOK_SECRET", "test_gateway_secret")
os.environ.setdefault("PAYOUT_WEBHOOK_SECRET", "test_payout_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.pop("REDIS_URL", None)

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from escrow_ledger.config import Settings
from escrow_ledger.core.auto_confirm import AutoConfirmSweep
from escrow_ledger.core.bookings import Actor, BookingService, BookingSnapshot, NewBooking
from escrow_ledger.core.escrow import EscrowService
from escrow_ledger.core.idempotency import WebhookEventStore
from escrow_ledger.core.reconciliation import ConsistencyChecker
from escrow_ledger.database.connection import (
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from escrow_ledger.database.models import EscrowEvent
from escrow_ledger.domain.errors import OperationResult
from escrow_ledger.domain.states import ActorRole, BookingStatus
from escrow_ledger.integrations.payout_client import CircuitBreaker, PayoutClient
from escrow_ledger.integrations.webhooks import WebhookProcessor, compute_signature

GATEWAY_SECRET = "test_gateway_secret"
PAYOUT_SECRET = "test_payout_secret"

CLIENT = Actor(id="client_1", role=ActorRole.CLIENT)
OTHER_CLIENT = Actor(id="client_2", role=ActorRole.CLIENT)
PROVIDER = Actor(id="prov_1", role=ActorRole.PROVIDER)
OTHER_PROVIDER = Actor(id="prov_2", role=ActorRole.PROVIDER)
ADMIN = Actor(id="admin_1", role=ActorRole.ADMIN)

PROOF_TIME = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def charge_body(
    reference: str,
    amount: int,
    event: str = "charge.success",
    currency: str = "ZAR",
    event_id: Any = None,
    **extra: Any,
) -> bytes:
    data: Dict[str, Any] = {
        "id": event_id if event_id is not None else f"ch_{reference}",
        "reference": reference,
        "amount": amount,
        "currency": currency,
        "status": "success" if event == "charge.success" else "failed",
        "paid_at": "2026-09-30T08:00:00Z",
    }
    data.update(extra)
    return json.dumps({"event": event, "data": data}).encode()


def transfer_body(
    reference: str,
    amount: int,
    event: str = "transfer.success",
    currency: str = "ZAR",
    event_id: Any = None,
    **extra: Any,
) -> bytes:
    data: Dict[str, Any] = {
        "id": event_id if event_id is not None else f"tr_{reference}_{event}",
        "reference": reference,
        "amount": amount,
        "currency": currency,
        "transfer_code": f"TRF_{reference}",
    }
    data.update(extra)
    return json.dumps({"event": event, "data": data}).encode()


def sign(body: bytes, secret: str = GATEWAY_SECRET) -> str:
    return compute_signature(body, secret)


class FakePayoutProvider:
    """httpx MockTransport handler standing in for the payout provider's API."""

    def __init__(self) -> None:
        self.requests: List[Dict[str, Any]] = []
        self.responses: List[Any] = []

    def queue(self, status_code: int, body: Optional[Dict[str, Any]] = None) -> None:
        self.responses.append((status_code, body or {}))

    def fail_with(self, error: Exception) -> None:
        self.responses.append(error)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if self.responses:
            item = self.responses.pop(0)
            if isinstance(item, Exception):
                raise item
            status_code, body = item
            return httpx.Response(status_code, json=body)
        return httpx.Response(
            200,
            json={
                "status": True,
                "message": "Transfer has been queued",
                "data": {"transfer_code": f"TRF_{len(self.requests)}", "status": "pending"},
            },
        )


@pytest.fixture
def settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}",
        gateway_webhook_secret=GATEWAY_SECRET,
        payout_webhook_secret=PAYOUT_SECRET,
        redis_url=None,
        payout_api_base_url="https://payouts.test",
        payout_api_secret="sk_test_fake",
        payout_retry_max_attempts=3,
        payout_retry_base_delay=0,
        payout_retry_max_delay=0,
        payout_max_attempts=3,
        platform_fee_bps=1000,
        default_currency="ZAR",
        auto_confirm_days=3,
        auto_confirm_interval_seconds=900,
        app_env="test",
        log_level="WARNING",
    )


@pytest_asyncio.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    engine = create_engine_from_settings(settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def payout_provider() -> FakePayoutProvider:
    return FakePayoutProvider()


@pytest_asyncio.fixture
async def payout_client(
    settings: Settings, payout_provider: FakePayoutProvider
) -> AsyncGenerator[PayoutClient, Any]:
    client = PayoutClient(
        settings,
        http_client=httpx.AsyncClient(
            base_url=settings.payout_api_base_url,
            transport=httpx.MockTransport(payout_provider),
        ),
        circuit_breaker=CircuitBreaker(failure_threshold=5, timeout=60),
    )
    yield client
    await client.close()


@pytest.fixture
def escrow(settings: Settings, payout_client: PayoutClient) -> EscrowService:
    return EscrowService(settings, payout_client=payout_client)


@pytest.fixture
def bookings(settings: Settings, escrow: EscrowService) -> BookingService:
    return BookingService(settings, escrow=escrow)


@pytest.fixture
def webhooks(settings: Settings, escrow: EscrowService) -> WebhookProcessor:
    return WebhookProcessor(settings, escrow=escrow, store=WebhookEventStore(settings))


@pytest.fixture
def checker(settings: Settings) -> ConsistencyChecker:
    return ConsistencyChecker(settings)


@pytest.fixture
def sweep(
    session_factory: async_sessionmaker[AsyncSession],
    bookings: BookingService,
    settings: Settings,
) -> AutoConfirmSweep:
    return AutoConfirmSweep(session_factory, booking_service=bookings, settings=settings)


class BookingFlow:
    """Drives bookings through the lifecycle, one session per command."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bookings: BookingService,
        webhooks: WebhookProcessor,
    ) -> None:
        self.session_factory = session_factory
        self.bookings = bookings
        self.webhooks = webhooks

    async def run(self, command: Any, *args: Any, **kwargs: Any) -> OperationResult:
        async with self.session_factory() as db:
            return await command(db, *args, **kwargs)

    async def create(self, total_amount: int = 1000, **fields: Any) -> str:
        request = NewBooking(
            provider_id=PROVIDER.id,
            service_id="svc_clean",
            scheduled_at=datetime(2026, 10, 5, 9, 0, tzinfo=timezone.utc),
            duration_minutes=120,
            total_amount=total_amount,
            address="12 Long Street, Cape Town",
            **fields,
        )
        result = await self.run(self.bookings.create_booking, CLIENT, request)
        assert result.ok, result.to_dict()
        return result.data["booking_id"]

    async def accept(self, booking_id: str) -> OperationResult:
        result = await self.run(self.bookings.accept, PROVIDER, booking_id)
        assert result.ok, result.to_dict()
        return result

    async def capture(self, reference: str, amount: int, **kwargs: Any) -> OperationResult:
        body = charge_body(reference, amount, **kwargs)
        return await self.run(self.webhooks.handle_gateway, body, sign(body))

    async def payout_event(self, reference: str, amount: int, **kwargs: Any) -> OperationResult:
        body = transfer_body(reference, amount, **kwargs)
        return await self.run(
            self.webhooks.handle_payout_provider, body, sign(body, PAYOUT_SECRET)
        )

    async def to_state(self, status: BookingStatus, total_amount: int = 1000) -> Dict[str, Any]:
        """
        Create a booking and advance it to ``status`` along the happy path.

        Returns the booking id, payment reference and amount.
        """
        info: Dict[str, Any] = {"booking_id": await self.create(total_amount)}
        info["amount"] = total_amount
        order = [
            BookingStatus.PENDING,
            BookingStatus.CONFIRMED,
            BookingStatus.PENDING_EXECUTION,
            BookingStatus.IN_PROGRESS,
            BookingStatus.AWAITING_CONFIRMATION,
            BookingStatus.COMPLETED,
        ]
        steps = order.index(status)
        booking_id = info["booking_id"]

        if steps >= 1:
            accepted = await self.accept(booking_id)
            info["payment_reference"] = accepted.data["payment_reference"]
            info["payment_id"] = accepted.data["payment_id"]
        if steps >= 2:
            captured = await self.capture(info["payment_reference"], total_amount)
            assert captured.ok, captured.to_dict()
        if steps >= 3:
            started = await self.run(self.bookings.start_job, PROVIDER, booking_id)
            assert started.ok, started.to_dict()
        if steps >= 4:
            proof = await self.run(
                self.bookings.submit_proof,
                PROVIDER,
                booking_id,
                ["photo_1.jpg", "photo_2.jpg"],
                now=PROOF_TIME,
            )
            assert proof.ok, proof.to_dict()
        if steps >= 5:
            confirmed = await self.run(self.bookings.confirm_completion, CLIENT, booking_id)
            assert confirmed.ok, confirmed.to_dict()
            info["payout_id"] = confirmed.data["payout_id"]
            info["payout_reference"] = confirmed.data["payout_reference"]
        return info

    async def snapshot(self, booking_id: str) -> BookingSnapshot:
        async with self.session_factory() as db:
            snapshot = await self.bookings.get_booking(db, booking_id)
        assert snapshot is not None
        return snapshot

    async def event_count(self) -> int:
        async with self.session_factory() as db:
            return (await db.execute(select(func.count(EscrowEvent.id)))).scalar_one()


@pytest.fixture
def flow(
    session_factory: async_sessionmaker[AsyncSession],
    bookings: BookingService,
    webhooks: WebhookProcessor,
) -> BookingFlow:
    return BookingFlow(session_factory, bookings, webhooks)
