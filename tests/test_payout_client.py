"""
Tests for the payout provider client: retries, error classification and the circuit breaker.
"""
import time

import httpx
import pytest
import pytest_asyncio

from escrow_ledger.domain.errors import ExternalServiceError
from escrow_ledger.integrations.payout_client import (
    CircuitBreaker,
    CircuitBreakerOpen,
    PayoutClient,
    PayoutErrorType,
    PayoutProviderError,
)

from .conftest import FakePayoutProvider


@pytest.fixture
def breaker() -> CircuitBreaker:
    return CircuitBreaker(failure_threshold=2, timeout=60)


@pytest_asyncio.fixture
async def fragile_client(settings, payout_provider, breaker):
    """Client whose breaker opens after two transient failures."""
    client = PayoutClient(
        settings,
        http_client=httpx.AsyncClient(
            base_url=settings.payout_api_base_url,
            transport=httpx.MockTransport(payout_provider),
        ),
        circuit_breaker=breaker,
    )
    yield client
    await client.close()


async def _transfer(client: PayoutClient, reference: str = "po_ref_1"):
    return await client.create_transfer(900, "ZAR", "RCP_prov_1", reference)


class TestCreateTransfer:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success(self, payout_client, payout_provider: FakePayoutProvider) -> None:
        receipt = await _transfer(payout_client)

        assert receipt.transfer_code == "TRF_1"
        assert receipt.status == "pending"
        assert payout_provider.requests == [
            {
                "source": "balance",
                "amount": 900,
                "currency": "ZAR",
                "recipient": "RCP_prov_1",
                "reference": "po_ref_1",
                "reason": "Payout po_ref_1",
            }
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [500, 502, 503, 429])
    async def test_transient_status_retried(
        self, payout_client, payout_provider: FakePayoutProvider, status_code: int
    ) -> None:
        payout_provider.queue(status_code, {"status": False, "message": "try later"})

        receipt = await _transfer(payout_client)

        assert receipt.transfer_code == "TRF_2"
        assert len(payout_provider.requests) == 2
        # Same reference on every attempt
        assert {r["reference"] for r in payout_provider.requests} == {"po_ref_1"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error_retried(
        self, payout_client, payout_provider: FakePayoutProvider
    ) -> None:
        payout_provider.fail_with(httpx.ConnectError("connection refused"))
        payout_provider.fail_with(httpx.ReadTimeout("timed out"))

        receipt = await _transfer(payout_client)

        assert receipt.transfer_code == "TRF_3"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status_code,body",
        [
            (400, {"status": False, "message": "Invalid recipient"}),
            (401, {"status": False, "message": "Invalid key"}),
            (200, {"status": False, "message": "Insufficient balance"}),
        ],
    )
    async def test_permanent_error_not_retried(
        self, payout_client, payout_provider: FakePayoutProvider, status_code, body
    ) -> None:
        payout_provider.queue(status_code, body)

        with pytest.raises(ExternalServiceError) as exc_info:
            await _transfer(payout_client)

        assert exc_info.value.retryable is False
        assert exc_info.value.context["reference"] == "po_ref_1"
        assert len(payout_provider.requests) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"status": True, "message": "Transfer queued", "data": {"status": "pending"}},
            {"status": True, "message": "Transfer queued"},
        ],
    )
    async def test_response_without_transfer_code(
        self, payout_client, payout_provider: FakePayoutProvider, body
    ) -> None:
        payout_provider.queue(200, body)

        with pytest.raises(ExternalServiceError) as exc_info:
            await _transfer(payout_client)

        assert exc_info.value.retryable is False
        assert "no transfer code" in exc_info.value.message
        assert len(payout_provider.requests) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_exhausted(
        self, payout_client, payout_provider: FakePayoutProvider, settings
    ) -> None:
        for _ in range(settings.payout_retry_max_attempts):
            payout_provider.queue(503)

        with pytest.raises(ExternalServiceError) as exc_info:
            await _transfer(payout_client)

        assert exc_info.value.retryable is True
        assert exc_info.value.context["status_code"] == 503
        assert len(payout_provider.requests) == settings.payout_retry_max_attempts


class TestCircuitBreaker:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_opens_after_transient_failures(
        self, fragile_client, payout_provider: FakePayoutProvider, breaker
    ) -> None:
        payout_provider.queue(500)
        payout_provider.queue(500)

        with pytest.raises(ExternalServiceError) as exc_info:
            await _transfer(fragile_client)

        assert breaker.state == "open"
        assert "Circuit breaker is open" in exc_info.value.message
        # Third attempt never reached the provider
        assert len(payout_provider.requests) == 2

        with pytest.raises(ExternalServiceError):
            await _transfer(fragile_client, "po_ref_2")
        assert len(payout_provider.requests) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_errors_do_not_open(
        self, fragile_client, payout_provider: FakePayoutProvider, breaker
    ) -> None:
        for _ in range(3):
            payout_provider.queue(422, {"status": False, "message": "bad amount"})
            with pytest.raises(ExternalServiceError):
                await _transfer(fragile_client)

        assert breaker.state == "closed"
        assert breaker.failure_count == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_half_open_after_timeout(self, breaker) -> None:
        breaker.state = "open"
        breaker.last_failure_time = time.time() - 61

        async def ok() -> str:
            return "ok"

        assert await breaker.call(ok) == "ok"
        assert breaker.state == "half_open"
        assert await breaker.call(ok) == "ok"
        assert breaker.state == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_while_half_open_reopens(self, breaker) -> None:
        breaker.state = "open"
        breaker.last_failure_time = time.time() - 61

        async def flaky() -> None:
            raise PayoutProviderError("boom", PayoutErrorType.TRANSIENT)

        with pytest.raises(PayoutProviderError):
            await breaker.call(flaky)
        assert breaker.state == "open"

        with pytest.raises(CircuitBreakerOpen):
            await breaker.call(flaky)
