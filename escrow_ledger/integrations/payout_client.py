"""
Payout provider API client with retry logic and error classification.

Implements:
- Exponential backoff for transient errors (timeouts, connection errors, 5xx, 429)
- Circuit breaker pattern
- Idempotent transfers keyed by the payout reference
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from escrow_ledger.config import Settings, get_settings
from escrow_ledger.domain.errors import ExternalServiceError
from escrow_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class PayoutErrorType(Enum):
    """Classification of payout provider errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with backoff


class PayoutProviderError(Exception):
    """Single failed call to the payout provider."""

    def __init__(
        self,
        message: str,
        error_type: PayoutErrorType,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.error_type is not PayoutErrorType.PERMANENT


class CircuitBreakerOpen(PayoutProviderError):
    def __init__(self) -> None:
        super().__init__("Circuit breaker is open", PayoutErrorType.TRANSIENT)


class CircuitBreaker:
    """
    Circuit breaker for payout provider calls.

    Stops sending requests for ``timeout`` seconds after ``failure_threshold``
    consecutive failures, then lets calls through half-open until
    ``success_threshold`` of them succeed.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Execute a coroutine function with circuit breaker protection.

        Raises:
            CircuitBreakerOpen: If the circuit is open
        """
        if self.state == "open":
            if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
                self._set_state("half_open")
                self.success_count = 0
            else:
                raise CircuitBreakerOpen()

        try:
            result = await func(*args, **kwargs)
        except PayoutProviderError as e:
            # A rejected request says nothing about provider health
            if e.error_type is not PayoutErrorType.PERMANENT:
                self.on_failure()
            raise
        self.on_success()
        return result

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)
        logger.info("circuit_breaker_state_changed", state=state)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            if self.state != "open":
                logger.warning("circuit_breaker_opened", failure_count=self.failure_count)
            self._set_state("open")


@dataclass
class TransferReceipt:
    transfer_code: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, PayoutProviderError) and error.retryable


class PayoutClient:
    """
    Async client for the payout provider's transfer API.

    Features:
    - Bearer authentication with the provider secret
    - Bounded retries with exponential backoff (tenacity)
    - Circuit breaker shared by all calls of this client
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Initialize payout client.

        Args:
            settings: Application settings (defaults to ``get_settings()``)
            http_client: Optional preconfigured httpx client
            circuit_breaker: Optional circuit breaker
        """
        self.settings = settings or get_settings()
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.settings.payout_api_base_url,
            headers={
                "Authorization": f"Bearer {self.settings.payout_api_secret}",
                "Content-Type": "application/json",
            },
            timeout=self.settings.payout_api_timeout,
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

    @staticmethod
    def _classify_response(response: httpx.Response) -> Optional[PayoutErrorType]:
        if response.status_code == 429:
            return PayoutErrorType.RATE_LIMIT
        if response.status_code >= 500:
            return PayoutErrorType.TRANSIENT
        if response.status_code >= 400:
            return PayoutErrorType.PERMANENT
        return None

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.http_client.post(path, json=payload)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise PayoutProviderError(
                f"Payout provider unreachable: {e.__class__.__name__}",
                PayoutErrorType.TRANSIENT,
            ) from e

        error_type = self._classify_response(response)
        if error_type is not None:
            raise PayoutProviderError(
                f"Payout provider returned HTTP {response.status_code}: {response.text[:200]}",
                error_type,
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise PayoutProviderError(
                "Payout provider returned a non-JSON body", PayoutErrorType.TRANSIENT
            ) from e
        if not body.get("status"):
            raise PayoutProviderError(
                f"Payout provider rejected request: {body.get('message', 'unknown error')}",
                PayoutErrorType.PERMANENT,
                status_code=response.status_code,
            )
        return body

    async def create_transfer(
        self,
        amount: int,
        currency: str,
        recipient: str,
        reference: str,
        reason: Optional[str] = None,
    ) -> TransferReceipt:
        """
        Initiate a transfer to a provider.

        The payout reference doubles as the provider-side idempotency key, so a
        retried call never pays twice.

        Args:
            amount: Amount in minor units
            currency: ISO 4217 currency code
            recipient: Provider's transfer recipient code
            reference: Payout reference
            reason: Optional narration shown to the recipient

        Returns:
            TransferReceipt: Provider transfer code and status

        Raises:
            ExternalServiceError: When the call fails permanently or retries are exhausted
        """
        payload = {
            "source": "balance",
            "amount": amount,
            "currency": currency,
            "recipient": recipient,
            "reference": reference,
            "reason": reason or f"Payout {reference}",
        }
        logger.info("creating_transfer", reference=reference, amount=amount, currency=currency)

        started = time.perf_counter()
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.settings.payout_retry_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.payout_retry_base_delay,
                max=self.settings.payout_retry_max_delay,
            ),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    body = await self.circuit_breaker.call(self._post, "/transfer", payload)
            data = body.get("data") or {}
            # A receipt must carry the provider's transfer code
            if not data.get("transfer_code"):
                raise PayoutProviderError(
                    "Payout provider response has no transfer code",
                    PayoutErrorType.PERMANENT,
                    status_code=200,
                )
        except PayoutProviderError as e:
            metrics.record_payout_api_call(
                "create_transfer", e.error_type.value, time.perf_counter() - started
            )
            logger.error(
                "transfer_failed",
                reference=reference,
                error_type=e.error_type.value,
                status_code=e.status_code,
                error=str(e),
            )
            raise ExternalServiceError(
                str(e),
                retryable=e.retryable,
                reference=reference,
                status_code=e.status_code,
            ) from e

        metrics.record_payout_api_call("create_transfer", "success", time.perf_counter() - started)
        receipt = TransferReceipt(
            transfer_code=str(data["transfer_code"]),
            status=str(data.get("status", "pending")),
            raw=data,
        )
        logger.info(
            "transfer_created",
            reference=reference,
            transfer_code=receipt.transfer_code,
            status=receipt.status,
        )
        return receipt

    async def close(self) -> None:
        await self.http_client.aclose()
