"""
Gateway and payout provider webhooks with signature verification and deduplication.

Implements:
- HMAC-SHA512 signature verification over the raw body, before any parsing
- Strict schema validation of verified bodies
- Idempotent processing keyed by (source, event id)
- Routing to the escrow transitions
"""
import hashlib
import hmac
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Literal, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.config import Settings, get_settings
from escrow_ledger.core.escrow import EscrowService
from escrow_ledger.core.idempotency import WebhookEventStore
from escrow_ledger.core.transitions import new_correlation_id
from escrow_ledger.domain.errors import (
    DuplicateEvent,
    InvalidWebhookPayload,
    OperationResult,
    SignatureVerificationFailed,
)
from escrow_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

GATEWAY = "gateway"
PAYOUT_PROVIDER = "payout_provider"


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA512 of ``raw_body`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> None:
    """
    Verify a webhook signature header.

    Args:
        raw_body: Request body exactly as received
        signature: Signature header value (hex)
        secret: Shared secret of the sender

    Raises:
        SignatureVerificationFailed: If the header is missing or does not match
    """
    if not secret:
        raise SignatureVerificationFailed("Webhook secret is not configured")
    if not signature:
        raise SignatureVerificationFailed("Missing webhook signature")
    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise SignatureVerificationFailed("Invalid webhook signature")


class Envelope(BaseModel):
    """Outer shape shared by both senders."""

    model_config = ConfigDict(extra="forbid")

    event: StrictStr = Field(..., min_length=1)
    data: Dict[str, Any]


class _EventData(BaseModel):
    """
    Fields both senders document for an event's ``data``.

    Unknown fields reject the delivery. Fields this service does not act on
    are declared as ``Any`` so the sender's documented payload still parses.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: Optional[Union[StrictInt, StrictStr]] = None
    reference: StrictStr = Field(..., min_length=1)
    amount: StrictInt = Field(..., gt=0)
    currency: StrictStr = Field(..., min_length=3, max_length=3)
    status: Optional[StrictStr] = None
    domain: Any = None
    integration: Any = None

    @property
    def event_id(self) -> str:
        return str(self.id) if self.id is not None else self.reference


class ChargeData(_EventData):
    paid_at: Optional[datetime] = None
    gateway_response: Optional[StrictStr] = None
    message: Any = None
    channel: Any = None
    ip_address: Any = None
    fees: Any = None
    customer: Any = None
    authorization: Any = None
    metadata: Any = None
    created_at: Any = None
    requested_amount: Any = None
    log: Any = None
    plan: Any = None
    split: Any = None
    subaccount: Any = None
    source: Any = None


class TransferData(_EventData):
    transfer_code: Optional[StrictStr] = None
    reason: Optional[StrictStr] = None
    recipient: Any = None
    source: Any = None
    failures: Any = None
    session: Any = None
    fee_charged: Any = None
    transferred_at: Any = None
    created_at: Any = Field(default=None, alias="createdAt")
    updated_at: Any = Field(default=None, alias="updatedAt")


class ChargeEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    event: Literal["charge.success", "charge.failed"]
    data: ChargeData


class TransferEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    event: Literal["transfer.success", "transfer.failed", "transfer.reversed"]
    data: TransferData


GATEWAY_EVENTS = {"charge.success", "charge.failed"}
PAYOUT_EVENTS = {"transfer.success", "transfer.failed", "transfer.reversed"}


class WebhookProcessor:
    """
    Verifies, deduplicates and applies webhook deliveries.

    Each delivery is one transaction: the idempotency claim, the state change
    and the recorded outcome commit together. A business rejection (e.g. a
    capture for a cancelled booking) is rolled back to a savepoint and recorded
    on the claim, so a re-delivery is reported as a duplicate. Unexpected
    errors roll back everything, claim included, and propagate so the sender
    retries.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        escrow: Optional[EscrowService] = None,
        store: Optional[WebhookEventStore] = None,
    ):
        self.settings = settings or get_settings()
        self.escrow = escrow or EscrowService(self.settings)
        self.store = store or WebhookEventStore(self.settings)

    async def handle_gateway(
        self, db: AsyncSession, raw_body: bytes, signature: Optional[str]
    ) -> OperationResult:
        """Process a payment gateway delivery (``charge.*`` events)."""
        return await self._handle(
            db,
            GATEWAY,
            raw_body,
            signature,
            self.settings.gateway_webhook_secret,
            GATEWAY_EVENTS,
            ChargeEvent,
            self._apply_charge,
        )

    async def handle_payout_provider(
        self, db: AsyncSession, raw_body: bytes, signature: Optional[str]
    ) -> OperationResult:
        """Process a payout provider delivery (``transfer.*`` events)."""
        return await self._handle(
            db,
            PAYOUT_PROVIDER,
            raw_body,
            signature,
            self.settings.payout_webhook_secret,
            PAYOUT_EVENTS,
            TransferEvent,
            self._apply_transfer,
        )

    async def _handle(
        self,
        db: AsyncSession,
        source: str,
        raw_body: bytes,
        signature: Optional[str],
        secret: str,
        supported: set,
        schema: type,
        apply: Callable[[AsyncSession, Any, str], Awaitable[OperationResult]],
    ) -> OperationResult:
        started = time.perf_counter()

        try:
            verify_signature(raw_body, signature, secret)
        except SignatureVerificationFailed as e:
            metrics.record_signature_failure(source)
            logger.warning("webhook_signature_verification_failed", source=source, error=e.message)
            return OperationResult.rejected(e)

        try:
            envelope = Envelope.model_validate_json(raw_body)
        except ValidationError as e:
            return self._invalid_payload(source, "envelope", e)

        if envelope.event not in supported:
            logger.info("webhook_event_ignored", source=source, event_type=envelope.event)
            metrics.record_webhook_event(
                source, envelope.event, "ignored", time.perf_counter() - started
            )
            return OperationResult.noop("Event type not handled", event_type=envelope.event)

        try:
            event = schema.model_validate_json(raw_body)
        except ValidationError as e:
            return self._invalid_payload(source, envelope.event, e)

        event_key = f"{event.event}:{event.data.event_id}"
        correlation_id = new_correlation_id()
        log = logger.bind(
            source=source,
            event_type=event.event,
            event_key=event_key,
            reference=event.data.reference,
            correlation_id=correlation_id,
        )

        if await self.store.seen(source, event_key):
            log.debug("webhook_duplicate_delivery", layer="redis")
            metrics.record_webhook_event(
                source, event.event, "duplicate", time.perf_counter() - started
            )
            return OperationResult.duplicate(event_key=event_key)

        try:
            claim = await self.store.claim(
                db,
                source,
                event.event,
                event_key,
                event.data.reference,
                envelope.model_dump(mode="json"),
            )
            savepoint = await db.begin_nested()
            result = await apply(db, event, correlation_id)
            if result.ok:
                await savepoint.commit()
            else:
                await savepoint.rollback()
            claim.outcome = result.outcome.value
            claim.error = result.error.message if result.error else None
            await db.commit()
        except DuplicateEvent:
            await db.rollback()
            log.debug("webhook_duplicate_delivery", layer="database")
            metrics.record_webhook_event(
                source, event.event, "duplicate", time.perf_counter() - started
            )
            return OperationResult.duplicate(event_key=event_key)
        except Exception:
            await db.rollback()
            log.error("webhook_processing_failed", exc_info=True)
            metrics.record_webhook_event(
                source, event.event, "error", time.perf_counter() - started
            )
            raise

        await self.store.mark_processed(source, event_key)
        metrics.record_webhook_event(
            source, event.event, result.outcome.value, time.perf_counter() - started
        )
        if result.ok:
            log.info("webhook_processed", outcome=result.outcome.value)
        else:
            log.warning(
                "webhook_rejected",
                error_code=result.error.code if result.error else None,
                reason=result.message,
            )
        result.data.setdefault("event_key", event_key)
        return result

    def _invalid_payload(self, source: str, stage: str, error: ValidationError) -> OperationResult:
        errors = [
            {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
            for err in error.errors()
        ]
        logger.warning("webhook_payload_invalid", source=source, stage=stage, errors=errors)
        return OperationResult.rejected(
            InvalidWebhookPayload("Webhook payload failed validation", source=source, errors=errors)
        )

    async def _apply_charge(
        self, db: AsyncSession, event: ChargeEvent, correlation_id: str
    ) -> OperationResult:
        data = event.data
        if event.event == "charge.success":
            return await self.escrow.record_capture(
                db,
                data.reference,
                data.amount,
                data.currency,
                transaction_id=str(data.id) if data.id is not None else None,
                paid_at=data.paid_at,
                correlation_id=correlation_id,
            )
        return await self.escrow.record_capture_failure(
            db,
            data.reference,
            reason=data.gateway_response or data.status or "charge failed",
            correlation_id=correlation_id,
        )

    async def _apply_transfer(
        self, db: AsyncSession, event: TransferEvent, correlation_id: str
    ) -> OperationResult:
        data = event.data
        success = event.event == "transfer.success"
        reason = None
        if event.event == "transfer.reversed":
            reason = data.reason or "transfer reversed"
        elif not success:
            reason = data.reason or "transfer failed"
        return await self.escrow.record_payout_result(
            db,
            data.reference,
            success=success,
            reason=reason,
            transfer_code=data.transfer_code,
            correlation_id=correlation_id,
        )
