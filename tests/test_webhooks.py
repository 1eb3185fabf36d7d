"""
Tests for webhook verification, validation and idempotent processing.
"""
import json
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from escrow_ledger.core.idempotency import WebhookEventStore
from escrow_ledger.database.models import EscrowEvent, WebhookEvent
from escrow_ledger.domain.errors import Outcome, SignatureVerificationFailed
from escrow_ledger.domain.states import BookingStatus, PaymentStatus
from escrow_ledger.integrations.webhooks import (
    GATEWAY,
    WebhookProcessor,
    compute_signature,
    verify_signature,
)

from .conftest import CLIENT, GATEWAY_SECRET, PAYOUT_SECRET, charge_body, sign


async def _count(flow, model) -> int:
    async with flow.session_factory() as db:
        return (await db.execute(select(func.count(model.id)))).scalar_one()


class TestSignature:
    @pytest.mark.unit
    def test_valid_signature(self) -> None:
        body = b'{"event":"charge.success"}'
        verify_signature(body, compute_signature(body, "s3cret"), "s3cret")

    @pytest.mark.unit
    def test_uppercase_hex_accepted(self) -> None:
        body = b"{}"
        verify_signature(body, compute_signature(body, "s3cret").upper(), "s3cret")

    @pytest.mark.unit
    @pytest.mark.parametrize("signature", [None, "", "deadbeef"])
    def test_invalid_signature(self, signature) -> None:
        with pytest.raises(SignatureVerificationFailed):
            verify_signature(b"{}", signature, "s3cret")

    @pytest.mark.unit
    def test_signature_over_modified_body(self) -> None:
        signature = compute_signature(b'{"amount":1000}', "s3cret")
        with pytest.raises(SignatureVerificationFailed):
            verify_signature(b'{"amount":100000}', signature, "s3cret")

    @pytest.mark.unit
    def test_missing_secret(self) -> None:
        with pytest.raises(SignatureVerificationFailed):
            verify_signature(b"{}", "abc", "")


class TestGatewayWebhook:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature_changes_nothing(self, flow, webhooks) -> None:
        info = await flow.to_state(BookingStatus.CONFIRMED)
        body = charge_body(info["payment_reference"], info["amount"])

        result = await flow.run(webhooks.handle_gateway, body, sign(body, "wrong_secret"))

        assert result.outcome is Outcome.REJECTED
        assert result.error.code == "signature_verification_failed"
        assert await _count(flow, WebhookEvent) == 0
        snapshot = await flow.snapshot(info["booking_id"])
        assert snapshot.payment.status == PaymentStatus.PENDING.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payout_secret_not_accepted_for_gateway(self, flow, webhooks) -> None:
        info = await flow.to_state(BookingStatus.CONFIRMED)
        body = charge_body(info["payment_reference"], info["amount"])

        result = await flow.run(webhooks.handle_gateway, body, sign(body, PAYOUT_SECRET))

        assert result.error.code == "signature_verification_failed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"event": "charge.success"},
            {"event": "charge.success", "data": {"reference": "x", "currency": "ZAR"}},
            {
                "event": "charge.success",
                "data": {"reference": "x", "amount": "1000", "currency": "ZAR"},
            },
            {
                "event": "charge.success",
                "data": {"reference": "x", "amount": -5, "currency": "ZAR"},
            },
            {"event": "charge.success", "data": {}, "unexpected": True},
        ],
    )
    async def test_invalid_payload_rejected(self, flow, webhooks, payload) -> None:
        body = json.dumps(payload).encode()

        result = await flow.run(webhooks.handle_gateway, body, sign(body))

        assert result.outcome is Outcome.REJECTED
        assert result.error.code == "invalid_webhook_payload"
        assert result.error.context["errors"]
        assert await _count(flow, WebhookEvent) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_json_rejected(self, flow, webhooks) -> None:
        body = b"{not json"

        result = await flow.run(webhooks.handle_gateway, body, sign(body))

        assert result.error.code == "invalid_webhook_payload"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unhandled_event_ignored(self, flow, webhooks) -> None:
        body = json.dumps({"event": "subscription.create", "data": {"id": 1}}).encode()

        result = await flow.run(webhooks.handle_gateway, body, sign(body))

        assert result.outcome is Outcome.NOOP
        assert await _count(flow, WebhookEvent) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_documented_data_fields_accepted(self, flow, webhooks) -> None:
        info = await flow.to_state(BookingStatus.CONFIRMED)
        body = charge_body(
            info["payment_reference"],
            info["amount"],
            event_id=4099260516,
            channel="card",
            customer={"email": "client@example.com"},
        )

        result = await flow.run(webhooks.handle_gateway, body, sign(body))

        assert result.outcome is Outcome.APPLIED
        assert result.data["event_key"] == "charge.success:4099260516"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_undocumented_data_field_rejected(self, flow, webhooks) -> None:
        info = await flow.to_state(BookingStatus.CONFIRMED)
        body = charge_body(info["payment_reference"], info["amount"], amount_refunded=0)

        result = await flow.run(webhooks.handle_gateway, body, sign(body))

        assert result.outcome is Outcome.REJECTED
        assert result.error.code == "invalid_webhook_payload"
        assert result.error.context["errors"][0]["loc"] == "data.amount_refunded"
        snapshot = await flow.snapshot(info["booking_id"])
        assert snapshot.payment.status == PaymentStatus.PENDING.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transfer_timestamps_accepted(self, flow) -> None:
        info = await flow.to_state(BookingStatus.COMPLETED)

        result = await flow.payout_event(
            info["payout_reference"],
            900,
            createdAt="2026-10-02T09:00:00Z",
            updatedAt="2026-10-02T09:00:05Z",
            recipient={"recipient_code": "RCP_prov_1"},
        )

        assert result.outcome is Outcome.APPLIED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_reference_rejected_and_recorded(self, flow, webhooks) -> None:
        body = charge_body("bk_unknown", 1000)

        result = await flow.run(webhooks.handle_gateway, body, sign(body))

        assert result.error.code == "not_found"
        async with flow.session_factory() as db:
            event = (await db.execute(select(WebhookEvent))).scalar_one()
        assert event.outcome == "rejected"
        assert event.source == GATEWAY


class TestIdempotence:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_same_event_twice(self, flow) -> None:
        """The second delivery of one event mutates nothing."""
        info = await flow.to_state(BookingStatus.CONFIRMED)

        first = await flow.capture(info["payment_reference"], info["amount"])
        events_after_first = await flow.event_count()
        snapshot_first = await flow.snapshot(info["booking_id"])

        second = await flow.capture(info["payment_reference"], info["amount"])

        assert first.outcome is Outcome.APPLIED
        assert second.outcome is Outcome.DUPLICATE
        assert second.ok
        assert await flow.event_count() == events_after_first
        assert await _count(flow, WebhookEvent) == 1

        snapshot_second = await flow.snapshot(info["booking_id"])
        assert snapshot_second.payment.status == PaymentStatus.ESCROW.value
        assert snapshot_second.payment.updated_at == snapshot_first.payment.updated_at
        assert snapshot_second.booking.updated_at == snapshot_first.booking.updated_at

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_new_event_id_for_same_reference(self, flow) -> None:
        """A re-sent capture under a fresh event id finds the payment already in escrow."""
        info = await flow.to_state(BookingStatus.CONFIRMED)

        await flow.capture(info["payment_reference"], info["amount"], event_id="evt_1")
        again = await flow.capture(info["payment_reference"], info["amount"], event_id="evt_2")

        assert again.outcome is Outcome.NOOP
        async with flow.session_factory() as db:
            captures = (
                await db.execute(
                    select(func.count(EscrowEvent.id)).where(
                        EscrowEvent.event_type == "payment.captured"
                    )
                )
            ).scalar_one()
        assert captures == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rejected_event_not_reapplied(self, flow) -> None:
        """A capture with the wrong amount is rejected once and then reported as duplicate."""
        info = await flow.to_state(BookingStatus.CONFIRMED)

        wrong = await flow.capture(info["payment_reference"], info["amount"] + 1)
        replay = await flow.capture(info["payment_reference"], info["amount"] + 1)

        assert wrong.outcome is Outcome.REJECTED
        assert wrong.error.code == "invariant_violation"
        assert replay.outcome is Outcome.DUPLICATE
        async with flow.session_factory() as db:
            event = (await db.execute(select(WebhookEvent))).scalar_one()
        assert event.outcome == "rejected"
        snapshot = await flow.snapshot(info["booking_id"])
        assert snapshot.payment.status == PaymentStatus.PENDING.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_late_capture_refunded_once(self, flow, bookings) -> None:
        """A capture for a cancelled booking is refunded, and its replay changes nothing."""
        info = await flow.to_state(BookingStatus.CONFIRMED)
        await flow.run(bookings.cancel, CLIENT, info["booking_id"])

        late = await flow.capture(info["payment_reference"], info["amount"])
        events_after_late = await flow.event_count()
        replay = await flow.capture(info["payment_reference"], info["amount"])

        assert late.outcome is Outcome.APPLIED
        assert replay.outcome is Outcome.DUPLICATE
        assert await flow.event_count() == events_after_late
        snapshot = await flow.snapshot(info["booking_id"])
        assert snapshot.booking.status == BookingStatus.CANCELLED.value
        assert snapshot.payment.status == PaymentStatus.REFUNDED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redis_fast_path(self, flow, settings, escrow) -> None:
        redis = AsyncMock()
        redis.exists.return_value = 1
        processor = WebhookProcessor(
            settings, escrow=escrow, store=WebhookEventStore(settings, redis_client=redis)
        )
        info = await flow.to_state(BookingStatus.CONFIRMED)
        body = charge_body(info["payment_reference"], info["amount"])

        result = await flow.run(processor.handle_gateway, body, sign(body, GATEWAY_SECRET))

        assert result.outcome is Outcome.DUPLICATE
        redis.exists.assert_awaited_once_with(
            f"webhook:processed:gateway:charge.success:ch_{info['payment_reference']}"
        )
        assert await _count(flow, WebhookEvent) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redis_outage_falls_back_to_database(self, flow, settings, escrow) -> None:
        redis = AsyncMock()
        redis.exists.side_effect = ConnectionError("redis down")
        redis.setex.side_effect = ConnectionError("redis down")
        processor = WebhookProcessor(
            settings, escrow=escrow, store=WebhookEventStore(settings, redis_client=redis)
        )
        info = await flow.to_state(BookingStatus.CONFIRMED)
        body = charge_body(info["payment_reference"], info["amount"])

        first = await flow.run(processor.handle_gateway, body, sign(body))
        second = await flow.run(processor.handle_gateway, body, sign(body))

        assert first.outcome is Outcome.APPLIED
        assert second.outcome is Outcome.DUPLICATE

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_processed_key_cached(self, flow, settings, escrow) -> None:
        redis = AsyncMock()
        redis.exists.return_value = 0
        processor = WebhookProcessor(
            settings, escrow=escrow, store=WebhookEventStore(settings, redis_client=redis)
        )
        info = await flow.to_state(BookingStatus.CONFIRMED)
        body = charge_body(info["payment_reference"], info["amount"])

        await flow.run(processor.handle_gateway, body, sign(body))

        redis.setex.assert_awaited_once()
        key, ttl, _ = redis.setex.await_args.args
        assert key.endswith(f"charge.success:ch_{info['payment_reference']}")
        assert ttl == settings.webhook_dedup_ttl

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unexpected_error_rolls_back_claim(self, flow, settings, escrow) -> None:
        """An infrastructure failure leaves no claim, so the sender's retry is processed."""
        processor = WebhookProcessor(settings, escrow=escrow, store=WebhookEventStore(settings))
        info = await flow.to_state(BookingStatus.CONFIRMED)
        body = charge_body(info["payment_reference"], info["amount"])

        original = escrow.record_capture
        escrow.record_capture = AsyncMock(side_effect=RuntimeError("database went away"))
        with pytest.raises(RuntimeError):
            await flow.run(processor.handle_gateway, body, sign(body))
        escrow.record_capture = original

        assert await _count(flow, WebhookEvent) == 0
        retried = await flow.run(processor.handle_gateway, body, sign(body))
        assert retried.outcome is Outcome.APPLIED
