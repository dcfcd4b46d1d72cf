import hashlib
import hmac
import json
import time

import pytest

from application.dtos.payments import WebhookRequest
from application.services.webhook_service import WebhookOutcome, WebhookPipeline
from domain.payment.entity import PaymentStatus
from domain.payment.events import PaymentRefunded, PaymentStatusChanged
from domain.payment.exceptions import WebhookPayloadError
from infrastructure.external.payments.registry import PaymentGatewayRegistry
from infrastructure.webhooks.dedup import InMemoryWebhookDedupStore


SECRET = "whsec_test_secret"


def signed_request(payload: dict, *, secret: str = SECRET, timestamp: int | None = None) -> WebhookRequest:
    body = json.dumps(payload).encode("utf-8")
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return WebhookRequest(headers={"Stripe-Signature": f"t={ts},v1={signature}"}, body=body)


@pytest.fixture
def gateway(config_source):
    return PaymentGatewayRegistry(config_source).create("stripe")


def intent_event(event_type="payment_intent.succeeded", status="succeeded"):
    return {
        "id": "evt_1",
        "type": event_type,
        "created": 1700000000,
        "data": {"object": {"id": "pi_1", "object": "payment_intent", "status": status, "amount": 5000}},
    }


def test_valid_signature_accepted(gateway):
    assert gateway.verify_webhook_signature(signed_request(intent_event())) is True


def test_single_byte_tamper_rejected(gateway):
    request = signed_request(intent_event())
    body = bytearray(request.body)
    body[10] ^= 0x01
    tampered = WebhookRequest(headers=request.headers, body=bytes(body))
    assert gateway.verify_webhook_signature(tampered) is False


def test_wrong_secret_stale_timestamp_and_missing_header_rejected(gateway):
    assert gateway.verify_webhook_signature(signed_request(intent_event(), secret="whsec_other")) is False
    stale = signed_request(intent_event(), timestamp=int(time.time()) - 3600)
    assert gateway.verify_webhook_signature(stale) is False
    assert gateway.verify_webhook_signature(WebhookRequest(body=b"{}")) is False


@pytest.mark.asyncio
async def test_intent_event_normalized(gateway):
    request = signed_request(intent_event())
    event = gateway.parse_webhook(request)
    assert (event.provider, event.event_id, event.event_type) == ("stripe", "evt_1", "payment_intent.succeeded")

    normalized = await gateway.process_webhook(event)
    assert isinstance(normalized, PaymentStatusChanged)
    assert normalized.intent_id == "pi_1"
    assert normalized.status is PaymentStatus.SUCCEEDED
    assert normalized.occurred_at.year == 2023


@pytest.mark.asyncio
async def test_payment_failed_event_maps_to_failed(gateway):
    event = gateway.parse_webhook(signed_request(intent_event("payment_intent.payment_failed", "requires_payment_method")))
    normalized = await gateway.process_webhook(event)
    assert normalized.status is PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_charge_refunded_reports_cumulative_amount(gateway):
    payload = {
        "id": "evt_2",
        "type": "charge.refunded",
        "data": {
            "object": {
                "id": "ch_1",
                "payment_intent": "pi_1",
                "amount_captured": 5000,
                "amount_refunded": 2000,
                "refunds": {"data": [{"id": "re_1"}]},
            }
        },
    }
    normalized = await gateway.process_webhook(gateway.parse_webhook(signed_request(payload)))
    assert isinstance(normalized, PaymentRefunded)
    assert normalized.status is PaymentStatus.PARTIALLY_REFUNDED
    assert normalized.amount_refunded == 2000
    assert normalized.remaining_refundable == 3000
    assert normalized.refund_id == "re_1"


@pytest.mark.asyncio
async def test_unhandled_event_type_ignored(gateway):
    payload = {"id": "evt_3", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}
    assert await gateway.process_webhook(gateway.parse_webhook(signed_request(payload))) is None


def test_parse_rejects_envelope_without_id(gateway):
    with pytest.raises(WebhookPayloadError):
        gateway.parse_webhook(WebhookRequest(body=b'{"type": "payment_intent.succeeded"}'))
    with pytest.raises(WebhookPayloadError):
        gateway.parse_webhook(WebhookRequest(body=b"not json"))


@pytest.mark.asyncio
@pytest.mark.parametrize("mutate", [
    lambda e: e.update(data="not-an-object"),
    lambda e: e.update(data={"object": ["pi_1"]}),
    lambda e: e.update(created="yesterday"),
    lambda e: e.update(created={"ts": 1}),
    lambda e: e.update(type="charge.refunded", data={"object": {"payment_intent": "pi_1", "amount_captured": "lots"}}),
])
async def test_malformed_signed_event_is_a_payload_error(gateway, mutate):
    payload = intent_event()
    mutate(payload)
    event = gateway.parse_webhook(signed_request(payload))
    with pytest.raises(WebhookPayloadError):
        await gateway.process_webhook(event)


@pytest.mark.asyncio
async def test_malformed_signed_event_is_acknowledged_by_pipeline(config_source, dispatcher):
    pipeline = WebhookPipeline(PaymentGatewayRegistry(config_source), InMemoryWebhookDedupStore(), dispatcher)
    payload = intent_event()
    payload["created"] = "yesterday"
    result = await pipeline.handle("stripe", signed_request(payload))
    assert result.outcome is WebhookOutcome.IGNORED
    assert result.http_status == 200
    assert dispatcher.dispatched == []
