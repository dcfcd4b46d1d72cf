import hashlib
import json
from urllib.parse import urlencode

import httpx
import pytest

from application.dtos.payments import WebhookRequest
from application.services.webhook_service import WebhookOutcome, WebhookPipeline
from domain.payment.entity import PaymentStatus
from domain.payment.events import PaymentStatusChanged
from domain.payment.exceptions import (
    GatewayCommunicationError,
    InvalidRefundAmountError,
    NotFoundError,
    PaymentDeclinedError,
    WebhookPayloadError,
)
from infrastructure.external.payments.payu_client import confirmation_value
from infrastructure.external.payments.registry import PaymentGatewayRegistry
from infrastructure.webhooks.dedup import InMemoryWebhookDedupStore


API_KEY = "4Vj8eK4rloUd272L48hsrarnUA"
MERCHANT_ID = "508029"


class FakePayU:
    def __init__(self):
        self.commands = []
        self.submit_state = "PENDING"
        self.order_status = "IN_PROGRESS"
        self.refunded = False
        self.references = {844: "o-1", 846: "o-2"}

    def order(self, order_id=844, reference="o-1"):
        transactions = [{
            "id": "tx-1",
            "type": "AUTHORIZATION_AND_CAPTURE",
            "transactionResponse": {"state": "APPROVED" if self.order_status == "CAPTURED" else "PENDING"},
        }]
        if self.refunded:
            transactions.append({"id": "rf-1", "type": "REFUND", "transactionResponse": {"state": "PENDING"}})
        return {
            "id": order_id,
            "referenceCode": reference,
            "status": self.order_status,
            "additionalValues": {"TX_VALUE": {"value": 100000.00, "currency": "COP"}},
            "transactions": transactions,
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.commands.append(body)
        assert body["merchant"] == {"apiKey": API_KEY, "apiLogin": "pRRXKOl8ikMmt9u"}
        if body["command"] == "ORDER_DETAIL_BY_REFERENCE_CODE":
            assert request.url.path == "/reports-api/4.0/service.cgi"
            reference = body["details"]["referenceCode"]
            orders = [self.order(oid, ref) for oid, ref in self.references.items() if ref == reference]
            return httpx.Response(200, json={"code": "SUCCESS", "result": {"payload": orders or None}})
        if body["command"] == "ORDER_DETAIL":
            assert request.url.path == "/reports-api/4.0/service.cgi"
            order_id = body["details"]["orderId"]
            if order_id not in self.references:
                return httpx.Response(200, json={"code": "SUCCESS", "result": None})
            payload = self.order(order_id, self.references[order_id])
            return httpx.Response(200, json={"code": "SUCCESS", "result": {"payload": payload}})
        assert request.url.path == "/payments-api/4.0/service.cgi"
        transaction = body["transaction"]
        if transaction["type"] == "REFUND":
            self.refunded = True
            return httpx.Response(200, json={
                "code": "SUCCESS",
                "transactionResponse": {"orderId": 844, "transactionId": "rf-1", "state": "PENDING"},
            })
        return httpx.Response(200, json={
            "code": "SUCCESS",
            "transactionResponse": {
                "orderId": 844,
                "transactionId": "tx-1",
                "state": self.submit_state,
                "responseCode": "PAYMENT_NETWORK_REJECTED" if self.submit_state == "DECLINED" else "PENDING_TRANSACTION_CONFIRMATION",
                "extraParameters": {"BANK_URL": "https://sandbox.pse.com.co/redirect"},
            },
        })


@pytest.fixture
def payu():
    return FakePayU()


@pytest.fixture
def gateway(config_source, payu):
    return PaymentGatewayRegistry(config_source, transport=httpx.MockTransport(payu)).create("payu")


@pytest.mark.asyncio
async def test_submit_transaction_is_signed_and_redirects(payu, gateway):
    intent = await gateway.create_payment_intent(10000000, "COP", {"order_id": "o-1", "buyer_email": "p@example.com"})
    assert intent.intent_id == "844"
    assert intent.status is PaymentStatus.PROCESSING
    assert intent.next_action_url == "https://sandbox.pse.com.co/redirect"

    order = payu.commands[0]["transaction"]["order"]
    raw = f"{API_KEY}~{MERCHANT_ID}~o-1~100000.00~COP"
    assert order["signature"] == hashlib.md5(raw.encode()).hexdigest()
    assert order["additionalValues"]["TX_VALUE"] == {"value": "100000.00", "currency": "COP"}
    assert payu.commands[0]["test"] is True


@pytest.mark.asyncio
async def test_declined_submission(payu, gateway):
    payu.submit_state = "DECLINED"
    with pytest.raises(PaymentDeclinedError) as exc_info:
        await gateway.create_payment_intent(10000000, "COP")
    assert exc_info.value.details["decline_code"] == "PAYMENT_NETWORK_REJECTED"


@pytest.mark.asyncio
async def test_order_detail_and_full_only_refund(payu, gateway):
    with pytest.raises(NotFoundError):
        await gateway.get_payment_status("not-a-number")
    with pytest.raises(NotFoundError):
        await gateway.get_payment_status("845")

    payu.order_status = "CAPTURED"
    intent = await gateway.get_payment_status("844")
    assert intent.status is PaymentStatus.SUCCEEDED
    assert intent.amount == intent.amount_captured == 10000000

    # No confirm step: confirming a captured order returns it unchanged
    assert (await gateway.confirm_payment("844")).status is PaymentStatus.SUCCEEDED

    with pytest.raises(InvalidRefundAmountError):
        await gateway.refund_payment("844", 5000)

    record = await gateway.refund_payment("844", reason="Customer request")
    assert record.refund_status == "pending"
    assert record.remaining_refundable == 0
    refund_tx = payu.commands[-1]["transaction"]
    assert refund_tx["parentTransactionId"] == "tx-1"
    assert refund_tx["order"] == {"id": 844}

    refunded = await gateway.get_payment_status("844")
    assert refunded.amount_refunded == 10000000


@pytest.mark.asyncio
async def test_command_error_is_not_retryable(config_source):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"code": "ERROR", "error": "Invalid signature"}))
    gateway = PaymentGatewayRegistry(config_source, transport=transport).create("payu")
    with pytest.raises(GatewayCommunicationError) as exc_info:
        await gateway.get_payment_status("844")
    assert exc_info.value.retryable is False


@pytest.mark.parametrize("value,expected", [("150.00", "150.0"), ("150.25", "150.25"), ("150.20", "150.2"), ("100000", "100000.0")])
def test_confirmation_value_formatting(value, expected):
    assert confirmation_value(value) == expected


def confirmation(
    state_pol="4",
    *,
    merchant_id=MERCHANT_ID,
    value="100000.00",
    sign=None,
    reference_sale="o-1",
    reference_pol="844",
    transaction_id="d3bdb7ba-9d8a-4e56-9e0f-2b4b1a1f5b2e",
) -> WebhookRequest:
    fields = {
        "merchant_id": merchant_id,
        "reference_sale": reference_sale,
        "reference_pol": reference_pol,
        "transaction_id": transaction_id,
        "value": value,
        "currency": "COP",
        "state_pol": state_pol,
        "response_code_pol": "1",
    }
    raw = f"{API_KEY}~{merchant_id}~{reference_sale}~{confirmation_value(value)}~COP~{state_pol}"
    fields["sign"] = sign or hashlib.md5(raw.encode()).hexdigest()
    return WebhookRequest(
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        body=urlencode(fields).encode(),
    )


def test_confirmation_signature(gateway):
    assert gateway.verify_webhook_signature(confirmation()) is True
    assert gateway.verify_webhook_signature(confirmation(sign="0" * 32)) is False
    assert gateway.verify_webhook_signature(confirmation(merchant_id="999999")) is False


@pytest.mark.asyncio
async def test_confirmation_normalized(payu, gateway):
    event = gateway.parse_webhook(confirmation("4"))
    assert event.event_id == "o-1:4"
    normalized = await gateway.process_webhook(event)
    assert isinstance(normalized, PaymentStatusChanged)
    assert normalized.intent_id == "844"
    assert normalized.status is PaymentStatus.SUCCEEDED
    assert payu.commands[-1]["command"] == "ORDER_DETAIL_BY_REFERENCE_CODE"
    assert payu.commands[-1]["details"] == {"referenceCode": "o-1"}

    declined = await gateway.process_webhook(gateway.parse_webhook(confirmation("6")))
    assert declined.status is PaymentStatus.FAILED


def test_confirmation_dedup_key_ignores_unsigned_fields(gateway):
    original = gateway.parse_webhook(confirmation())
    edited = gateway.parse_webhook(confirmation(transaction_id="tx-other", reference_pol="846"))
    assert edited.event_id == original.event_id


@pytest.mark.asyncio
@pytest.mark.parametrize("reference_pol", ["846", "999999", "not-an-order", ""])
async def test_confirmation_cannot_be_repointed_at_another_order(gateway, reference_pol):
    request = confirmation(reference_pol=reference_pol)
    # Still verifies: reference_pol is outside the signed fields
    assert gateway.verify_webhook_signature(request) is True
    normalized = await gateway.process_webhook(gateway.parse_webhook(request))
    assert normalized.intent_id == "844"


@pytest.mark.asyncio
async def test_confirmation_for_unknown_reference_is_ignored(gateway):
    with pytest.raises(WebhookPayloadError):
        await gateway.process_webhook(gateway.parse_webhook(confirmation(reference_sale="o-missing")))


@pytest.mark.asyncio
async def test_pipeline_dispatches_edited_confirmation_to_signed_order_once(config_source, payu, dispatcher):
    registry = PaymentGatewayRegistry(config_source, transport=httpx.MockTransport(payu))
    pipeline = WebhookPipeline(registry, InMemoryWebhookDedupStore(), dispatcher)

    edited = await pipeline.handle("payu", confirmation(reference_pol="846", transaction_id="tx-forged"))
    assert edited.outcome is WebhookOutcome.DISPATCHED
    assert edited.event_id == "o-1:4"

    genuine = await pipeline.handle("payu", confirmation())
    assert genuine.outcome is WebhookOutcome.DUPLICATE
    assert [e.intent_id for e in dispatcher.dispatched] == ["844"]
