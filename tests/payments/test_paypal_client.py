import base64
import json
import zlib
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

from application.dtos.payments import WebhookRequest
from domain.payment.entity import PaymentStatus
from domain.payment.events import PaymentRefunded, PaymentStatusChanged
from domain.payment.exceptions import GatewayCommunicationError, InvalidRefundAmountError, PaymentDeclinedError
from infrastructure.external.payments.registry import PaymentGatewayRegistry


class FakePayPal:
    """Minimal Orders v2 / Payments v2 server behind httpx.MockTransport."""

    def __init__(self):
        self.orders = {}
        self.requests = []
        self.token_requests = 0
        self.decline_capture = False

    def order_view(self, order_id):
        order = self.orders[order_id]
        unit = {"amount": {"currency_code": "USD", "value": order["value"]}, "custom_id": "o-1"}
        if order["captures"]:
            unit["payments"] = {"captures": order["captures"], "refunds": order["refunds"]}
        return {
            "id": order_id,
            "status": order["status"],
            "purchase_units": [unit],
            "links": [{"rel": "approve", "href": f"https://www.sandbox.paypal.com/checkoutnow?token={order_id}"}],
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v1/oauth2/token":
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": "A21-token", "expires_in": 3600})
        assert request.headers["Authorization"] == "Bearer A21-token"

        if path == "/v2/checkout/orders" and request.method == "POST":
            body = json.loads(request.content)
            order_id = f"ORDER{len(self.orders) + 1}"
            self.orders[order_id] = {
                "status": "CREATED",
                "value": body["purchase_units"][0]["amount"]["value"],
                "captures": [],
                "refunds": [],
            }
            return httpx.Response(201, json=self.order_view(order_id))

        if path.startswith("/v2/checkout/orders/") and path.endswith("/capture"):
            order_id = path.split("/")[4]
            if self.decline_capture:
                return httpx.Response(
                    422,
                    json={"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "INSTRUMENT_DECLINED"}]},
                )
            order = self.orders[order_id]
            order["status"] = "COMPLETED"
            order["captures"] = [{"id": f"CAP-{order_id}", "status": "COMPLETED", "amount": {"value": order["value"]}}]
            return httpx.Response(201, json={"id": order_id, "status": "COMPLETED"})

        if path.startswith("/v2/checkout/orders/"):
            order_id = path.rsplit("/", 1)[-1]
            if order_id not in self.orders:
                return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})
            return httpx.Response(200, json=self.order_view(order_id))

        if path.startswith("/v2/payments/captures/") and path.endswith("/refund"):
            capture_id = path.split("/")[4]
            order_id = capture_id.removeprefix("CAP-")
            body = json.loads(request.content)
            refund = {"id": f"RF{len(self.orders[order_id]['refunds']) + 1}", "status": "COMPLETED", "amount": body["amount"]}
            self.orders[order_id]["refunds"].append(refund)
            return httpx.Response(201, json={"id": refund["id"], "status": "COMPLETED"})

        if path.startswith("/v2/payments/captures/"):
            capture_id = path.rsplit("/", 1)[-1]
            return httpx.Response(
                200,
                json={"id": capture_id, "supplementary_data": {"related_ids": {"order_id": capture_id.removeprefix("CAP-")}}},
            )

        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})


@pytest.fixture
def paypal():
    return FakePayPal()


@pytest.fixture
def gateway(config_source, paypal):
    registry = PaymentGatewayRegistry(config_source, transport=httpx.MockTransport(paypal))
    return registry.create("paypal")


@pytest.mark.asyncio
async def test_order_lifecycle(paypal, gateway):
    intent = await gateway.create_payment_intent(5000, "USD", {"order_id": "o-1"}, idempotency_key="create-o-1")
    assert intent.status is PaymentStatus.REQUIRES_ACTION
    assert intent.next_action_url.endswith(intent.intent_id)
    create_request = paypal.requests[1]
    assert create_request.headers["PayPal-Request-Id"] == "create-o-1"
    assert json.loads(create_request.content)["purchase_units"][0]["amount"]["value"] == "50.00"

    # Not yet approved by the payer: nothing to capture
    pending = await gateway.confirm_payment(intent.intent_id)
    assert pending.status is PaymentStatus.REQUIRES_ACTION
    assert not any(r.url.path.endswith("/capture") for r in paypal.requests)

    paypal.orders[intent.intent_id]["status"] = "APPROVED"
    captured = await gateway.confirm_payment(intent.intent_id)
    assert captured.status is PaymentStatus.SUCCEEDED
    assert captured.amount_captured == 5000

    record = await gateway.refund_payment(intent.intent_id, 2000)
    assert record.status is PaymentStatus.PARTIALLY_REFUNDED
    assert record.remaining_refundable == 3000

    with pytest.raises(InvalidRefundAmountError):
        await gateway.refund_payment(intent.intent_id, 3500)

    final = await gateway.refund_payment(intent.intent_id)
    assert final.amount == 3000
    assert final.status is PaymentStatus.REFUNDED
    assert paypal.token_requests == 1
    await gateway.aclose()


@pytest.mark.asyncio
async def test_declined_capture(paypal, gateway):
    intent = await gateway.create_payment_intent(1000, "USD")
    paypal.orders[intent.intent_id]["status"] = "APPROVED"
    paypal.decline_capture = True
    with pytest.raises(PaymentDeclinedError) as exc_info:
        await gateway.confirm_payment(intent.intent_id)
    assert exc_info.value.details["decline_code"] == "INSTRUMENT_DECLINED"


@pytest.mark.asyncio
async def test_server_errors_are_retryable_and_retried_for_reads(make_source):
    calls = {"orders": 0}

    def handler(request):
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21-token", "expires_in": 3600})
        calls["orders"] += 1
        if calls["orders"] == 1:
            return httpx.Response(503, json={"message": "Service Unavailable"})
        return httpx.Response(
            200,
            json={"id": "ORDER9", "status": "CREATED", "purchase_units": [{"amount": {"currency_code": "USD", "value": "1.00"}}]},
        )

    registry = PaymentGatewayRegistry(
        make_source(retry={"max": 2, "base_backoff": 0.01}),
        transport=httpx.MockTransport(handler),
    )
    intent = await registry.create("paypal").get_payment_status("ORDER9")
    assert intent.amount == 100
    assert calls["orders"] == 2

    def always_unavailable(request):
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21-token", "expires_in": 3600})
        return httpx.Response(503)

    failing = PaymentGatewayRegistry(make_source(), transport=httpx.MockTransport(always_unavailable))
    with pytest.raises(GatewayCommunicationError) as exc_info:
        await failing.create("paypal").get_payment_status("ORDER9")
    assert exc_info.value.retryable is True


@pytest.fixture
def signing_material():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "messageverificationcerts.paypal.com")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    return key, cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


def signed_request(key, payload: dict, *, webhook_id="WH-123") -> WebhookRequest:
    body = json.dumps(payload).encode("utf-8")
    transmission_id, transmission_time = "b2384410-f8d2-11e8-b8a4-27f8f0a5a5f1", "2024-05-01T10:00:00Z"
    message = f"{transmission_id}|{transmission_time}|{webhook_id}|{zlib.crc32(body) & 0xFFFFFFFF}".encode()
    signature = base64.b64encode(key.sign(message, padding.PKCS1v15(), hashes.SHA256())).decode()
    return WebhookRequest(
        headers={
            "PAYPAL-TRANSMISSION-ID": transmission_id,
            "PAYPAL-TRANSMISSION-TIME": transmission_time,
            "PAYPAL-TRANSMISSION-SIG": signature,
            "PAYPAL-AUTH-ALGO": "SHA256withRSA",
            "PAYPAL-CERT-URL": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-360caa42",
        },
        body=body,
    )


@pytest.fixture
def webhook_gateway(config_source, paypal, signing_material):
    config_source.set("payments.paypal.signing_cert_pem", signing_material[1])
    registry = PaymentGatewayRegistry(config_source, transport=httpx.MockTransport(paypal))
    return registry.create("paypal")


def test_webhook_signature_verified_with_configured_certificate(webhook_gateway, signing_material):
    key, _ = signing_material
    payload = {"id": "WH-EVT-1", "event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "ORDER1"}}
    request = signed_request(key, payload)
    assert webhook_gateway.verify_webhook_signature(request) is True

    tampered = WebhookRequest(headers=request.headers, body=request.body.replace(b"ORDER1", b"ORDER2"))
    assert webhook_gateway.verify_webhook_signature(tampered) is False
    assert webhook_gateway.verify_webhook_signature(signed_request(key, payload, webhook_id="WH-OTHER")) is False


@pytest.mark.asyncio
async def test_capture_and_refund_events_normalized(webhook_gateway, paypal, signing_material):
    key, _ = signing_material
    intent = await webhook_gateway.create_payment_intent(5000, "USD")
    paypal.orders[intent.intent_id]["status"] = "APPROVED"
    await webhook_gateway.confirm_payment(intent.intent_id)
    await webhook_gateway.refund_payment(intent.intent_id, 1500)

    completed = {
        "id": "WH-EVT-2",
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {
            "id": f"CAP-{intent.intent_id}",
            "status": "COMPLETED",
            "supplementary_data": {"related_ids": {"order_id": intent.intent_id}},
        },
    }
    normalized = await webhook_gateway.process_webhook(webhook_gateway.parse_webhook(signed_request(key, completed)))
    assert isinstance(normalized, PaymentStatusChanged)
    assert normalized.intent_id == intent.intent_id
    assert normalized.status is PaymentStatus.SUCCEEDED

    refunded = {
        "id": "WH-EVT-3",
        "event_type": "PAYMENT.CAPTURE.REFUNDED",
        "resource": {
            "id": "RF1",
            "status": "COMPLETED",
            "links": [{"rel": "up", "href": f"https://api.sandbox.paypal.com/v2/payments/captures/CAP-{intent.intent_id}"}],
        },
    }
    normalized = await webhook_gateway.process_webhook(webhook_gateway.parse_webhook(signed_request(key, refunded)))
    assert isinstance(normalized, PaymentRefunded)
    assert normalized.amount_refunded == 1500
    assert normalized.remaining_refundable == 3500
    assert normalized.status is PaymentStatus.PARTIALLY_REFUNDED
