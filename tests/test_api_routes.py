import hashlib
import hmac
import json

import httpx
import pytest
import pytest_asyncio

import main
from application.services.payment_service import PaymentService
from application.services.webhook_service import WebhookPipeline
from infrastructure.external.payments.registry import PaymentGatewayRegistry
from infrastructure.webhooks.dedup import InMemoryWebhookDedupStore
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


def wompi_api(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(201, json={"data": {
        "id": "12-1",
        "amount_in_cents": body["amount_in_cents"],
        "currency": body["currency"],
        "reference": body["reference"],
        "status": "PENDING",
    }})


def wompi_webhook(secret="test_events_abc") -> tuple[bytes, dict]:
    body = json.dumps({
        "event": "transaction.updated",
        "data": {"transaction": {"id": "12-1", "status": "APPROVED", "amount_in_cents": 2500000}},
    }).encode("utf-8")
    signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return body, {"X-Wompi-Signature": signature, "Content-Type": "application/json"}


@pytest.fixture
def wired_app(make_source, dispatcher):
    def _wire(**overrides):
        registry = PaymentGatewayRegistry(make_source(**overrides), transport=httpx.MockTransport(wompi_api))
        main.app.state.payment_registry = registry
        main.app.state.payment_service = PaymentService(registry, timeout=5.0)
        main.app.state.webhook_pipeline = WebhookPipeline(registry, InMemoryWebhookDedupStore(), dispatcher)
        main.app.state.event_dispatcher = dispatcher
        return dispatcher

    return _wire


@pytest_asyncio.fixture
async def client():
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.mark.asyncio
async def test_health_and_request_id(wired_app, client):
    wired_app()
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["data"] == {"status": "healthy"}
    assert resp.headers["X-Request-ID"]

    resp = await client.get("/health", headers={"X-Request-ID": "trace-123"})
    assert resp.headers["X-Request-ID"] == "trace-123"


@pytest.mark.asyncio
async def test_gateway_listing(wired_app, client):
    wired_app(stripe={"enabled": False})
    resp = await client.get("/api/v1/payments/gateways")
    assert resp.status_code == 200
    body = resp.json()
    assert body["code"] == BusinessCode.SUCCESS
    assert [g["provider_id"] for g in body["data"]] == ["stripe", "paypal", "payu", "wompi", "mercadopago"]

    enabled = (await client.get("/api/v1/payments/gateways/enabled")).json()["data"]
    assert "stripe" not in {g["provider_id"] for g in enabled}
    assert all(g["enabled"] for g in enabled)


@pytest.mark.asyncio
async def test_create_intent_and_error_envelopes(wired_app, client):
    wired_app()
    resp = await client.post(
        "/api/v1/payments/wompi/intents",
        json={"amount": 2500000, "currency": "cop", "metadata": {"order_id": "o-77", "acceptance_token": "tok"}},
    )
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["intent_id"] == "12-1"
    assert data["status"] == "processing"

    resp = await client.get("/api/v1/payments/bitcoinpay/intents/x")
    assert resp.status_code == 404
    body = resp.json()
    assert body["code"] == PaymentCode.UNSUPPORTED_GATEWAY
    assert body["error"]["type"] == "UnsupportedGatewayError"
    assert body["error"]["request_id"] == resp.headers["X-Request-ID"]

    resp = await client.post("/api/v1/payments/wompi/intents", json={"amount": 0, "currency": "COP"})
    assert resp.status_code == 422
    assert resp.json()["code"] == BusinessCode.PARAM_VALIDATION_ERROR

    resp = await client.post("/api/v1/payments/wompi/intents", json={"amount": 100, "currency": "USD"})
    assert resp.status_code == 422
    assert resp.json()["error"]["type"] == "UnsupportedCurrencyError"


@pytest.mark.asyncio
async def test_webhook_acknowledged_once_and_rejected_when_forged(wired_app, client):
    dispatcher = wired_app()
    body, headers = wompi_webhook()

    first = await client.post("/api/v1/payments/webhooks/wompi", content=body, headers=headers)
    assert first.status_code == 200
    assert first.json()["data"]["outcome"] == "dispatched"
    second = await client.post("/api/v1/payments/webhooks/wompi", content=body, headers=headers)
    assert second.status_code == 200
    assert second.json()["data"]["outcome"] == "duplicate"
    assert len(dispatcher.dispatched) == 1

    forged_body, forged_headers = wompi_webhook(secret="forged")
    resp = await client.post("/api/v1/payments/webhooks/wompi", content=forged_body, headers=forged_headers)
    assert resp.status_code == 400
    assert resp.json()["code"] == PaymentCode.SIGNATURE_ERROR

    resp = await client.post("/api/v1/payments/webhooks/bitcoinpay", content=body, headers=headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_webhook_ip_allowlist(wired_app, client):
    body, headers = wompi_webhook()

    wired_app(webhook={"tolerance_seconds": 300, "ip_allowlist": ["10.0.0.0/8"]})
    resp = await client.post("/api/v1/payments/webhooks/wompi", content=body, headers=headers)
    assert resp.status_code == 403
    assert resp.json()["code"] == BusinessCode.FORBIDDEN

    # Forwarded headers do not bypass the allow-list
    resp = await client.post(
        "/api/v1/payments/webhooks/wompi", content=body, headers={**headers, "X-Forwarded-For": "10.1.2.3"}
    )
    assert resp.status_code == 403

    wired_app(webhook={"tolerance_seconds": 300, "ip_allowlist": ["127.0.0.1", "not-an-ip"]})
    resp = await client.post("/api/v1/payments/webhooks/wompi", content=body, headers=headers)
    assert resp.status_code == 200
