"""
PayPal Orders v2 adapter over httpx.

- OAuth2 client-credentials token cached until shortly before expiry.
- Orders are created with intent CAPTURE; `confirm_payment` captures an
  approved order. Refunds are issued against the order's capture.
- Webhooks are verified offline: RSA-SHA256 over
  ``transmission_id|transmission_time|webhook_id|crc32(body)`` with the
  configured PayPal signing certificate.
"""
from __future__ import annotations

import base64
import time
import uuid
import zlib
from datetime import datetime
from typing import Any, Optional

import httpx
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from application.dtos.payments import PaymentIntent, RefundRecord, WebhookEvent, WebhookRequest
from domain.payment.entity import PaymentStatus, RefundBalance, to_major, to_minor
from domain.payment.events import NormalizedEvent, PaymentRefunded, PaymentStatusChanged
from domain.payment.exceptions import GatewayCommunicationError, PaymentDeclinedError, WebhookPayloadError
from infrastructure.external.payments.base import BasePaymentClient
from core.logging_config import get_logger


logger = get_logger(__name__)

_DECLINE_ISSUES = {"INSTRUMENT_DECLINED", "TRANSACTION_REFUSED", "PAYER_CANNOT_PAY"}

_ORDER_EVENTS = {
    "CHECKOUT.ORDER.APPROVED": PaymentStatus.REQUIRES_ACTION,
    "CHECKOUT.ORDER.COMPLETED": PaymentStatus.SUCCEEDED,
    "CHECKOUT.ORDER.VOIDED": PaymentStatus.CANCELED,
}
_CAPTURE_EVENTS = {
    "PAYMENT.CAPTURE.COMPLETED": PaymentStatus.SUCCEEDED,
    "PAYMENT.CAPTURE.PENDING": PaymentStatus.PROCESSING,
    "PAYMENT.CAPTURE.DENIED": PaymentStatus.FAILED,
    "PAYMENT.CAPTURE.DECLINED": PaymentStatus.FAILED,
}
_REFUND_EVENTS = {"PAYMENT.CAPTURE.REFUNDED", "PAYMENT.CAPTURE.REVERSED"}


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class PayPalClient(BasePaymentClient):
    provider = "paypal"
    display_name = "PayPal"
    credential_fields = ("client_id", "client_secret")
    required_credentials = ("client_id", "client_secret")
    option_fields = ("sandbox", "base_url", "signing_cert_pem")
    webhook_secret_field = "webhook_id"
    default_currencies = frozenset({"USD", "EUR", "GBP", "CAD", "AUD"})
    sandbox_base_url = "https://api-m.sandbox.paypal.com"
    live_base_url = "https://api-m.paypal.com"

    def __init__(self, config, **kwargs) -> None:
        super().__init__(config, **kwargs)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        data = await self._request(
            "POST",
            "/v1/oauth2/token",
            idempotent=True,
            data={"grant_type": "client_credentials"},
            auth=(self.config.credential("client_id") or "", self.config.credential("client_secret") or ""),
        )
        token = data.get("access_token")
        if not token:
            raise GatewayCommunicationError("PayPal did not issue an access token", provider=self.provider, retryable=False)
        # Refresh a minute early
        self._token = str(token)
        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 0)) - 60, 0)
        return self._token

    async def _api(self, method: str, url: str, *, request_id: Optional[str] = None, **kwargs: Any) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {await self._access_token()}"}
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return await self._request(method, url, headers=headers, **kwargs)

    def _raise_for_response(self, response: httpx.Response, *, not_found_id: Optional[str] = None) -> None:
        if response.status_code == 422:
            try:
                details = response.json().get("details") or []
            except ValueError:
                details = []
            issues = {d.get("issue") for d in details if isinstance(d, dict)}
            if issues & _DECLINE_ISSUES:
                logger.warning("payment_provider_declined", provider=self.provider, issues=sorted(i for i in issues if i))
                raise PaymentDeclinedError(provider=self.provider, decline_code=sorted(issues & _DECLINE_ISSUES)[0])
        super()._raise_for_response(response, not_found_id=not_found_id)

    def _to_intent(self, order: dict[str, Any], metadata: Optional[dict[str, Any]] = None) -> PaymentIntent:
        unit = (order.get("purchase_units") or [{}])[0]
        amount_info = unit.get("amount") or {}
        currency = str(amount_info.get("currency_code") or "USD").upper()
        payments = unit.get("payments") or {}
        captures = payments.get("captures") or []
        refunds = payments.get("refunds") or []

        captured = sum(
            to_minor((c.get("amount") or {}).get("value", "0"), currency)
            for c in captures
            if c.get("status") in ("COMPLETED", "REFUNDED", "PARTIALLY_REFUNDED")
        )
        refunded = sum(
            to_minor((r.get("amount") or {}).get("value", "0"), currency)
            for r in refunds
            if r.get("status") in ("COMPLETED", "PENDING")
        )
        provider_status = order.get("status")
        status = self._map_status(provider_status)
        if captures:
            capture_status = captures[0].get("status")
            if capture_status in ("PENDING", "DECLINED", "FAILED"):
                status = self._map_status(capture_status)
            elif captured:
                status = RefundBalance(provider=self.provider, captured=captured, refunded=refunded).status()

        approve = next(
            (link.get("href") for link in order.get("links") or [] if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        custom_id = unit.get("custom_id")
        return PaymentIntent(
            intent_id=str(order.get("id")),
            provider=self.provider,
            amount=to_minor(amount_info.get("value", "0"), currency),
            currency=currency,
            status=status,
            provider_status=provider_status,
            amount_captured=captured,
            amount_refunded=refunded,
            next_action_url=approve,
            provider_ref=captures[0].get("id") if captures else None,
            metadata=metadata if metadata is not None else ({"custom_id": custom_id} if custom_id else {}),
        )

    async def _create(
        self, amount: int, currency: str, metadata: dict[str, Any], idempotency_key: Optional[str]
    ) -> PaymentIntent:
        unit: dict[str, Any] = {
            "amount": {"currency_code": currency, "value": str(to_major(amount, currency))},
        }
        reference = metadata.get("order_id") or metadata.get("reference")
        if reference:
            unit["reference_id"] = str(reference)[:256]
            unit["custom_id"] = str(reference)[:127]
        if metadata.get("description"):
            unit["description"] = str(metadata["description"])[:127]
        body = {"intent": "CAPTURE", "purchase_units": [unit]}
        order = await self._api(
            "POST",
            "/v2/checkout/orders",
            request_id=idempotency_key or str(uuid.uuid4()),
            idempotent=True,
            json=body,
        )
        if not order.get("purchase_units"):
            order = {**order, "purchase_units": [unit]}
        return self._to_intent(order, metadata=metadata)

    async def _fetch(self, intent_id: str) -> PaymentIntent:
        order = await self._api("GET", f"/v2/checkout/orders/{intent_id}", idempotent=True, not_found_id=intent_id)
        return self._to_intent(order)

    def _needs_confirmation(self, intent: PaymentIntent) -> bool:
        # Only a payer-approved order can be captured
        return intent.provider_status == "APPROVED"

    async def _confirm(self, current: PaymentIntent, extra: dict[str, Any]) -> PaymentIntent:
        await self._api(
            "POST",
            f"/v2/checkout/orders/{current.intent_id}/capture",
            request_id=f"capture-{current.intent_id}",
            idempotent=True,
            not_found_id=current.intent_id,
            json={},
        )
        # The capture response omits the order amount; read the full order back
        return await self._fetch(current.intent_id)

    async def _refund(
        self,
        current: PaymentIntent,
        amount: int,
        balance: RefundBalance,
        reason: Optional[str],
        idempotency_key: Optional[str],
    ) -> RefundRecord:
        if not current.provider_ref:
            raise GatewayCommunicationError(
                "PayPal order has no capture to refund", provider=self.provider, retryable=False
            )
        body: dict[str, Any] = {
            "amount": {"value": str(to_major(amount, current.currency)), "currency_code": current.currency},
        }
        if reason:
            body["note_to_payer"] = reason[:255]
        refund = await self._api(
            "POST",
            f"/v2/payments/captures/{current.provider_ref}/refund",
            request_id=idempotency_key or str(uuid.uuid4()),
            idempotent=True,
            not_found_id=current.intent_id,
            json=body,
        )
        raw_status = refund.get("status")
        refund_status = {"COMPLETED": "succeeded", "FAILED": "failed", "CANCELLED": "failed"}.get(raw_status, "pending")
        return self._refund_record(
            current,
            refund_id=str(refund.get("id")),
            amount=amount,
            balance=balance,
            reason=reason,
            refund_status=refund_status,
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    def verify_webhook_signature(self, request: WebhookRequest) -> bool:
        webhook_id = self.config.webhook_secret
        cert_pem = self.config.options.get("signing_cert_pem")
        transmission_id = request.header("paypal-transmission-id")
        transmission_time = request.header("paypal-transmission-time")
        signature = request.header("paypal-transmission-sig")
        if not (webhook_id and cert_pem and transmission_id and transmission_time and signature):
            return False
        algo = (request.header("paypal-auth-algo") or "SHA256withRSA").upper()
        if algo != "SHA256WITHRSA":
            return False
        crc = zlib.crc32(request.body) & 0xFFFFFFFF
        message = f"{transmission_id}|{transmission_time}|{webhook_id}|{crc}".encode("utf-8")
        try:
            cert = x509.load_pem_x509_certificate(str(cert_pem).encode("utf-8"))
            cert.public_key().verify(
                base64.b64decode(signature, validate=True),
                message,
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
        except (InvalidSignature, ValueError, TypeError):
            return False
        return True

    def parse_webhook(self, request: WebhookRequest) -> WebhookEvent:
        payload = self._load_json(request)
        event_id = payload.get("id")
        event_type = payload.get("event_type")
        if not event_id or not event_type:
            raise WebhookPayloadError("PayPal event without id or event_type", provider=self.provider)
        return WebhookEvent(
            provider=self.provider,
            event_id=str(event_id),
            event_type=str(event_type),
            payload=payload,
        )

    async def process_webhook(self, event: WebhookEvent) -> Optional[NormalizedEvent]:
        resource = event.payload.get("resource") or {}
        occurred_at = _parse_time(event.payload.get("create_time")) or event.received_at

        if event.event_type in _ORDER_EVENTS:
            if not resource.get("id"):
                raise WebhookPayloadError("Order event without resource id", provider=self.provider)
            return PaymentStatusChanged(
                provider=self.provider,
                intent_id=str(resource["id"]),
                event_id=event.event_id,
                event_type=event.event_type,
                status=_ORDER_EVENTS[event.event_type],
                occurred_at=occurred_at,
                provider_data={"provider_status": resource.get("status")},
            )

        if event.event_type in _CAPTURE_EVENTS:
            order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
            if not order_id:
                raise WebhookPayloadError("Capture event without related order id", provider=self.provider)
            return PaymentStatusChanged(
                provider=self.provider,
                intent_id=str(order_id),
                event_id=event.event_id,
                event_type=event.event_type,
                status=_CAPTURE_EVENTS[event.event_type],
                occurred_at=occurred_at,
                provider_data={"capture_id": resource.get("id"), "provider_status": resource.get("status")},
            )

        if event.event_type in _REFUND_EVENTS:
            order_id = await self._order_for_refund(resource)
            intent = await self._fetch(order_id)
            return PaymentRefunded(
                provider=self.provider,
                intent_id=intent.intent_id,
                event_id=event.event_id,
                event_type=event.event_type,
                status=intent.status,
                occurred_at=occurred_at,
                provider_data={"provider_status": resource.get("status")},
                amount_refunded=intent.amount_refunded,
                remaining_refundable=intent.refundable_amount,
                refund_id=resource.get("id"),
            )

        return None

    async def _order_for_refund(self, resource: dict[str, Any]) -> str:
        """Refund resources link up to their capture; the capture knows its order."""
        order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
        if order_id:
            return str(order_id)
        capture_href = next(
            (link.get("href") for link in resource.get("links") or [] if link.get("rel") == "up"),
            None,
        )
        if not capture_href:
            raise WebhookPayloadError("Refund event without capture link", provider=self.provider)
        capture_id = capture_href.rstrip("/").rsplit("/", 1)[-1]
        capture = await self._api("GET", f"/v2/payments/captures/{capture_id}", idempotent=True)
        order_id = ((capture.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
        if not order_id:
            raise WebhookPayloadError("Capture without related order id", provider=self.provider)
        return str(order_id)
