"""
Mercado Pago payments adapter (/v1/payments) over httpx.

Writes carry ``X-Idempotency-Key``, which makes them safe to retry.
`confirm_payment` captures payments created with ``capture=false``.
Notifications are signed with ``x-signature: ts=...,v1=...`` over the
manifest ``id:<data.id>;request-id:<x-request-id>;ts:<ts>;``. The
manifest does not cover the body, so `payment` notifications are only
used as a trigger: the payment is always read back from the provider.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from application.dtos.payments import PaymentIntent, RefundRecord, WebhookEvent, WebhookRequest
from domain.payment.entity import PaymentStatus, RefundBalance, to_major, to_minor
from domain.payment.events import NormalizedEvent, PaymentRefunded, PaymentStatusChanged
from domain.payment.exceptions import PaymentDeclinedError, WebhookPayloadError
from infrastructure.external.payments.base import BasePaymentClient


def _signature_parts(header: Optional[str]) -> dict[str, str]:
    parts: dict[str, str] = {}
    for item in (header or "").split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


class MercadoPagoClient(BasePaymentClient):
    provider = "mercadopago"
    display_name = "Mercado Pago"
    credential_fields = ("access_token", "public_key")
    required_credentials = ("access_token", "public_key")
    default_currencies = frozenset({"ARS", "BRL", "CLP", "COP", "MXN", "PEN", "UYU"})
    confirm_fields = frozenset({"amount"})
    sandbox_base_url = "https://api.mercadopago.com"
    live_base_url = "https://api.mercadopago.com"

    def _headers(self, idempotency_key: Optional[str] = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.config.credential('access_token')}"}
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    def _to_intent(self, payment: dict[str, Any], metadata: Optional[dict[str, Any]] = None) -> PaymentIntent:
        currency = str(payment.get("currency_id") or "").upper()
        amount = to_minor(payment.get("transaction_amount") or 0, currency)
        provider_status = payment.get("status")
        status = self._map_status(provider_status)
        settled = provider_status in ("approved", "refunded", "charged_back")
        captured = amount if settled and payment.get("captured", True) else 0
        refunded = to_minor(payment.get("transaction_amount_refunded") or 0, currency)
        if provider_status in ("refunded", "charged_back"):
            refunded = refunded or captured
        if captured:
            status = RefundBalance(provider=self.provider, captured=captured, refunded=refunded).status()
        action = (payment.get("point_of_interaction") or {}).get("transaction_data") or {}
        return PaymentIntent(
            intent_id=str(payment.get("id")),
            provider=self.provider,
            amount=amount,
            currency=currency,
            status=status,
            provider_status=provider_status,
            amount_captured=captured,
            amount_refunded=min(refunded, captured) if captured else 0,
            next_action_url=action.get("ticket_url") or (payment.get("transaction_details") or {}).get("external_resource_url"),
            provider_ref=payment.get("external_reference"),
            metadata=metadata if metadata is not None else dict(payment.get("metadata") or {}),
        )

    async def _create(
        self, amount: int, currency: str, metadata: dict[str, Any], idempotency_key: Optional[str]
    ) -> PaymentIntent:
        body: dict[str, Any] = {
            "transaction_amount": float(to_major(amount, currency)),
            "description": str(metadata.get("description") or "Payment"),
            "payment_method_id": metadata.get("payment_method_id"),
            "token": metadata.get("token"),
            "installments": int(metadata.get("installments", 1)),
            "external_reference": metadata.get("order_id"),
            "capture": bool(metadata.get("capture", True)),
            "metadata": {k: v for k, v in metadata.items() if k not in ("token",)},
        }
        if metadata.get("payer_email"):
            body["payer"] = {"email": metadata["payer_email"]}
        payment = await self._request(
            "POST",
            "/v1/payments",
            headers=self._headers(idempotency_key or str(uuid.uuid4())),
            idempotent=True,
            json={k: v for k, v in body.items() if v is not None},
        )
        if payment.get("status") == "rejected":
            raise PaymentDeclinedError(
                "Mercado Pago rejected the payment",
                provider=self.provider,
                decline_code=payment.get("status_detail"),
            )
        # currency_id is fixed by the account country; trust the request
        payment.setdefault("currency_id", currency)
        return self._to_intent(payment, metadata={k: v for k, v in metadata.items() if k != "token"})

    async def _fetch(self, intent_id: str) -> PaymentIntent:
        payment = await self._request(
            "GET",
            f"/v1/payments/{intent_id}",
            headers=self._headers(),
            idempotent=True,
            not_found_id=intent_id,
        )
        return self._to_intent(payment)

    def _needs_confirmation(self, intent: PaymentIntent) -> bool:
        return intent.provider_status == "authorized"

    async def _confirm(self, current: PaymentIntent, extra: dict[str, Any]) -> PaymentIntent:
        body: dict[str, Any] = {"capture": True}
        if extra.get("amount"):
            body["transaction_amount"] = float(to_major(int(extra["amount"]), current.currency))
        payment = await self._request(
            "PUT",
            f"/v1/payments/{current.intent_id}",
            headers=self._headers(f"capture-{current.intent_id}"),
            idempotent=True,
            not_found_id=current.intent_id,
            json=body,
        )
        payment.setdefault("currency_id", current.currency)
        return self._to_intent(payment)

    async def _refund(
        self,
        current: PaymentIntent,
        amount: int,
        balance: RefundBalance,
        reason: Optional[str],
        idempotency_key: Optional[str],
    ) -> RefundRecord:
        body: dict[str, Any] = {}
        if amount != balance.remaining:
            body["amount"] = float(to_major(amount, current.currency))
        refund = await self._request(
            "POST",
            f"/v1/payments/{current.intent_id}/refunds",
            headers=self._headers(idempotency_key or str(uuid.uuid4())),
            idempotent=True,
            not_found_id=current.intent_id,
            json=body,
        )
        raw_status = refund.get("status")
        refund_status = {"approved": "succeeded", "rejected": "failed", "cancelled": "failed"}.get(raw_status, "pending")
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
    @staticmethod
    def _data_id(request: WebhookRequest, payload: Optional[dict[str, Any]] = None) -> Optional[str]:
        data_id = request.query_params.get("data.id") or request.query_params.get("id")
        if not data_id and payload is not None:
            data_id = (payload.get("data") or {}).get("id")
        if data_id is None:
            return None
        data_id = str(data_id)
        # Alphanumeric ids are signed lower-cased
        return data_id.lower() if not data_id.isdigit() else data_id

    def verify_webhook_signature(self, request: WebhookRequest) -> bool:
        secret = self.config.webhook_secret
        parts = _signature_parts(request.header("x-signature"))
        ts, v1 = parts.get("ts"), parts.get("v1")
        if not secret or not ts or not v1:
            return False
        try:
            payload = self._load_json(request)
        except WebhookPayloadError:
            payload = None
        manifest = ""
        data_id = self._data_id(request, payload)
        if data_id:
            manifest += f"id:{data_id};"
        request_id = request.header("x-request-id")
        if request_id:
            manifest += f"request-id:{request_id};"
        manifest += f"ts:{ts};"
        expected = self._hmac_sha256_hex(secret, manifest.encode("utf-8"))
        return self._signatures_match(expected, v1)

    def parse_webhook(self, request: WebhookRequest) -> WebhookEvent:
        payload = self._load_json(request)
        topic = payload.get("type") or payload.get("topic") or request.query_params.get("type")
        data_id = self._data_id(request, payload)
        if not topic or not data_id:
            raise WebhookPayloadError("Mercado Pago notification without type or data.id", provider=self.provider)
        action = payload.get("action") or f"{topic}.updated"
        event_id = payload.get("id") or f"{data_id}:{action}"
        payload.setdefault("data", {}).setdefault("id", data_id)
        return WebhookEvent(
            provider=self.provider,
            event_id=str(event_id),
            event_type=str(action),
            payload=payload,
        )

    async def process_webhook(self, event: WebhookEvent) -> Optional[NormalizedEvent]:
        topic = event.payload.get("type") or event.payload.get("topic")
        if topic != "payment":
            return None
        data_id = str((event.payload.get("data") or {}).get("id"))
        occurred_at = event.received_at
        created = event.payload.get("date_created")
        if created:
            try:
                occurred_at = datetime.fromisoformat(str(created).replace("Z", "+00:00"))
            except ValueError:
                pass
        intent = await self._fetch(data_id)
        provider_data = {"provider_status": intent.provider_status}
        if intent.status in (PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED):
            return PaymentRefunded(
                provider=self.provider,
                intent_id=intent.intent_id,
                event_id=event.event_id,
                event_type=event.event_type,
                status=intent.status,
                occurred_at=occurred_at,
                provider_data=provider_data,
                amount_refunded=intent.amount_refunded,
                remaining_refundable=intent.refundable_amount,
            )
        return PaymentStatusChanged(
            provider=self.provider,
            intent_id=intent.intent_id,
            event_id=event.event_id,
            event_type=event.event_type,
            status=intent.status,
            occurred_at=occurred_at,
            provider_data=provider_data,
        )
