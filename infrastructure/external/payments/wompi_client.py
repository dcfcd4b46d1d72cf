"""
Wompi (Colombia) transactions adapter over httpx.

Amounts travel as ``amount_in_cents``. Wompi has no partial refunds: a
refund voids the whole transaction. Events are signed with
``X-Wompi-Signature``: hex HMAC-SHA256 of the raw body with the events secret.
"""
from __future__ import annotations

import hashlib
import uuid
from datetime import datetime
from typing import Any, Optional

from application.dtos.payments import PaymentIntent, RefundRecord, WebhookEvent, WebhookRequest
from domain.payment.entity import PaymentStatus, RefundBalance
from domain.payment.events import NormalizedEvent, PaymentRefunded, PaymentStatusChanged
from domain.payment.exceptions import PaymentDeclinedError, WebhookPayloadError
from infrastructure.external.payments.base import BasePaymentClient


class WompiClient(BasePaymentClient):
    provider = "wompi"
    display_name = "Wompi"
    credential_fields = ("public_key", "private_key", "integrity_secret")
    required_credentials = ("public_key", "private_key")
    webhook_secret_field = "events_secret"
    default_currencies = frozenset({"COP"})
    supports_partial_refunds = False
    sandbox_base_url = "https://sandbox.wompi.co/v1"
    live_base_url = "https://production.wompi.co/v1"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.credential('private_key')}"}

    def _to_intent(self, tx: dict[str, Any], metadata: Optional[dict[str, Any]] = None) -> PaymentIntent:
        amount = int(tx.get("amount_in_cents") or 0)
        provider_status = tx.get("status")
        status = self._map_status(provider_status)
        captured = amount if provider_status in ("APPROVED", "VOIDED") else 0
        refunded = amount if provider_status == "VOIDED" else 0
        return PaymentIntent(
            intent_id=str(tx.get("id")),
            provider=self.provider,
            amount=amount,
            currency=str(tx.get("currency") or "COP").upper(),
            status=status,
            provider_status=provider_status,
            amount_captured=captured,
            amount_refunded=refunded,
            next_action_url=((tx.get("payment_method") or {}).get("extra") or {}).get("async_payment_url")
            or tx.get("redirect_url"),
            provider_ref=tx.get("reference"),
            metadata=metadata if metadata is not None else {"reference": tx.get("reference")},
        )

    async def _create(
        self, amount: int, currency: str, metadata: dict[str, Any], idempotency_key: Optional[str]
    ) -> PaymentIntent:
        reference = str(metadata.get("order_id") or idempotency_key or uuid.uuid4().hex)
        body: dict[str, Any] = {
            "amount_in_cents": amount,
            "currency": currency,
            "reference": reference,
            "customer_email": metadata.get("customer_email"),
            "payment_method": metadata.get("payment_method"),
            "acceptance_token": metadata.get("acceptance_token"),
        }
        if metadata.get("redirect_url"):
            body["redirect_url"] = metadata["redirect_url"]
        integrity = self.config.credential("integrity_secret")
        if integrity:
            body["signature"] = hashlib.sha256(f"{reference}{amount}{currency}{integrity}".encode("utf-8")).hexdigest()
        # Wompi rejects a reused reference; writes are never retried
        data = await self._request(
            "POST",
            "/transactions",
            headers=self._headers(),
            json={k: v for k, v in body.items() if v is not None},
        )
        tx = data.get("data") or {}
        if tx.get("status") in ("DECLINED", "ERROR"):
            raise PaymentDeclinedError(
                str(tx.get("status_message") or "Wompi declined the transaction"),
                provider=self.provider,
                decline_code=tx.get("status"),
            )
        return self._to_intent(tx, metadata={**metadata, "reference": reference})

    async def _fetch(self, intent_id: str) -> PaymentIntent:
        data = await self._request(
            "GET",
            f"/transactions/{intent_id}",
            headers=self._headers(),
            idempotent=True,
            not_found_id=intent_id,
        )
        return self._to_intent(data.get("data") or {})

    async def _refund(
        self,
        current: PaymentIntent,
        amount: int,
        balance: RefundBalance,
        reason: Optional[str],
        idempotency_key: Optional[str],
    ) -> RefundRecord:
        data = await self._request(
            "POST",
            f"/transactions/{current.intent_id}/void",
            headers=self._headers(),
            not_found_id=current.intent_id,
            json={},
        )
        result = data.get("data") or {}
        tx = result.get("transaction") or result
        raw_status = tx.get("status")
        refund_status = {"VOIDED": "succeeded", "DECLINED": "failed", "ERROR": "failed"}.get(raw_status, "pending")
        return self._refund_record(
            current,
            refund_id=str(result.get("id") or f"void-{current.intent_id}"),
            amount=amount,
            balance=balance,
            reason=reason,
            refund_status=refund_status,
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    def verify_webhook_signature(self, request: WebhookRequest) -> bool:
        secret = self.config.webhook_secret
        if not secret:
            return False
        expected = self._hmac_sha256_hex(secret, request.body)
        return self._signatures_match(expected, request.header("x-wompi-signature"))

    def parse_webhook(self, request: WebhookRequest) -> WebhookEvent:
        payload = self._load_json(request)
        event_type = payload.get("event")
        tx = (payload.get("data") or {}).get("transaction") or {}
        if not event_type or not tx.get("id"):
            raise WebhookPayloadError("Wompi event without type or transaction", provider=self.provider)
        return WebhookEvent(
            provider=self.provider,
            event_id=f"{tx['id']}:{tx.get('status')}",
            event_type=str(event_type),
            payload=payload,
        )

    async def process_webhook(self, event: WebhookEvent) -> Optional[NormalizedEvent]:
        if event.event_type != "transaction.updated":
            return None
        tx = (event.payload.get("data") or {}).get("transaction") or {}
        occurred_at = event.received_at
        sent_at = event.payload.get("sent_at")
        if sent_at:
            try:
                occurred_at = datetime.fromisoformat(str(sent_at).replace("Z", "+00:00"))
            except ValueError:
                pass
        status = self._map_status(tx.get("status"))
        provider_data = {"provider_status": tx.get("status"), "reference": tx.get("reference")}
        if status is PaymentStatus.REFUNDED:
            amount = int(tx.get("amount_in_cents") or 0)
            return PaymentRefunded(
                provider=self.provider,
                intent_id=str(tx["id"]),
                event_id=event.event_id,
                event_type=event.event_type,
                status=status,
                occurred_at=occurred_at,
                provider_data=provider_data,
                amount_refunded=amount,
                remaining_refundable=0,
            )
        return PaymentStatusChanged(
            provider=self.provider,
            intent_id=str(tx["id"]),
            event_id=event.event_id,
            event_type=event.event_type,
            status=status,
            occurred_at=occurred_at,
            provider_data=provider_data,
        )
