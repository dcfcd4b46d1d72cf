"""
Stripe PaymentIntents adapter using the official stripe-python SDK.

Notes on SDK usage:
- Module-level resources (`stripe.PaymentIntent`, `stripe.Refund`) with a
  per-call `api_key`; the global `stripe.api_key` is never set so several
  configurations can coexist in one process.
- SDK calls are blocking and run in a worker thread.
- Webhook verification uses `stripe.WebhookSignature.verify_header` with the
  `Stripe-Signature` header over the raw body.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import stripe

from application.dtos.payments import PaymentIntent, RefundRecord, WebhookEvent, WebhookRequest
from domain.payment.entity import PaymentStatus, RefundBalance
from domain.payment.events import NormalizedEvent, PaymentRefunded, PaymentStatusChanged
from domain.payment.exceptions import (
    GatewayCommunicationError,
    InvalidRefundAmountError,
    NotFoundError,
    PaymentDeclinedError,
    PaymentError,
    WebhookPayloadError,
)
from infrastructure.external.payments.base import BasePaymentClient
from core.logging_config import get_logger


logger = get_logger(__name__)

# PaymentIntent states where confirm (or capture) moves the payment forward
_CONFIRMABLE = {"requires_confirmation", "requires_action", "requires_payment_method", "requires_capture"}

# Only these values are accepted by the Refund API `reason` field
_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}

_INTENT_EVENTS = {
    "payment_intent.succeeded": None,
    "payment_intent.processing": None,
    "payment_intent.requires_action": None,
    "payment_intent.amount_capturable_updated": None,
    "payment_intent.canceled": PaymentStatus.CANCELED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
}


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a key from a StripeObject or plain dict."""
    if obj is None:
        return default
    try:
        value = obj[name]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


class StripeClient(BasePaymentClient):
    provider = "stripe"
    display_name = "Stripe"
    credential_fields = ("secret_key", "public_key")
    required_credentials = ("secret_key", "public_key")
    option_fields = ()
    default_currencies = frozenset({"USD", "EUR", "GBP", "CAD", "AUD"})
    live_base_url = "https://api.stripe.com"
    confirm_fields = frozenset({"payment_method", "return_url", "payment_method_options", "mandate_data"})

    @property
    def sandbox(self) -> bool:
        return (self.config.credential("secret_key") or "").startswith("sk_test_")

    @property
    def base_url(self) -> str:
        return self.live_base_url

    async def _call(
        self,
        fn: Callable[..., Any],
        *args: Any,
        idempotent: bool = False,
        not_found_id: Optional[str] = None,
        **params: Any,
    ) -> Any:
        params["api_key"] = self.config.credential("secret_key")

        async def send() -> Any:
            try:
                return await asyncio.to_thread(fn, *args, **params)
            except stripe.StripeError as exc:
                raise self._translate(exc, not_found_id) from exc

        if idempotent:
            return await self._retry(send)
        return await send()

    def _translate(self, exc: stripe.StripeError, not_found_id: Optional[str]) -> PaymentError:
        status = getattr(exc, "http_status", None)
        code = getattr(exc, "code", None)
        logger.warning(
            "payment_provider_error",
            provider=self.provider,
            status_code=status,
            provider_code=code,
            error=str(exc),
        )
        if isinstance(exc, stripe.CardError):
            return PaymentDeclinedError(
                exc.user_message or "Card declined",
                provider=self.provider,
                decline_code=getattr(exc, "decline_code", None) or code,
            )
        if isinstance(exc, stripe.InvalidRequestError):
            if not_found_id is not None and (status == 404 or code == "resource_missing"):
                return NotFoundError(not_found_id, provider=self.provider)
            if code in ("charge_already_refunded", "amount_too_large"):
                return InvalidRefundAmountError(
                    exc.user_message or "Refund exceeds the refundable amount",
                    provider=self.provider,
                )
            return GatewayCommunicationError(
                exc.user_message or "Stripe rejected the request",
                provider=self.provider,
                retryable=False,
                status_code=status,
            )
        if isinstance(exc, (stripe.RateLimitError, stripe.APIConnectionError)):
            return GatewayCommunicationError(
                "Stripe is temporarily unavailable",
                provider=self.provider,
                retryable=True,
                status_code=status,
            )
        if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
            return GatewayCommunicationError(
                "Stripe rejected the credentials",
                provider=self.provider,
                retryable=False,
                status_code=status,
            )
        return GatewayCommunicationError(
            "Stripe request failed",
            provider=self.provider,
            retryable=status is None or status >= 500,
            status_code=status,
        )

    def _to_intent(self, pi: Any) -> PaymentIntent:
        provider_status = _field(pi, "status")
        status = self._map_status(provider_status)
        captured = int(_field(pi, "amount_received", 0))
        charge = _field(pi, "latest_charge")
        refunded = 0
        charge_id = charge if isinstance(charge, str) else _field(charge, "id")
        if charge is not None and not isinstance(charge, str):
            refunded = int(_field(charge, "amount_refunded", 0))
        if status is PaymentStatus.SUCCEEDED:
            status = RefundBalance(provider=self.provider, captured=captured, refunded=refunded).status()
        redirect = _field(_field(pi, "next_action"), "redirect_to_url")
        metadata = _field(pi, "metadata", {})
        return PaymentIntent(
            intent_id=str(_field(pi, "id")),
            provider=self.provider,
            amount=int(_field(pi, "amount", 0)),
            currency=str(_field(pi, "currency", "")).upper(),
            status=status,
            provider_status=provider_status,
            amount_captured=captured,
            amount_refunded=refunded,
            client_secret=_field(pi, "client_secret"),
            next_action_url=_field(redirect, "url"),
            provider_ref=charge_id,
            metadata={k: metadata[k] for k in metadata},
        )

    async def _create(
        self, amount: int, currency: str, metadata: dict[str, Any], idempotency_key: Optional[str]
    ) -> PaymentIntent:
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency.lower(),
            # Stripe metadata values must be strings
            "metadata": {str(k): str(v) for k, v in metadata.items()},
            "automatic_payment_methods": {"enabled": True},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        pi = await self._call(stripe.PaymentIntent.create, idempotent=bool(idempotency_key), **params)
        return self._to_intent(pi)

    async def _fetch(self, intent_id: str) -> PaymentIntent:
        pi = await self._call(
            stripe.PaymentIntent.retrieve,
            intent_id,
            idempotent=True,
            not_found_id=intent_id,
            expand=["latest_charge"],
        )
        return self._to_intent(pi)

    def _needs_confirmation(self, intent: PaymentIntent) -> bool:
        return intent.provider_status in _CONFIRMABLE

    async def _confirm(self, current: PaymentIntent, extra: dict[str, Any]) -> PaymentIntent:
        if current.provider_status == "requires_capture":
            pi = await self._call(
                stripe.PaymentIntent.capture,
                current.intent_id,
                not_found_id=current.intent_id,
                expand=["latest_charge"],
            )
        else:
            pi = await self._call(
                stripe.PaymentIntent.confirm,
                current.intent_id,
                not_found_id=current.intent_id,
                expand=["latest_charge"],
                **extra,
            )
        return self._to_intent(pi)

    async def _refund(
        self,
        current: PaymentIntent,
        amount: int,
        balance: RefundBalance,
        reason: Optional[str],
        idempotency_key: Optional[str],
    ) -> RefundRecord:
        params: dict[str, Any] = {"payment_intent": current.intent_id, "amount": amount}
        if reason in _REFUND_REASONS:
            params["reason"] = reason
        elif reason:
            params["metadata"] = {"reason": reason}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        refund = await self._call(
            stripe.Refund.create,
            idempotent=bool(idempotency_key),
            not_found_id=current.intent_id,
            **params,
        )
        raw_status = _field(refund, "status", "pending")
        if raw_status == "succeeded":
            refund_status = "succeeded"
        elif raw_status in ("failed", "canceled"):
            refund_status = "failed"
        else:
            refund_status = "pending"
        return self._refund_record(
            current,
            refund_id=str(_field(refund, "id")),
            amount=int(_field(refund, "amount", amount)),
            balance=balance,
            reason=reason,
            refund_status=refund_status,
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    def verify_webhook_signature(self, request: WebhookRequest) -> bool:
        secret = self.config.webhook_secret
        header = request.header("stripe-signature")
        if not secret or not header:
            return False
        try:
            payload = request.body.decode("utf-8")
        except UnicodeDecodeError:
            return False
        try:
            return bool(
                stripe.WebhookSignature.verify_header(payload, header, secret, tolerance=self.webhook_tolerance)
            )
        except stripe.SignatureVerificationError:
            return False

    def parse_webhook(self, request: WebhookRequest) -> WebhookEvent:
        payload = self._load_json(request)
        event_id = payload.get("id")
        event_type = payload.get("type")
        if not event_id or not event_type:
            raise WebhookPayloadError("Stripe event without id or type", provider=self.provider)
        return WebhookEvent(
            provider=self.provider,
            event_id=str(event_id),
            event_type=str(event_type),
            payload=payload,
        )

    async def process_webhook(self, event: WebhookEvent) -> Optional[NormalizedEvent]:
        data = event.payload.get("data") or {}
        obj = (data.get("object") if isinstance(data, dict) else data) or {}
        if not isinstance(obj, dict):
            raise WebhookPayloadError("Stripe event data.object is not an object", provider=self.provider)
        created = event.payload.get("created")
        try:
            occurred_at = (
                datetime.fromtimestamp(int(created), tz=timezone.utc) if created else event.received_at
            )
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise WebhookPayloadError("Stripe event has a malformed created timestamp", provider=self.provider) from exc

        if event.event_type in _INTENT_EVENTS:
            intent_id = obj.get("id")
            if not intent_id:
                raise WebhookPayloadError("PaymentIntent event without object id", provider=self.provider)
            status = _INTENT_EVENTS[event.event_type] or self._map_status(obj.get("status"))
            return PaymentStatusChanged(
                provider=self.provider,
                intent_id=str(intent_id),
                event_id=event.event_id,
                event_type=event.event_type,
                status=status,
                occurred_at=occurred_at,
                provider_data={"provider_status": obj.get("status"), "amount": obj.get("amount")},
            )

        if event.event_type == "charge.refunded":
            intent_id = obj.get("payment_intent")
            if not intent_id:
                raise WebhookPayloadError("Refunded charge without payment_intent", provider=self.provider)
            try:
                balance = RefundBalance(
                    provider=self.provider,
                    captured=int(obj.get("amount_captured") or 0),
                    refunded=int(obj.get("amount_refunded") or 0),
                )
            except (TypeError, ValueError) as exc:
                raise WebhookPayloadError("Refunded charge with malformed amounts", provider=self.provider) from exc
            refunds = obj.get("refunds")
            refund_list = refunds.get("data") if isinstance(refunds, dict) else None
            first_refund = refund_list[0] if isinstance(refund_list, list) and refund_list else None
            return PaymentRefunded(
                provider=self.provider,
                intent_id=str(intent_id),
                event_id=event.event_id,
                event_type=event.event_type,
                status=balance.status(),
                occurred_at=occurred_at,
                provider_data={"charge_id": obj.get("id")},
                amount_refunded=balance.refunded,
                remaining_refundable=balance.remaining,
                refund_id=first_refund.get("id") if isinstance(first_refund, dict) else None,
            )

        return None
