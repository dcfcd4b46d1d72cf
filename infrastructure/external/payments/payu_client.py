"""
PayU Latam adapter (payments-api / reports-api 4.0) over httpx.

PayU exposes a single command endpoint per API. Payments are submitted as
AUTHORIZATION_AND_CAPTURE; there is no separate confirm step. Refunds are
full-only and usually enter manual review, so they come back pending.
Confirmation callbacks are form-encoded and signed with
``md5(apiKey~merchantId~reference_sale~value~currency~state_pol)``; the
unsigned fields (reference_pol, transaction_id) never select the order or
the dedup key on their own.
"""
from __future__ import annotations

import hashlib
import uuid
from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation
from typing import Any, Optional
from urllib.parse import parse_qsl

from application.dtos.payments import PaymentIntent, RefundRecord, WebhookEvent, WebhookRequest
from domain.payment.entity import PaymentStatus, RefundBalance, to_major, to_minor
from domain.payment.events import NormalizedEvent, PaymentStatusChanged
from domain.payment.exceptions import (
    GatewayCommunicationError,
    NotFoundError,
    PaymentDeclinedError,
    WebhookPayloadError,
)
from infrastructure.external.payments.base import BasePaymentClient


_DECLINED_STATES = {"DECLINED", "EXPIRED", "ERROR"}


def confirmation_value(value: str) -> str:
    """PayU's rule for the value used in confirmation signatures.

    One decimal when the second decimal is zero ("150.00" -> "150.0"),
    otherwise two ("150.25" -> "150.25").
    """
    amount = Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_EVEN)
    one_decimal = amount.quantize(Decimal("0.1"), rounding=ROUND_HALF_EVEN)
    if one_decimal == amount:
        return f"{one_decimal:.1f}"
    return f"{amount:.2f}"


class PayUClient(BasePaymentClient):
    provider = "payu"
    display_name = "PayU"
    credential_fields = ("api_key", "api_login", "merchant_id", "account_id")
    required_credentials = ("api_key", "api_login", "merchant_id", "account_id")
    option_fields = ("sandbox", "base_url", "country")
    # Confirmation signatures are keyed with the API key itself
    webhook_secret_field = None
    default_currencies = frozenset({"COP", "USD", "BRL", "MXN", "ARS", "PEN"})
    supports_partial_refunds = False
    sandbox_base_url = "https://sandbox.api.payulatam.com"
    live_base_url = "https://api.payulatam.com"

    payments_path = "/payments-api/4.0/service.cgi"
    reports_path = "/reports-api/4.0/service.cgi"

    def _command(self, command: str, **body: Any) -> dict[str, Any]:
        return {
            "language": "es",
            "command": command,
            "merchant": {
                "apiKey": self.config.credential("api_key"),
                "apiLogin": self.config.credential("api_login"),
            },
            "test": self.sandbox,
            **body,
        }

    def _ensure_success(self, data: dict[str, Any]) -> None:
        if data.get("code") != "SUCCESS":
            self._log("payu_command_error", error=data.get("error"))
            raise GatewayCommunicationError(
                str(data.get("error") or "PayU rejected the request"),
                provider=self.provider,
                retryable=False,
            )

    def _order_signature(self, reference: str, value: str, currency: str) -> str:
        raw = f"{self.config.credential('api_key')}~{self.config.credential('merchant_id')}~{reference}~{value}~{currency}"
        return hashlib.md5(raw.encode("utf-8")).hexdigest()

    async def _create(
        self, amount: int, currency: str, metadata: dict[str, Any], idempotency_key: Optional[str]
    ) -> PaymentIntent:
        reference = str(metadata.get("order_id") or idempotency_key or uuid.uuid4().hex)[:255]
        value = str(to_major(amount, currency))
        transaction: dict[str, Any] = {
            "order": {
                "accountId": self.config.credential("account_id"),
                "referenceCode": reference,
                "description": str(metadata.get("description") or reference)[:255],
                "language": "es",
                "signature": self._order_signature(reference, value, currency),
                "additionalValues": {"TX_VALUE": {"value": value, "currency": currency}},
            },
            "type": "AUTHORIZATION_AND_CAPTURE",
            "paymentMethod": metadata.get("payment_method", "PSE"),
            "paymentCountry": self.config.options.get("country", "CO"),
        }
        if metadata.get("buyer_email"):
            transaction["order"]["buyer"] = {"emailAddress": metadata["buyer_email"]}
            transaction["payer"] = {"emailAddress": metadata["buyer_email"]}
        if metadata.get("credit_card_token_id"):
            transaction["creditCardTokenId"] = metadata["credit_card_token_id"]
        if metadata.get("extra_parameters"):
            transaction["extraParameters"] = dict(metadata["extra_parameters"])
        if metadata.get("ip_address"):
            transaction["ipAddress"] = metadata["ip_address"]

        # referenceCode is not an idempotency key: never retried automatically
        data = await self._request(
            "POST",
            self.payments_path,
            json=self._command("SUBMIT_TRANSACTION", transaction=transaction),
            headers={"Accept": "application/json"},
        )
        self._ensure_success(data)
        tx = data.get("transactionResponse") or {}
        state = tx.get("state")
        if state in _DECLINED_STATES:
            raise PaymentDeclinedError(
                str(tx.get("responseMessage") or "PayU declined the transaction"),
                provider=self.provider,
                decline_code=tx.get("responseCode"),
            )
        extra = tx.get("extraParameters") or {}
        status = self._map_status(state)
        return PaymentIntent(
            intent_id=str(tx.get("orderId")),
            provider=self.provider,
            amount=amount,
            currency=currency,
            status=status,
            provider_status=state,
            amount_captured=amount if status is PaymentStatus.SUCCEEDED else 0,
            next_action_url=extra.get("BANK_URL") or extra.get("URL_PAYMENT_RECEIPT_HTML"),
            provider_ref=tx.get("transactionId"),
            metadata={**metadata, "reference": reference},
        )

    async def _fetch(self, intent_id: str) -> PaymentIntent:
        try:
            order_id = int(intent_id)
        except ValueError:
            raise NotFoundError(intent_id, provider=self.provider) from None
        data = await self._request(
            "POST",
            self.reports_path,
            idempotent=True,
            json=self._command("ORDER_DETAIL", details={"orderId": order_id}),
            headers={"Accept": "application/json"},
        )
        self._ensure_success(data)
        order = (data.get("result") or {}).get("payload")
        if not order:
            raise NotFoundError(intent_id, provider=self.provider)
        return self._to_intent(order)

    def _to_intent(self, order: dict[str, Any]) -> PaymentIntent:
        tx_value = (order.get("additionalValues") or {}).get("TX_VALUE") or {}
        currency = str(tx_value.get("currency") or "COP").upper()
        amount = to_minor(tx_value.get("value") or "0", currency)
        transactions = order.get("transactions") or []
        charge = next(
            (t for t in transactions if t.get("type") in ("AUTHORIZATION_AND_CAPTURE", "CAPTURE")),
            None,
        )
        charge_state = ((charge or {}).get("transactionResponse") or {}).get("state")
        refunded_tx = [
            t for t in transactions
            if t.get("type") == "REFUND" and (t.get("transactionResponse") or {}).get("state") in ("APPROVED", "PENDING")
        ]
        provider_status = order.get("status")
        status = self._map_status(provider_status)
        captured = amount if (provider_status in ("CAPTURED", "REFUNDED") or charge_state == "APPROVED") else 0
        refunded = amount if (provider_status == "REFUNDED" or refunded_tx) else 0
        if charge_state in _DECLINED_STATES:
            status = PaymentStatus.FAILED
        elif captured:
            status = RefundBalance(provider=self.provider, captured=captured, refunded=refunded).status()
        return PaymentIntent(
            intent_id=str(order.get("id")),
            provider=self.provider,
            amount=amount,
            currency=currency,
            status=status,
            provider_status=provider_status,
            amount_captured=captured,
            amount_refunded=min(refunded, captured),
            provider_ref=(charge or {}).get("id"),
            metadata={"reference": order.get("referenceCode")} if order.get("referenceCode") else {},
        )

    async def _refund(
        self,
        current: PaymentIntent,
        amount: int,
        balance: RefundBalance,
        reason: Optional[str],
        idempotency_key: Optional[str],
    ) -> RefundRecord:
        transaction = {
            "order": {"id": int(current.intent_id)},
            "type": "REFUND",
            "reason": reason or "Refund requested",
            "parentTransactionId": current.provider_ref,
        }
        data = await self._request(
            "POST",
            self.payments_path,
            json=self._command("SUBMIT_TRANSACTION", transaction=transaction),
            headers={"Accept": "application/json"},
        )
        self._ensure_success(data)
        tx = data.get("transactionResponse") or {}
        state = tx.get("state")
        refund_status = {"APPROVED": "succeeded", "PENDING": "pending"}.get(state, "failed")
        return self._refund_record(
            current,
            refund_id=str(tx.get("transactionId") or tx.get("orderId")),
            amount=amount,
            balance=balance,
            reason=reason,
            refund_status=refund_status,
        )

    # ------------------------------------------------------------------
    # Confirmation callbacks
    # ------------------------------------------------------------------
    @staticmethod
    def _form(request: WebhookRequest) -> dict[str, str]:
        return dict(parse_qsl(request.body.decode("utf-8"), keep_blank_values=True))

    def confirmation_signature(self, fields: dict[str, str]) -> str:
        raw = "~".join([
            self.config.credential("api_key") or "",
            fields.get("merchant_id", ""),
            fields.get("reference_sale", ""),
            confirmation_value(fields.get("value", "0")),
            fields.get("currency", ""),
            fields.get("state_pol", ""),
        ])
        return hashlib.md5(raw.encode("utf-8")).hexdigest()

    def verify_webhook_signature(self, request: WebhookRequest) -> bool:
        if not self.config.credential("api_key"):
            return False
        try:
            fields = self._form(request)
            expected = self.confirmation_signature(fields)
        except (UnicodeDecodeError, InvalidOperation, ValueError):
            return False
        if fields.get("merchant_id") != self.config.credential("merchant_id"):
            return False
        return self._signatures_match(expected, fields.get("sign"))

    def parse_webhook(self, request: WebhookRequest) -> WebhookEvent:
        try:
            fields = self._form(request)
        except UnicodeDecodeError as exc:
            raise WebhookPayloadError("PayU confirmation is not valid form data", provider=self.provider) from exc
        reference = fields.get("reference_sale")
        state = fields.get("state_pol")
        if not reference or not state:
            raise WebhookPayloadError("PayU confirmation without reference_sale or state_pol", provider=self.provider)
        # Only fields covered by the signature may form the dedup key
        return WebhookEvent(
            provider=self.provider,
            event_id=f"{reference}:{state}",
            event_type=f"confirmation.{state}",
            payload=fields,
        )

    async def _orders_by_reference(self, reference: str) -> list[dict[str, Any]]:
        data = await self._request(
            "POST",
            self.reports_path,
            idempotent=True,
            json=self._command("ORDER_DETAIL_BY_REFERENCE_CODE", details={"referenceCode": reference}),
            headers={"Accept": "application/json"},
        )
        self._ensure_success(data)
        return list((data.get("result") or {}).get("payload") or [])

    async def process_webhook(self, event: WebhookEvent) -> Optional[NormalizedEvent]:
        fields = event.payload
        reference = fields.get("reference_sale")
        orders = await self._orders_by_reference(reference)
        if not orders:
            raise WebhookPayloadError(f"No PayU order carries reference {reference}", provider=self.provider)
        # reference_pol is unsigned: it may only pick among orders holding the signed reference_sale
        order_id = str(fields.get("reference_pol") or "")
        order = next((o for o in orders if str(o.get("id")) == order_id), None)
        if order is None:
            order = max(orders, key=lambda o: int(o.get("id") or 0))
            self._log(
                "payu_confirmation_order_mismatch",
                reference_sale=reference,
                reference_pol=order_id or None,
                order_id=order.get("id"),
            )
        # transaction_date is merchant-local without offset; keep the receive time
        return PaymentStatusChanged(
            provider=self.provider,
            intent_id=str(order.get("id")),
            event_id=event.event_id,
            event_type=event.event_type,
            status=self._map_status(fields.get("state_pol")),
            occurred_at=event.received_at,
            provider_data={
                "transaction_id": fields.get("transaction_id"),
                "reference_sale": reference,
                "response_code_pol": fields.get("response_code_pol"),
            },
        )
