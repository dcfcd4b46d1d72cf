"""
Base payment client implementing shared concerns: http, retry, logging, mapping.

Concrete providers subclass and implement the provider-specific hooks
(`_create`, `_fetch`, `_confirm`, `_refund` and the webhook trio). The
public contract methods live here so that validation, configuration gating,
confirm idempotence and refund bounds behave the same for every provider.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Awaitable, Callable, Mapping, Optional
from contextlib import asynccontextmanager

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from core.logging_config import get_logger
from application.dtos.payments import (
    GatewayConfig,
    PaymentIntent,
    RefundRecord,
    WebhookEvent,
    WebhookRequest,
)
from application.ports.payment_gateway import PaymentGateway
from domain.common.exceptions import DomainValidationException
from domain.payment.entity import (
    PaymentStatus,
    RefundBalance,
    ensure_positive_amount,
    normalize_currency,
)
from domain.payment.events import NormalizedEvent
from domain.payment.exceptions import (
    ConfigurationError,
    GatewayCommunicationError,
    InvalidRefundAmountError,
    NotFoundError,
    PaymentDeclinedError,
    UnsupportedCurrencyError,
    WebhookPayloadError,
)
from shared.codes.payment_codes import PROVIDER_STATUS_TO_INTERNAL


logger = get_logger(__name__)

DEFAULT_TIMEOUTS = {"connect": 1.0, "read": 3.0, "write": 3.0, "total": 5.0}
DEFAULT_RETRY = {"max": 2, "base": 0.2}
REDACTED = "***"


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, GatewayCommunicationError) and exc.retryable


class BasePaymentClient(PaymentGateway):
    provider: str = "base"
    display_name: str = "Base"
    # Credential names read from the provider's configuration block
    credential_fields: tuple[str, ...] = ()
    required_credentials: tuple[str, ...] = ()
    # Non-secret knobs copied into GatewayConfig.options
    option_fields: tuple[str, ...] = ("sandbox", "base_url")
    webhook_secret_field: Optional[str] = "webhook_secret"
    default_currencies: frozenset[str] = frozenset()
    supports_partial_refunds: bool = True
    # Keys a caller may pass through confirm_payment(extra=...)
    confirm_fields: frozenset[str] = frozenset()
    sandbox_base_url: str = ""
    live_base_url: str = ""

    def __init__(
        self,
        config: GatewayConfig,
        *,
        timeouts: Optional[Mapping[str, float]] = None,
        retry: Optional[Mapping[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self._timeouts_cfg = {**DEFAULT_TIMEOUTS, **dict(timeouts or {})}
        self._retry_cfg = {**DEFAULT_RETRY, **dict(retry or {})}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    @classmethod
    def build_config(cls, section: Optional[Mapping[str, Any]], **options: Any) -> GatewayConfig:
        """Build this provider's GatewayConfig from its settings block."""
        section = dict(section or {})
        opts = {name: section[name] for name in cls.option_fields if section.get(name) is not None}
        opts.update({k: v for k, v in options.items() if v is not None})
        return GatewayConfig(
            provider=cls.provider,
            enabled=bool(section.get("enabled", False)),
            credentials={name: section.get(name) for name in cls.credential_fields},
            webhook_secret=section.get(cls.webhook_secret_field) if cls.webhook_secret_field else None,
            supported_currencies=section.get("currencies") or cls.default_currencies,
            options=opts,
        )

    @classmethod
    def missing_credentials(cls, config: GatewayConfig) -> list[str]:
        return [name for name in cls.required_credentials if not config.credential(name)]

    @classmethod
    def is_configured_for(cls, config: GatewayConfig) -> bool:
        return not cls.missing_credentials(config)

    def is_configured(self) -> bool:
        return self.is_configured_for(self.config)

    def get_supported_currencies(self) -> frozenset[str]:
        return self.config.supported_currencies or self.default_currencies

    def get_config(self) -> dict[str, Any]:
        """Configuration view safe to log or return: secrets are masked."""
        return {
            "provider": self.provider,
            "display_name": self.display_name,
            "enabled": self.config.enabled,
            "configured": self.is_configured(),
            "sandbox": self.sandbox,
            "base_url": self.base_url,
            "supported_currencies": sorted(self.get_supported_currencies()),
            "credentials": {k: (REDACTED if v else None) for k, v in self.config.credentials.items()},
            "webhook_secret": REDACTED if self.config.webhook_secret else None,
        }

    @property
    def sandbox(self) -> bool:
        return bool(self.config.options.get("sandbox", True))

    @property
    def base_url(self) -> str:
        override = self.config.options.get("base_url")
        if override:
            return str(override)
        return self.sandbox_base_url if self.sandbox else self.live_base_url

    @property
    def webhook_tolerance(self) -> int:
        return int(self.config.options.get("webhook_tolerance_seconds", 300))

    def _ensure_configured(self) -> None:
        missing = self.missing_credentials(self.config)
        if missing:
            raise ConfigurationError(
                f"{self.display_name} is not configured",
                provider=self.provider,
                missing=missing,
            )

    def _validate_amount_currency(self, amount: int, currency: str) -> str:
        ensure_positive_amount(amount)
        code = normalize_currency(currency)
        supported = self.get_supported_currencies()
        if code not in supported:
            raise UnsupportedCurrencyError(code, provider=self.provider, supported=sorted(supported))
        return code

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------
    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            pool=self._timeouts_cfg["total"],
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeouts,
                transport=self._transport,
            )
        try:
            yield self._client
        finally:
            # Keep open for reuse; explicit aclose() will close.
            ...

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Awaitable[Any]]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        idempotent: bool = False,
        not_found_id: Optional[str] = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Send one provider request and translate failures into the taxonomy.

        Only idempotent calls are retried: reads, and writes carrying a
        provider idempotency key.
        """

        async def send() -> dict[str, Any]:
            async with self.client() as client:
                try:
                    response = await client.request(method, url, **kwargs)
                except httpx.TimeoutException as exc:
                    raise GatewayCommunicationError(
                        f"{self.display_name} request timed out; reconcile with get_payment_status",
                        provider=self.provider,
                        retryable=True,
                    ) from exc
                except httpx.TransportError as exc:
                    raise GatewayCommunicationError(
                        f"{self.display_name} is unreachable",
                        provider=self.provider,
                        retryable=True,
                    ) from exc
            if response.is_success:
                return self._decode(response)
            self._raise_for_response(response, not_found_id=not_found_id)
            return {}

        if idempotent:
            return await self._retry(send)
        return await send()

    def _decode(self, response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayCommunicationError(
                f"{self.display_name} returned an unreadable response",
                provider=self.provider,
                retryable=False,
                status_code=response.status_code,
            ) from exc
        return data if isinstance(data, dict) else {"data": data}

    def _error_message(self, response: httpx.Response) -> tuple[str, Optional[str]]:
        """Human readable message and provider error code from an error body."""
        try:
            body = response.json()
        except ValueError:
            return f"{self.display_name} request failed", None
        if isinstance(body, dict):
            message = body.get("message") or body.get("error_description") or body.get("error")
            if isinstance(message, dict):
                message = message.get("message") or message.get("type")
            code = body.get("code") or body.get("name")
            if message:
                return str(message), str(code) if code else None
        return f"{self.display_name} request failed", None

    def _raise_for_response(self, response: httpx.Response, *, not_found_id: Optional[str] = None) -> None:
        status = response.status_code
        message, provider_code = self._error_message(response)
        # Raw provider bodies go to logs only, never to callers
        logger.warning(
            "payment_provider_error",
            provider=self.provider,
            status_code=status,
            provider_code=provider_code,
            body=response.text[:500],
        )
        if status == 404 and not_found_id is not None:
            raise NotFoundError(not_found_id, provider=self.provider)
        if status == 402:
            raise PaymentDeclinedError(message, provider=self.provider, decline_code=provider_code)
        if status in (401, 403):
            raise GatewayCommunicationError(
                f"{self.display_name} rejected the credentials",
                provider=self.provider,
                retryable=False,
                status_code=status,
            )
        retryable = status in (408, 409, 425, 429) or status >= 500
        raise GatewayCommunicationError(message, provider=self.provider, retryable=retryable, status_code=status)

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------
    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Optional[dict[str, Any]] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        self._ensure_configured()
        code = self._validate_amount_currency(amount, currency)
        self._log("provider_create_request", amount=amount, currency=code, idempotency_key=idempotency_key)
        intent = await self._create(amount, code, dict(metadata or {}), idempotency_key)
        self._log("provider_create_response", intent_id=intent.intent_id, status=intent.status.value)
        return intent

    async def confirm_payment(self, intent_id: str, extra: Optional[dict[str, Any]] = None) -> PaymentIntent:
        self._ensure_configured()
        extra = dict(extra or {})
        unsupported = sorted(set(extra) - self.confirm_fields)
        if unsupported:
            raise DomainValidationException(
                f"Unsupported confirm parameters for {self.display_name}: {', '.join(unsupported)}",
                field="extra",
                details={"provider": self.provider, "unsupported": unsupported},
            )
        current = await self._fetch(intent_id)
        if current.status.is_final() or not self._needs_confirmation(current):
            self._log("provider_confirm_noop", intent_id=intent_id, status=current.status.value)
            return current
        intent = await self._confirm(current, extra)
        self._check_transition(current, intent.status, "confirm_payment")
        self._log("provider_confirm_response", intent_id=intent_id, status=intent.status.value)
        return intent

    async def get_payment_status(self, intent_id: str) -> PaymentIntent:
        self._ensure_configured()
        return await self._fetch(intent_id)

    async def refund_payment(
        self,
        intent_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> RefundRecord:
        self._ensure_configured()
        current = await self._fetch(intent_id)
        balance = RefundBalance(
            provider=self.provider,
            captured=current.amount_captured,
            refunded=current.amount_refunded,
        )
        to_refund = balance.resolve(amount)
        if not self.supports_partial_refunds and to_refund != balance.remaining:
            raise InvalidRefundAmountError(
                f"{self.display_name} only supports refunding the full captured amount",
                provider=self.provider,
                requested=to_refund,
                refundable=balance.remaining,
            )
        self._log("provider_refund_request", intent_id=intent_id, amount=to_refund, idempotency_key=idempotency_key)
        record = await self._refund(current, to_refund, balance, reason, idempotency_key)
        self._check_transition(current, record.status, "refund_payment")
        self._log(
            "provider_refund_response",
            intent_id=intent_id,
            refund_id=record.refund_id,
            refund_status=record.refund_status,
            remaining_refundable=record.remaining_refundable,
        )
        return record

    def verify_webhook_signature(self, request: WebhookRequest) -> bool:
        raise NotImplementedError

    def parse_webhook(self, request: WebhookRequest) -> WebhookEvent:
        raise NotImplementedError

    async def process_webhook(self, event: WebhookEvent) -> Optional[NormalizedEvent]:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Provider hooks
    # ------------------------------------------------------------------
    async def _create(
        self, amount: int, currency: str, metadata: dict[str, Any], idempotency_key: Optional[str]
    ) -> PaymentIntent:
        raise NotImplementedError

    async def _fetch(self, intent_id: str) -> PaymentIntent:
        raise NotImplementedError

    async def _confirm(self, current: PaymentIntent, extra: dict[str, Any]) -> PaymentIntent:
        # Providers without a separate confirm step: payer action happens off-band
        return current

    async def _refund(
        self,
        current: PaymentIntent,
        amount: int,
        balance: RefundBalance,
        reason: Optional[str],
        idempotency_key: Optional[str],
    ) -> RefundRecord:
        raise NotImplementedError

    def _needs_confirmation(self, intent: PaymentIntent) -> bool:
        return intent.status is PaymentStatus.REQUIRES_ACTION

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _map_status(self, provider_status: Optional[str]) -> PaymentStatus:
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(self.provider, {})
        mapped = mapping.get(str(provider_status)) if provider_status is not None else None
        if mapped is None:
            if provider_status is not None:
                logger.warning("payment_unknown_provider_status", provider=self.provider, provider_status=provider_status)
            return PaymentStatus.PROCESSING
        return PaymentStatus(mapped)

    def _check_transition(self, current: PaymentIntent, status: PaymentStatus, operation: str) -> None:
        """Flag provider answers that move an intent backwards; the provider state still wins."""
        if current.status.can_transition_to(status):
            return
        logger.warning(
            "payment_status_regression",
            provider=self.provider,
            intent_id=current.intent_id,
            operation=operation,
            from_status=current.status.value,
            to_status=status.value,
        )

    def _refund_record(
        self,
        current: PaymentIntent,
        *,
        refund_id: str,
        amount: int,
        balance: RefundBalance,
        reason: Optional[str],
        refund_status: str,
    ) -> RefundRecord:
        after = balance if refund_status == "failed" else balance.apply(amount)
        return RefundRecord(
            intent_id=current.intent_id,
            provider=self.provider,
            refund_id=refund_id,
            amount=amount,
            reason=reason,
            status=after.status() if refund_status != "failed" else current.status,
            refund_status=refund_status,
            remaining_refundable=after.remaining,
        )

    def _load_json(self, request: WebhookRequest) -> dict[str, Any]:
        try:
            payload = json.loads(request.body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise WebhookPayloadError("Webhook body is not valid JSON", provider=self.provider) from exc
        if not isinstance(payload, dict):
            raise WebhookPayloadError("Webhook body must be a JSON object", provider=self.provider)
        return payload

    @staticmethod
    def _hmac_sha256_hex(secret: str, message: bytes) -> str:
        return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

    @staticmethod
    def _signatures_match(expected: str, provided: Optional[str]) -> bool:
        if not provided:
            return False
        return hmac.compare_digest(expected.lower().encode("utf-8"), provided.strip().lower().encode("utf-8"))

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
