"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    GatewayDescriptor,
    PaymentIntent,
    RefundRecord,
    WebhookEvent,
    WebhookRequest,
)
from domain.payment.events import NormalizedEvent


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for third-party payment providers.

    Network operations are async. Signature verification, parsing and the
    configuration queries are local and never perform I/O.
    """

    provider: str
    display_name: str

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Optional[dict[str, Any]] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent: ...

    async def confirm_payment(self, intent_id: str, extra: Optional[dict[str, Any]] = None) -> PaymentIntent: ...

    async def get_payment_status(self, intent_id: str) -> PaymentIntent: ...

    async def refund_payment(
        self,
        intent_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> RefundRecord: ...

    def verify_webhook_signature(self, request: WebhookRequest) -> bool: ...

    def parse_webhook(self, request: WebhookRequest) -> WebhookEvent: ...

    async def process_webhook(self, event: WebhookEvent) -> Optional[NormalizedEvent]: ...

    def get_supported_currencies(self) -> frozenset[str]: ...

    def get_config(self) -> dict[str, Any]: ...

    def is_configured(self) -> bool: ...

    async def aclose(self) -> None: ...


@runtime_checkable
class GatewayRegistry(Protocol):
    """Builds adapters by provider id and reports which ones are enabled."""

    def create(self, provider_id: str) -> PaymentGateway: ...

    def is_supported(self, provider_id: str) -> bool: ...

    def is_enabled(self, provider_id: str) -> bool: ...

    def list_available(self) -> list[GatewayDescriptor]: ...

    def list_enabled(self) -> list[GatewayDescriptor]: ...
