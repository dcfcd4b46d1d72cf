"""
Application service orchestrating payment use-cases.

This class depends only on the gateway registry and DTOs. Each call resolves
an adapter for the requested provider, bounds the provider round-trips with a
single timeout and closes the adapter afterwards. No lock is held while a
provider call is in flight.
"""
from __future__ import annotations

import asyncio
import hashlib
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Optional, TypeVar

from application.dtos.payments import (
    CreatePayment,
    GatewayDescriptor,
    PaymentIntent,
    RefundRecord,
    RefundRequest,
)
from application.ports.payment_gateway import GatewayRegistry, PaymentGateway
from application.ports.webhooks import ReconcileScheduler
from domain.payment.exceptions import ConfigurationError, GatewayCommunicationError
from core.logging_config import get_logger


logger = get_logger(__name__)

T = TypeVar("T")

# Metadata keys that identify a business operation well enough to derive a key
_IDEMPOTENCY_HINTS = ("idempotency_hint", "order_id", "cart_id")


def derive_create_key(provider: str, req: CreatePayment) -> Optional[str]:
    """Stable, reproducible key from business identifiers (no timestamp).

    Returns None when the metadata carries no business identifier: hashing
    amount and currency alone would merge unrelated payments.
    """
    if req.idempotency_key:
        return req.idempotency_key
    meta = req.metadata or {}
    hints = [f"{k}={meta[k]}" for k in _IDEMPOTENCY_HINTS if meta.get(k) not in (None, "")]
    if not hints:
        return None
    base = f"create|{provider}|{req.amount}|{req.currency}|{'|'.join(hints)}"
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


def derive_refund_key(provider: str, intent_id: str, req: RefundRequest) -> Optional[str]:
    """Only a full refund is unique per intent; partial refunds need a caller key."""
    if req.idempotency_key:
        return req.idempotency_key
    if req.amount is not None:
        return None
    base = f"refund|{provider}|{intent_id}|full"
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


class PaymentService:
    def __init__(
        self,
        registry: GatewayRegistry,
        *,
        timeout: float = 15.0,
        reconcile_scheduler: Optional[ReconcileScheduler] = None,
        reconcile_countdown: int = 30,
    ) -> None:
        self.registry = registry
        self.timeout = timeout
        self.reconcile_scheduler = reconcile_scheduler
        self.reconcile_countdown = reconcile_countdown

    def _normalize(self, provider: str) -> str:
        return (provider or "").strip().lower()

    @asynccontextmanager
    async def _gateway(self, provider: str, *, require_enabled: bool = True) -> AsyncIterator[PaymentGateway]:
        gateway = self.registry.create(provider)
        if require_enabled and not self.registry.is_enabled(provider):
            await gateway.aclose()
            raise ConfigurationError(f"Payment gateway {provider} is not enabled", provider=provider)
        try:
            yield gateway
        finally:
            await gateway.aclose()

    async def _schedule_reconcile(self, provider: str, intent_id: str, operation: str) -> None:
        if self.reconcile_scheduler is None:
            return
        try:
            await asyncio.to_thread(
                self.reconcile_scheduler.schedule_reconcile,
                provider,
                intent_id,
                countdown=self.reconcile_countdown,
            )
        except Exception:
            # The caller still gets the original error and can reconcile by hand
            logger.exception("payment_reconcile_schedule_failed", provider=provider, intent_id=intent_id)
            return
        logger.info("payment_reconcile_scheduled", provider=provider, intent_id=intent_id, operation=operation)

    async def _bounded(
        self,
        provider: str,
        operation: str,
        call: Awaitable[T],
        *,
        reconcile_intent: Optional[str] = None,
    ) -> T:
        """Await one contract operation within the operation timeout.

        When `reconcile_intent` is given, a timed-out or cancelled call also
        schedules a read-back of that intent, since the provider may have
        applied it.
        """
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("payment_operation_timeout", provider=provider, operation=operation, timeout=self.timeout)
            if reconcile_intent:
                await self._schedule_reconcile(provider, reconcile_intent, operation)
            raise GatewayCommunicationError(
                f"{operation} timed out; reconcile with get_payment_status",
                provider=provider,
                retryable=True,
            ) from exc
        except asyncio.CancelledError:
            logger.warning("payment_operation_cancelled", provider=provider, operation=operation)
            if reconcile_intent:
                await self._schedule_reconcile(provider, reconcile_intent, operation)
            raise

    async def create_payment(self, provider: str, req: CreatePayment) -> PaymentIntent:
        provider = self._normalize(provider)
        key = derive_create_key(provider, req)
        logger.info(
            "payment_create_request",
            provider=provider,
            amount=req.amount,
            currency=req.currency,
            idempotency_key=key,
        )
        async with self._gateway(provider) as gateway:
            intent = await self._bounded(
                provider,
                "create_payment_intent",
                gateway.create_payment_intent(req.amount, req.currency, req.metadata, idempotency_key=key),
            )
        logger.info(
            "payment_create_response",
            provider=provider,
            intent_id=intent.intent_id,
            status=intent.status.value,
        )
        return intent

    async def confirm_payment(self, provider: str, intent_id: str, extra: Optional[dict[str, Any]] = None) -> PaymentIntent:
        provider = self._normalize(provider)
        logger.info("payment_confirm_request", provider=provider, intent_id=intent_id)
        async with self._gateway(provider) as gateway:
            intent = await self._bounded(
                provider,
                "confirm_payment",
                gateway.confirm_payment(intent_id, extra),
                reconcile_intent=intent_id,
            )
        logger.info("payment_confirm_response", provider=provider, intent_id=intent_id, status=intent.status.value)
        return intent

    async def get_payment_status(self, provider: str, intent_id: str) -> PaymentIntent:
        provider = self._normalize(provider)
        logger.info("payment_query_request", provider=provider, intent_id=intent_id)
        async with self._gateway(provider) as gateway:
            return await self._bounded(provider, "get_payment_status", gateway.get_payment_status(intent_id))

    async def refund_payment(self, provider: str, intent_id: str, req: RefundRequest) -> RefundRecord:
        provider = self._normalize(provider)
        key = derive_refund_key(provider, intent_id, req)
        logger.info(
            "payment_refund_request",
            provider=provider,
            intent_id=intent_id,
            amount=req.amount,
            idempotency_key=key,
        )
        async with self._gateway(provider) as gateway:
            record = await self._bounded(
                provider,
                "refund_payment",
                gateway.refund_payment(intent_id, req.amount, req.reason, idempotency_key=key),
                reconcile_intent=intent_id,
            )
        logger.info(
            "payment_refund_response",
            provider=provider,
            intent_id=intent_id,
            refund_id=record.refund_id,
            status=record.status.value,
            remaining_refundable=record.remaining_refundable,
        )
        return record

    async def reconcile(self, provider: str, intent_id: str) -> PaymentIntent:
        """Read the authoritative state after an ambiguous or cancelled call.

        Works for gateways that were disabled after the payment was made.
        """
        provider = self._normalize(provider)
        async with self._gateway(provider, require_enabled=False) as gateway:
            intent = await self._bounded(provider, "get_payment_status", gateway.get_payment_status(intent_id))
        logger.info("payment_reconciled", provider=provider, intent_id=intent_id, status=intent.status.value)
        return intent

    def list_gateways(self, *, enabled_only: bool = False) -> list[GatewayDescriptor]:
        if enabled_only:
            return self.registry.list_enabled()
        return self.registry.list_available()
