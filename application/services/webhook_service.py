"""
Webhook ingestion pipeline.

received -> signature_checked -> {rejected | deduplicated | normalized} -> dispatched

Signature verification runs on the raw body before anything else. The dedup
claim is an atomic check-and-mark, so concurrent deliveries of one event
produce exactly one dispatch. Infrastructure failures release the claim and
answer 503 so the provider redelivers; domain-level oddities are acknowledged.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from application.dtos.payments import WebhookEvent, WebhookRequest
from application.ports.payment_gateway import GatewayRegistry, PaymentGateway
from application.ports.webhooks import PaymentEventDispatcher, WebhookDedupStore
from domain.payment.events import NormalizedEvent
from domain.payment.exceptions import GatewayCommunicationError, WebhookPayloadError
from core.logging_config import get_logger


logger = get_logger(__name__)


class WebhookOutcome(str, Enum):
    DISPATCHED = "dispatched"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    RETRY = "retry"


_HTTP_STATUS = {
    WebhookOutcome.DISPATCHED: 200,
    WebhookOutcome.IGNORED: 200,
    WebhookOutcome.DUPLICATE: 200,
    WebhookOutcome.REJECTED: 400,
    WebhookOutcome.RETRY: 503,
}


@dataclass(frozen=True)
class WebhookResult:
    outcome: WebhookOutcome
    provider: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    event: Optional[NormalizedEvent] = None
    reason: Optional[str] = None

    @property
    def acknowledged(self) -> bool:
        return _HTTP_STATUS[self.outcome] == 200

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.outcome]


class WebhookPipeline:
    def __init__(
        self,
        registry: GatewayRegistry,
        dedup_store: WebhookDedupStore,
        dispatcher: PaymentEventDispatcher,
    ) -> None:
        self.registry = registry
        self.dedup_store = dedup_store
        self.dispatcher = dispatcher

    async def handle(self, provider_id: str, request: WebhookRequest) -> WebhookResult:
        """Run one delivery through the pipeline.

        Raises UnsupportedGatewayError for unknown providers; every other
        outcome is reported through the returned WebhookResult.
        """
        gateway = self.registry.create(provider_id)
        try:
            return await self._handle(gateway, request)
        finally:
            await gateway.aclose()

    async def _handle(self, gateway: PaymentGateway, request: WebhookRequest) -> WebhookResult:
        provider = gateway.provider
        logger.info("webhook_received", provider=provider, body_size=len(request.body))

        if not gateway.verify_webhook_signature(request):
            logger.warning("webhook_signature_rejected", provider=provider)
            return WebhookResult(WebhookOutcome.REJECTED, provider, reason="invalid_signature")

        try:
            event = gateway.parse_webhook(request)
        except WebhookPayloadError as exc:
            logger.info("webhook_ignored", provider=provider, reason=str(exc))
            return WebhookResult(WebhookOutcome.IGNORED, provider, reason=str(exc))

        if not await self.dedup_store.claim(provider, event.event_id):
            logger.info("webhook_duplicate", provider=provider, event_id=event.event_id, event_type=event.event_type)
            return self._result(WebhookOutcome.DUPLICATE, event, reason="already_processed")

        try:
            normalized = await gateway.process_webhook(event)
        except WebhookPayloadError as exc:
            await self.dedup_store.complete(provider, event.event_id)
            logger.info("webhook_ignored", provider=provider, event_id=event.event_id, reason=str(exc))
            return self._result(WebhookOutcome.IGNORED, event, reason=str(exc))
        except asyncio.CancelledError:
            await self.dedup_store.release(provider, event.event_id)
            raise
        except GatewayCommunicationError as exc:
            return await self._retry(event, exc.message)
        except Exception as exc:
            logger.exception("webhook_processing_failed", provider=provider, event_id=event.event_id)
            return await self._retry(event, type(exc).__name__)

        if normalized is None:
            await self.dedup_store.complete(provider, event.event_id)
            logger.info("webhook_ignored", provider=provider, event_id=event.event_id, event_type=event.event_type)
            return self._result(WebhookOutcome.IGNORED, event, reason="unhandled_event_type")

        try:
            await self.dispatcher.dispatch(normalized)
        except asyncio.CancelledError:
            await self.dedup_store.release(provider, event.event_id)
            raise
        except Exception as exc:
            logger.exception("webhook_dispatch_failed", provider=provider, event_id=event.event_id)
            return await self._retry(event, type(exc).__name__)

        try:
            await self.dedup_store.complete(provider, event.event_id)
        except Exception:
            # Dispatched already; the processing claim still blocks redelivery until it expires
            logger.exception("webhook_dedup_complete_failed", provider=provider, event_id=event.event_id)

        logger.info(
            "webhook_dispatched",
            provider=provider,
            event_id=event.event_id,
            event_type=event.event_type,
            intent_id=normalized.intent_id,
            status=normalized.status.value,
        )
        return self._result(WebhookOutcome.DISPATCHED, event, normalized=normalized)

    async def _retry(self, event: WebhookEvent, reason: str) -> WebhookResult:
        await self.dedup_store.release(event.provider, event.event_id)
        logger.warning("webhook_retry", provider=event.provider, event_id=event.event_id, reason=reason)
        return self._result(WebhookOutcome.RETRY, event, reason=reason)

    @staticmethod
    def _result(
        outcome: WebhookOutcome,
        event: WebhookEvent,
        *,
        normalized: Optional[NormalizedEvent] = None,
        reason: Optional[str] = None,
    ) -> WebhookResult:
        return WebhookResult(
            outcome=outcome,
            provider=event.provider,
            event_id=event.event_id,
            event_type=event.event_type,
            event=normalized,
            reason=reason,
        )
