"""
Celery tasks for payment compensation: reconcile an intent whose outcome is
unknown (timeout, cancelled request) by reading it back from the provider.
"""
from __future__ import annotations

from celery import shared_task
import asyncio

from application.services.payment_service import PaymentService
from domain.payment.exceptions import GatewayCommunicationError
from infrastructure.external.payments.registry import get_default_registry
from infrastructure.tasks.utils.base_task import BaseTask
from core.logging_config import get_logger


logger = get_logger(__name__)


async def reconcile(provider: str, intent_id: str, *, service: PaymentService | None = None) -> dict:
    service = service or PaymentService(get_default_registry())
    intent = await service.reconcile(provider, intent_id)
    return {
        "provider": intent.provider,
        "intent_id": intent.intent_id,
        "status": intent.status.value,
        "amount_captured": intent.amount_captured,
        "amount_refunded": intent.amount_refunded,
    }


@shared_task(name="payments.reconcile_status", bind=True, base=BaseTask, max_retries=5, default_retry_delay=30)
def task_reconcile_status(self, provider: str, intent_id: str):
    try:
        result = asyncio.run(reconcile(provider, intent_id))
    except GatewayCommunicationError as exc:
        if not exc.retryable:
            raise
        logger.warning("payment_reconcile_deferred", provider=provider, intent_id=intent_id, error=exc.message)
        raise self.retry(exc=exc)
    logger.info("payment_status_reconciled", provider=provider, intent_id=intent_id, status=result["status"])
    return result
