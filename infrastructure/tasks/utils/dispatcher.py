"""Small dispatching helpers to decouple Celery from callers."""
from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from celery import Celery

from application.ports.webhooks import PaymentEventDispatcher
from domain.payment.events import NormalizedEvent
from core.logging_config import get_logger
from ..config.celery import celery_app


logger = get_logger(__name__)


class TaskDispatcher:
    """Internal facade used by application layer to schedule tasks."""

    def __init__(self, app: Optional[Celery] = None) -> None:
        self.app = app or celery_app

    def enqueue(
        self,
        task_name: str,
        *,
        args: tuple | None = None,
        kwargs: Dict[str, Any] | None = None,
        queue: str | None = None,
    ) -> str:
        """Schedule a task by name and return its id."""
        result = self.app.send_task(task_name, args=args or (), kwargs=kwargs or {}, queue=queue)
        return result.id

    def schedule_reconcile(self, provider: str, intent_id: str, *, countdown: int = 30) -> None:
        """Poll the provider later for an intent whose outcome is unknown."""
        self.app.send_task(
            "payments.reconcile_status",
            kwargs={"provider": provider, "intent_id": intent_id},
            countdown=countdown,
        )


class CeleryEventDispatcher(PaymentEventDispatcher):
    """Hands normalized events to the orchestration consumer through Celery.

    Broker errors propagate; the webhook pipeline then releases its claim
    and asks the provider to redeliver.
    """

    def __init__(self, task_name: str = "payments.apply_event", *, dispatcher: Optional[TaskDispatcher] = None) -> None:
        self.task_name = task_name
        self._dispatcher = dispatcher or TaskDispatcher()

    async def dispatch(self, event: NormalizedEvent) -> None:  # type: ignore[override]
        message = event.to_message()
        task_id = await asyncio.to_thread(
            self._dispatcher.enqueue,
            self.task_name,
            kwargs={"event": message},
            queue="high",
        )
        logger.info(
            "payment_event_enqueued",
            provider=event.provider,
            event_id=event.event_id,
            kind=event.kind,
            task_id=task_id,
        )
