"""In-memory implementation of PaymentEventDispatcher.

Single-process only. Handlers run sequentially; the first failure
propagates so the pipeline can release its claim and ask for redelivery.
"""
from __future__ import annotations

from typing import Awaitable, Callable, List
import asyncio

from application.ports.webhooks import PaymentEventDispatcher
from domain.payment.events import NormalizedEvent
from core.logging_config import get_logger

Handler = Callable[[NormalizedEvent], Awaitable[None]]

logger = get_logger(__name__)


class InMemoryEventDispatcher(PaymentEventDispatcher):
    def __init__(self) -> None:
        self._handlers: List[Handler] = []
        self._lock = asyncio.Lock()

    async def dispatch(self, event: NormalizedEvent) -> None:  # type: ignore[override]
        async with self._lock:
            handlers = list(self._handlers)
        for h in handlers:
            await h(event)
        logger.info(
            "payment_event_dispatched",
            provider=event.provider,
            event_id=event.event_id,
            kind=event.kind,
            status=event.status.value,
        )

    async def subscribe(self, handler: Handler) -> None:
        async with self._lock:
            self._handlers.append(handler)

    async def aclose(self) -> None:
        async with self._lock:
            self._handlers.clear()
