"""
Webhook pipeline ports (deduplication store, event dispatcher) and the
reconcile scheduler used after ambiguous provider calls.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from domain.payment.events import NormalizedEvent


@runtime_checkable
class WebhookDedupStore(Protocol):
    """Atomic check-and-mark keyed by (provider, event_id).

    `claim` returns True for exactly one caller per key until the claim is
    released. A completed key stays claimed for the retention window.
    """

    async def claim(self, provider: str, event_id: str) -> bool: ...

    async def complete(self, provider: str, event_id: str) -> None: ...

    async def release(self, provider: str, event_id: str) -> None: ...


@runtime_checkable
class PaymentEventDispatcher(Protocol):
    async def dispatch(self, event: NormalizedEvent) -> None: ...


@runtime_checkable
class ReconcileScheduler(Protocol):
    """Schedules a later read-back of an intent whose outcome is unknown."""

    def schedule_reconcile(self, provider: str, intent_id: str, *, countdown: int = 30) -> None: ...
