"""Webhook dedup stores keyed by (provider, event_id).

A key is either ``processing`` (claimed, expires after the processing TTL so
a crashed worker does not block redelivery forever) or ``done`` (kept for
the retention window).
"""
from __future__ import annotations

import asyncio
import time
import uuid
from typing import Callable

from application.ports.webhooks import WebhookDedupStore
from infrastructure.cache.redis_cache import RedisCache

PROCESSING = "processing"
DONE = "done"


def dedup_key(provider: str, event_id: str) -> str:
    return f"webhook:{provider}:{event_id}"


class InMemoryWebhookDedupStore(WebhookDedupStore):
    """Single-process store. Useful for local dev and tests.

    Expired keys are swept during ``claim`` at most once per processing TTL,
    so the map stays bounded by the events seen within the retention window.
    """

    def __init__(
        self,
        *,
        processing_ttl: float = 300,
        retention: float = 7 * 24 * 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: dict[str, tuple[str, float]] = {}
        self._processing_ttl = processing_ttl
        self._retention = retention
        self._clock = clock
        self._lock = asyncio.Lock()
        self._next_sweep = float("-inf")

    def __len__(self) -> int:
        return len(self._entries)

    def _sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self._processing_ttl

    async def claim(self, provider: str, event_id: str) -> bool:  # type: ignore[override]
        key = dedup_key(provider, event_id)
        async with self._lock:
            now = self._clock()
            self._sweep(now)
            entry = self._entries.get(key)
            if entry is not None and entry[1] > now:
                return False
            self._entries[key] = (PROCESSING, now + self._processing_ttl)
            return True

    async def complete(self, provider: str, event_id: str) -> None:  # type: ignore[override]
        async with self._lock:
            self._entries[dedup_key(provider, event_id)] = (DONE, self._clock() + self._retention)

    async def release(self, provider: str, event_id: str) -> None:  # type: ignore[override]
        key = dedup_key(provider, event_id)
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[0] == PROCESSING:
                del self._entries[key]

    async def state(self, provider: str, event_id: str) -> str | None:
        async with self._lock:
            entry = self._entries.get(dedup_key(provider, event_id))
            if entry is None or entry[1] <= self._clock():
                return None
            return entry[0]


class RedisWebhookDedupStore(WebhookDedupStore):
    """Shared store: claim is a single ``SET key processing:<token> NX EX ttl``.

    Each claim carries a token remembered by this store instance; release
    deletes the key only while it still holds that token, so a claim that
    expired and was taken by another worker is left alone.
    """

    def __init__(self, cache: RedisCache, *, processing_ttl: int = 300, retention: int = 7 * 24 * 3600) -> None:
        self._cache = cache
        self._processing_ttl = processing_ttl
        self._retention = retention
        self._tokens: dict[str, str] = {}

    async def claim(self, provider: str, event_id: str) -> bool:  # type: ignore[override]
        key = dedup_key(provider, event_id)
        token = f"{PROCESSING}:{uuid.uuid4().hex}"
        if not await self._cache.set_if_absent(key, token, ttl=self._processing_ttl):
            return False
        self._tokens[key] = token
        return True

    async def complete(self, provider: str, event_id: str) -> None:  # type: ignore[override]
        key = dedup_key(provider, event_id)
        self._tokens.pop(key, None)
        await self._cache.set(key, DONE, ttl=self._retention)

    async def release(self, provider: str, event_id: str) -> None:  # type: ignore[override]
        key = dedup_key(provider, event_id)
        token = self._tokens.pop(key, None)
        # Nothing claimed here, or already completed
        if token is None:
            return
        await self._cache.delete_if_equals(key, token)
