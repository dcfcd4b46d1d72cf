"""Webhook pipeline backends: dedup stores and event dispatchers."""
from .dedup import InMemoryWebhookDedupStore, RedisWebhookDedupStore
from .dispatchers import InMemoryEventDispatcher

__all__ = [
    "InMemoryWebhookDedupStore",
    "RedisWebhookDedupStore",
    "InMemoryEventDispatcher",
]
