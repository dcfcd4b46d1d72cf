"""
ConfigSource implementations.

`SettingsConfigSource` rebuilds `PaymentSettings` on every read so that
changes to the environment or `.env` are observed at runtime; callers are
expected to cache (the gateway registry does, with a TTL).
"""
from __future__ import annotations

from typing import Any, Callable, Mapping

from core.settings import PaymentSettings


def _lookup(root: Mapping[str, Any], key: str, default: Any) -> Any:
    node: Any = root
    for part in key.split("."):
        if isinstance(node, Mapping) and part in node:
            node = node[part]
        else:
            return default
    return node


class SettingsConfigSource:
    def __init__(self, factory: Callable[[], PaymentSettings] = PaymentSettings) -> None:
        self._factory = factory

    def get(self, key: str, default: Any = None) -> Any:
        return _lookup({"payments": self._factory().model_dump()}, key, default)


class MappingConfigSource:
    """Static nested mapping, e.g. ``{"payments": {"stripe": {...}}}``."""

    def __init__(self, data: Mapping[str, Any] | None = None) -> None:
        self.data: dict[str, Any] = dict(data or {})

    def get(self, key: str, default: Any = None) -> Any:
        return _lookup(self.data, key, default)

    def set(self, key: str, value: Any) -> None:
        parts = key.split(".")
        node = self.data
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value
