"""
Read accessor for runtime configuration.

Keys are dotted paths such as ``payments.stripe.enabled``.
"""
from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class ConfigSource(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...
