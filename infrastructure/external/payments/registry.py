"""
Gateway registry/factory.

The registration table is closed and built at import time. Enablement is
derived from a configuration snapshot that is refreshed at most every
``ttl_seconds``; a refresh builds a new mapping and swaps the reference so
readers never observe a half-built snapshot.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

import httpx

from application.dtos.payments import GatewayConfig, GatewayDescriptor
from application.ports.config_source import ConfigSource
from domain.payment.exceptions import UnsupportedGatewayError
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.mercadopago_client import MercadoPagoClient
from infrastructure.external.payments.paypal_client import PayPalClient
from infrastructure.external.payments.payu_client import PayUClient
from infrastructure.external.payments.stripe_client import StripeClient
from infrastructure.external.payments.wompi_client import WompiClient
from core.logging_config import get_logger


logger = get_logger(__name__)


GATEWAY_REGISTRATIONS: Mapping[str, type[BasePaymentClient]] = MappingProxyType({
    cls.provider: cls
    for cls in (StripeClient, PayPalClient, PayUClient, WompiClient, MercadoPagoClient)
})


@dataclass(frozen=True)
class _Snapshot:
    configs: Mapping[str, GatewayConfig]
    timeouts: Mapping[str, float]
    retry: Mapping[str, Any]
    expires_at: float


class PaymentGatewayRegistry:
    def __init__(
        self,
        config_source: ConfigSource,
        *,
        ttl_seconds: Optional[float] = None,
        registrations: Mapping[str, type[BasePaymentClient]] = GATEWAY_REGISTRATIONS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = config_source
        self._registrations = registrations
        if ttl_seconds is None:
            ttl_seconds = float(config_source.get("payments.enablement_ttl_seconds", 30.0))
        self._ttl = ttl_seconds
        self._transport = transport
        self._clock = clock
        self._snapshot: Optional[_Snapshot] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------
    def _current(self) -> _Snapshot:
        snapshot = self._snapshot
        if snapshot is not None and self._clock() < snapshot.expires_at:
            return snapshot
        # One refresher at a time; late arrivals reuse its result
        with self._lock:
            snapshot = self._snapshot
            if snapshot is not None and self._clock() < snapshot.expires_at:
                return snapshot
            snapshot = self._load()
            self._snapshot = snapshot
            return snapshot

    def _load(self) -> _Snapshot:
        tolerance = self._source.get("payments.webhook.tolerance_seconds", 300)
        configs = {
            provider_id: cls.build_config(
                self._source.get(f"payments.{provider_id}", {}),
                webhook_tolerance_seconds=tolerance,
            )
            for provider_id, cls in self._registrations.items()
        }
        retry = dict(self._source.get("payments.retry", {}) or {})
        snapshot = _Snapshot(
            configs=MappingProxyType(configs),
            timeouts=MappingProxyType(dict(self._source.get("payments.timeouts", {}) or {})),
            retry=MappingProxyType({"max": retry.get("max", 2), "base": retry.get("base_backoff", 0.2)}),
            expires_at=self._clock() + self._ttl,
        )
        logger.debug(
            "payment_registry_refreshed",
            enabled=[p for p, c in configs.items() if self._is_enabled(p, c)],
        )
        return snapshot

    def invalidate(self) -> None:
        """Force the next read to rebuild the snapshot."""
        self._snapshot = None

    def _is_enabled(self, provider_id: str, config: GatewayConfig) -> bool:
        return config.enabled and self._registrations[provider_id].is_configured_for(config)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def setting(self, key: str, default: Any = None) -> Any:
        """Uncached read-through to the config source (e.g. webhook allow-list)."""
        return self._source.get(key, default)

    @property
    def default_provider(self) -> str:
        return str(self._source.get("payments.default_provider", "stripe"))

    def _normalize(self, provider_id: str) -> str:
        return (provider_id or "").strip().lower()

    def is_supported(self, provider_id: str) -> bool:
        return self._normalize(provider_id) in self._registrations

    def config_for(self, provider_id: str) -> GatewayConfig:
        name = self._normalize(provider_id)
        if name not in self._registrations:
            raise UnsupportedGatewayError(provider_id)
        return self._current().configs[name]

    def is_enabled(self, provider_id: str) -> bool:
        name = self._normalize(provider_id)
        if name not in self._registrations:
            return False
        return self._is_enabled(name, self._current().configs[name])

    def list_available(self) -> list[GatewayDescriptor]:
        snapshot = self._current()
        return [
            GatewayDescriptor(
                provider_id=provider_id,
                display_name=cls.display_name,
                enabled=self._is_enabled(provider_id, snapshot.configs[provider_id]),
            )
            for provider_id, cls in self._registrations.items()
        ]

    def list_enabled(self) -> list[GatewayDescriptor]:
        return [d for d in self.list_available() if d.enabled]

    def create(self, provider_id: str) -> BasePaymentClient:
        """Construct an adapter bound to the current configuration. No I/O."""
        name = self._normalize(provider_id)
        cls = self._registrations.get(name)
        if cls is None:
            raise UnsupportedGatewayError(provider_id)
        snapshot = self._current()
        return cls(
            snapshot.configs[name],
            timeouts=snapshot.timeouts,
            retry=snapshot.retry,
            transport=self._transport,
        )


_default_registry: Optional[PaymentGatewayRegistry] = None


def get_default_registry() -> PaymentGatewayRegistry:
    global _default_registry
    if _default_registry is None:
        from infrastructure.config_source import SettingsConfigSource

        _default_registry = PaymentGatewayRegistry(SettingsConfigSource())
    return _default_registry


def get_payment_gateway(provider: Optional[str] = None) -> BasePaymentClient:
    registry = get_default_registry()
    return registry.create(provider or registry.default_provider)
