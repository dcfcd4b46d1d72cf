"""Pytest bootstrap configuration.

Environment defaults are set before application modules import their
settings; provider fixtures build explicit configuration mappings so tests
never depend on the developer's environment.
"""
import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DEBUG", "false")

import pytest

from infrastructure.config_source import MappingConfigSource
from infrastructure.webhooks.dispatchers import InMemoryEventDispatcher


STRIPE_SECTION = {
    "enabled": True,
    "secret_key": "sk_test_123",
    "public_key": "pk_test_123",
    "webhook_secret": "whsec_test_secret",
    "currencies": ["USD", "EUR"],
}

PAYPAL_SECTION = {
    "enabled": True,
    "client_id": "paypal-client",
    "client_secret": "paypal-secret",
    "webhook_id": "WH-123",
    "sandbox": True,
    "currencies": ["USD", "EUR"],
}

PAYU_SECTION = {
    "enabled": True,
    "api_key": "4Vj8eK4rloUd272L48hsrarnUA",
    "api_login": "pRRXKOl8ikMmt9u",
    "merchant_id": "508029",
    "account_id": "512321",
    "country": "CO",
    "sandbox": True,
    "currencies": ["COP", "USD"],
}

WOMPI_SECTION = {
    "enabled": True,
    "public_key": "pub_test_abc",
    "private_key": "prv_test_abc",
    "integrity_secret": "test_integrity_abc",
    "events_secret": "test_events_abc",
    "sandbox": True,
    "currencies": ["COP"],
}

MERCADOPAGO_SECTION = {
    "enabled": True,
    "access_token": "TEST-access-token",
    "public_key": "TEST-public-key",
    "webhook_secret": "mp-webhook-secret",
    "sandbox": True,
    "currencies": ["ARS", "BRL", "COP"],
}


def payments_config(**overrides) -> dict:
    """Nested `payments` mapping with every provider configured and enabled."""
    payments = {
        "default_provider": "stripe",
        "enablement_ttl_seconds": 30.0,
        "timeouts": {"connect": 1.0, "read": 1.0, "write": 1.0, "total": 2.0, "operation": 5.0},
        "retry": {"max": 0, "base_backoff": 0.01},
        "webhook": {"tolerance_seconds": 300},
        "stripe": dict(STRIPE_SECTION),
        "paypal": dict(PAYPAL_SECTION),
        "payu": dict(PAYU_SECTION),
        "wompi": dict(WOMPI_SECTION),
        "mercadopago": dict(MERCADOPAGO_SECTION),
    }
    payments.update(overrides)
    return {"payments": payments}


@pytest.fixture
def config_source() -> MappingConfigSource:
    return MappingConfigSource(payments_config())


@pytest.fixture
def make_source():
    """Build a MappingConfigSource with selected `payments` keys overridden."""

    def _make(**overrides) -> MappingConfigSource:
        return MappingConfigSource(payments_config(**overrides))

    return _make


class RecordingDispatcher(InMemoryEventDispatcher):
    """In-memory dispatcher that also keeps every delivered event."""

    def __init__(self) -> None:
        super().__init__()
        self.dispatched = []

    async def dispatch(self, event) -> None:
        await super().dispatch(event)
        self.dispatched.append(event)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()
