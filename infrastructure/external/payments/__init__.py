"""
Payment gateway adapters and the registry/factory that builds them.
"""
from __future__ import annotations

from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.registry import (
    GATEWAY_REGISTRATIONS,
    PaymentGatewayRegistry,
    get_default_registry,
    get_payment_gateway,
)

__all__ = [
    "BasePaymentClient",
    "GATEWAY_REGISTRATIONS",
    "PaymentGatewayRegistry",
    "get_default_registry",
    "get_payment_gateway",
]
