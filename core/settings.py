"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Environment variables use the ``PAYMENTS__`` prefix and ``__`` as nesting
delimiter, e.g. ``PAYMENTS__STRIPE__ENABLED=true`` or
``PAYMENTS__PAYU__CURRENCIES='["COP","USD"]'``.
"""
from __future__ import annotations

from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 3.0
    write: float = 3.0
    total: float = 5.0
    # Bound on one contract operation (may span several provider round-trips)
    operation: float = 15.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks
    dedup_backend: Literal["memory", "redis"] = "memory"
    processing_ttl_seconds: int = 300
    retention_seconds: int = 7 * 24 * 3600
    dispatcher: Literal["memory", "celery"] = "memory"
    dispatch_task: str = "payments.apply_event"


class ReconcileSettings(BaseModel):
    # "celery" enqueues payments.reconcile_status after a timed-out or cancelled operation
    backend: Literal["none", "celery"] = "none"
    countdown_seconds: int = 30


class StripeSettings(BaseModel):
    enabled: bool = False
    secret_key: Optional[str] = None
    public_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    currencies: list[str] = Field(default_factory=lambda: ["USD", "EUR", "GBP", "CAD", "AUD"])


class PayPalSettings(BaseModel):
    enabled: bool = False
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    webhook_id: Optional[str] = None
    signing_cert_pem: Optional[str] = None  # PEM of the PayPal webhook signing certificate
    sandbox: bool = True
    currencies: list[str] = Field(default_factory=lambda: ["USD", "EUR", "GBP", "CAD", "AUD"])


class PayUSettings(BaseModel):
    enabled: bool = False
    api_key: Optional[str] = None
    api_login: Optional[str] = None
    merchant_id: Optional[str] = None
    account_id: Optional[str] = None
    country: str = "CO"
    sandbox: bool = True
    currencies: list[str] = Field(default_factory=lambda: ["COP", "USD", "BRL", "MXN", "ARS", "PEN"])


class WompiSettings(BaseModel):
    enabled: bool = False
    public_key: Optional[str] = None
    private_key: Optional[str] = None
    integrity_secret: Optional[str] = None
    events_secret: Optional[str] = None
    sandbox: bool = True
    currencies: list[str] = Field(default_factory=lambda: ["COP"])


class MercadoPagoSettings(BaseModel):
    enabled: bool = False
    access_token: Optional[str] = None
    public_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    sandbox: bool = True
    currencies: list[str] = Field(default_factory=lambda: ["ARS", "BRL", "CLP", "COP", "MXN", "PEN", "UYU"])


class PaymentSettings(BaseSettings):
    default_provider: str = "stripe"
    enablement_ttl_seconds: float = 30.0
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    reconcile: ReconcileSettings = Field(default_factory=ReconcileSettings)

    stripe: StripeSettings = Field(default_factory=StripeSettings)
    paypal: PayPalSettings = Field(default_factory=PayPalSettings)
    payu: PayUSettings = Field(default_factory=PayUSettings)
    wompi: WompiSettings = Field(default_factory=WompiSettings)
    mercadopago: MercadoPagoSettings = Field(default_factory=MercadoPagoSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENTS__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
