"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator, computed_field

from domain.payment.entity import PaymentStatus


def _upper_currency(v: str) -> str:
    u = (v or "").strip().upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    return u


class CreatePayment(BaseModel):
    amount: int = Field(gt=0, description="Amount in minor units (cents for USD)")
    currency: str
    metadata: Optional[dict[str, Any]] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=255)

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency(cls, v: str) -> str:
        return _upper_currency(v)


class ConfirmPayment(BaseModel):
    extra: Optional[dict[str, Any]] = None


class RefundRequest(BaseModel):
    # None refunds whatever is still refundable
    amount: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=255)
    idempotency_key: Optional[str] = Field(default=None, max_length=255)


class PaymentIntent(BaseModel):
    intent_id: str
    provider: str
    amount: int
    currency: str
    status: PaymentStatus
    provider_status: Optional[str] = None
    amount_captured: int = 0
    amount_refunded: int = 0
    client_secret: Optional[str] = None
    # Redirect/approval URL when the payer must act off-site
    next_action_url: Optional[str] = None
    # Provider-side reference needed for follow-up calls (charge, capture, transaction id)
    provider_ref: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def refundable_amount(self) -> int:
        return max(self.amount_captured - self.amount_refunded, 0)


class RefundRecord(BaseModel):
    intent_id: str
    provider: str
    refund_id: str
    amount: int
    reason: Optional[str] = None
    status: PaymentStatus
    refund_status: str = "succeeded"  # succeeded | pending | failed
    remaining_refundable: int = 0


class GatewayDescriptor(BaseModel):
    provider_id: str
    display_name: str
    enabled: bool


class GatewayConfig(BaseModel):
    """Configuration slice handed to one adapter. Never logged unredacted."""

    model_config = ConfigDict(frozen=True)

    provider: str
    enabled: bool = False
    credentials: dict[str, Optional[str]] = Field(default_factory=dict)
    webhook_secret: Optional[str] = None
    supported_currencies: frozenset[str] = frozenset()
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("supported_currencies", mode="before")
    @classmethod
    def _upper_currencies(cls, v: Any) -> frozenset[str]:
        if v is None:
            return frozenset()
        if isinstance(v, str):
            v = [p for p in v.split(",") if p.strip()]
        return frozenset(_upper_currency(c) for c in v)

    def credential(self, name: str) -> Optional[str]:
        value = self.credentials.get(name)
        return value or None


class WebhookRequest(BaseModel):
    """Raw inbound webhook exactly as received. `body` must not be re-serialized."""

    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes = b""
    query_params: dict[str, str] = Field(default_factory=dict)

    @field_validator("headers", mode="before")
    @classmethod
    def _lower_header_names(cls, v: Any) -> dict[str, str]:
        return {str(k).lower(): str(val) for k, val in dict(v or {}).items()}

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


class WebhookEvent(BaseModel):
    provider: str
    event_id: str
    event_type: str
    payload: dict[str, Any]
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
