"""
Payment domain events.

Normalized webhook outcomes handed to the orchestration layer. Adapters map
provider-specific notifications onto these two shapes only: a status
transition or a refund record. Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Optional, Union

from domain.payment.entity import PaymentStatus


@dataclass
class PaymentEvent:
    provider: str
    intent_id: str
    event_id: str
    event_type: str
    status: PaymentStatus
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    provider_data: dict[str, Any] = field(default_factory=dict)

    kind = "payment_event"

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.provider, self.event_id)

    def to_message(self) -> dict[str, Any]:
        """JSON-safe representation used by dispatchers."""
        data = asdict(self)
        data["kind"] = self.kind
        data["status"] = self.status.value
        data["occurred_at"] = self.occurred_at.isoformat().replace("+00:00", "Z")
        return data


@dataclass
class PaymentStatusChanged(PaymentEvent):
    kind = "payment.status_changed"


@dataclass
class PaymentRefunded(PaymentEvent):
    amount_refunded: int = 0
    remaining_refundable: Optional[int] = None
    refund_id: Optional[str] = None

    kind = "payment.refunded"


NormalizedEvent = Union[PaymentStatusChanged, PaymentRefunded]
