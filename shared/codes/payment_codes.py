"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    GATEWAY_COMMUNICATION = 60001
    SIGNATURE_ERROR = 60002
    PAYMENT_DECLINED = 60005

    # Gateway selection/configuration (61xxx)
    UNSUPPORTED_GATEWAY = 61000
    CONFIGURATION_ERROR = 61001
    UNSUPPORTED_CURRENCY = 61002

    # Intent/refund state (62xxx)
    NOT_FOUND = 62000
    INVALID_REFUND_AMOUNT = 62001


# Provider -> internal status mapping. Values must be members of
# domain.payment.entity.PaymentStatus; unknown provider states fall back to
# "processing" in BasePaymentClient._map_status.
PROVIDER_STATUS_TO_INTERNAL = {
    "stripe": {
        "requires_payment_method": "requires_action",
        "requires_confirmation": "requires_action",
        "requires_action": "requires_action",
        "requires_capture": "processing",
        "processing": "processing",
        "succeeded": "succeeded",
        "canceled": "canceled",
    },
    "paypal": {
        # Orders v2 status
        "CREATED": "requires_action",
        "SAVED": "requires_action",
        "APPROVED": "requires_action",
        "PAYER_ACTION_REQUIRED": "requires_action",
        "COMPLETED": "succeeded",
        "VOIDED": "canceled",
        # Capture status
        "PENDING": "processing",
        "DECLINED": "failed",
        "FAILED": "failed",
        "REFUNDED": "refunded",
        "PARTIALLY_REFUNDED": "partially_refunded",
    },
    "payu": {
        # transactionResponse.state
        "APPROVED": "succeeded",
        "DECLINED": "failed",
        "PENDING": "processing",
        "EXPIRED": "failed",
        "ERROR": "failed",
        # order.status
        "NEW": "requires_action",
        "IN_PROGRESS": "processing",
        "AUTHORIZED": "processing",
        "CAPTURED": "succeeded",
        "CANCELLED": "canceled",
        "REFUNDED": "refunded",
        # state_pol on confirmation callbacks
        "4": "succeeded",
        "6": "failed",
        "5": "failed",
        "104": "failed",
        "7": "processing",
    },
    "wompi": {
        "PENDING": "processing",
        "APPROVED": "succeeded",
        "DECLINED": "failed",
        "ERROR": "failed",
        "VOIDED": "refunded",
    },
    "mercadopago": {
        "pending": "processing",
        "in_process": "processing",
        "in_mediation": "processing",
        "authorized": "requires_action",
        "approved": "succeeded",
        "rejected": "failed",
        "cancelled": "canceled",
        "refunded": "refunded",
        "charged_back": "refunded",
    },
}
