"""
Payment error taxonomy mapped to unified BusinessException variants.

`error_type` carries the taxonomy kind surfaced to callers; `details` only
holds caller-safe fields (never raw provider bodies).
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


def _restore_error(cls: type, message: str) -> "PaymentError":
    error = cls.__new__(cls)
    Exception.__init__(error, message)
    return error


class PaymentError(BusinessException):
    kind = "PaymentError"

    def __init__(self, message: str, *, code: int, provider: str | None = None, details: Optional[dict] = None):
        full_details = {"provider": provider} if provider else {}
        if details:
            full_details.update(details)
        super().__init__(
            code=code,
            message=message,
            error_type=self.kind,
            details=full_details or None,
        )
        self.provider = provider

    def __reduce__(self):
        # Keyword-only constructors cannot be replayed from args (Celery pickles task errors)
        return _restore_error, (type(self), self.message), self.__dict__


class UnsupportedGatewayError(PaymentError):
    kind = "UnsupportedGatewayError"

    def __init__(self, provider: str):
        super().__init__(
            f"Unsupported payment gateway: {provider}",
            code=PaymentCode.UNSUPPORTED_GATEWAY,
            provider=provider,
        )


class ConfigurationError(PaymentError):
    kind = "ConfigurationError"

    def __init__(self, message: str, *, provider: str, missing: list[str] | None = None):
        super().__init__(
            message,
            code=PaymentCode.CONFIGURATION_ERROR,
            provider=provider,
            details={"missing": missing} if missing else None,
        )


class UnsupportedCurrencyError(PaymentError):
    kind = "UnsupportedCurrencyError"

    def __init__(self, currency: str, *, provider: str, supported: list[str] | None = None):
        super().__init__(
            f"Currency {currency} is not supported by {provider}",
            code=PaymentCode.UNSUPPORTED_CURRENCY,
            provider=provider,
            details={"currency": currency, "supported": supported or []},
        )
        self.field = "currency"


class SignatureVerificationError(PaymentError):
    kind = "SignatureVerificationError"

    def __init__(self, message: str = "Invalid webhook signature", *, provider: str):
        super().__init__(message, code=PaymentCode.SIGNATURE_ERROR, provider=provider)


class GatewayCommunicationError(PaymentError):
    """Network, timeout or provider-side failure. `retryable` tells the caller
    whether a retry with backoff is meaningful."""

    kind = "GatewayCommunicationError"

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        retryable: bool = True,
        status_code: int | None = None,
    ):
        details = {"retryable": retryable}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, code=PaymentCode.GATEWAY_COMMUNICATION, provider=provider, details=details)
        self.retryable = retryable
        self.status_code = status_code


class PaymentDeclinedError(PaymentError):
    kind = "PaymentDeclinedError"

    def __init__(self, message: str = "Payment declined by provider", *, provider: str, decline_code: str | None = None):
        super().__init__(
            message,
            code=PaymentCode.PAYMENT_DECLINED,
            provider=provider,
            details={"decline_code": decline_code} if decline_code else None,
        )


class InvalidRefundAmountError(PaymentError):
    kind = "InvalidRefundAmountError"

    def __init__(self, message: str, *, provider: str, requested: int | None = None, refundable: int | None = None):
        super().__init__(
            message,
            code=PaymentCode.INVALID_REFUND_AMOUNT,
            provider=provider,
            details={"requested": requested, "refundable": refundable},
        )
        self.field = "amount"


class NotFoundError(PaymentError):
    kind = "NotFoundError"

    def __init__(self, intent_id: str, *, provider: str):
        super().__init__(
            f"Payment {intent_id} not found",
            code=PaymentCode.NOT_FOUND,
            provider=provider,
            details={"intent_id": intent_id},
        )


class WebhookPayloadError(ValueError):
    """Signed webhook body that cannot be interpreted (domain-level).

    Acknowledged to the provider; redelivery would not fix it.
    """

    def __init__(self, message: str, *, provider: str):
        super().__init__(message)
        self.provider = provider
