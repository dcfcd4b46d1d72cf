from decimal import Decimal
import pickle

import pytest

from domain.common.exceptions import DomainValidationException
from domain.payment.entity import (
    PaymentStatus,
    RefundBalance,
    ensure_positive_amount,
    normalize_currency,
    to_major,
    to_minor,
)
from domain.payment.events import PaymentRefunded, PaymentStatusChanged
from domain.payment.exceptions import (
    GatewayCommunicationError,
    InvalidRefundAmountError,
    NotFoundError,
    UnsupportedGatewayError,
)


def test_refund_path_is_monotonic():
    assert PaymentStatus.SUCCEEDED.can_transition_to(PaymentStatus.PARTIALLY_REFUNDED)
    assert PaymentStatus.PARTIALLY_REFUNDED.can_transition_to(PaymentStatus.REFUNDED)
    assert PaymentStatus.SUCCEEDED.can_transition_to(PaymentStatus.REFUNDED)
    assert not PaymentStatus.REFUNDED.can_transition_to(PaymentStatus.SUCCEEDED)
    assert not PaymentStatus.PARTIALLY_REFUNDED.can_transition_to(PaymentStatus.SUCCEEDED)


def test_terminal_states_accept_only_themselves():
    for status in (PaymentStatus.FAILED, PaymentStatus.CANCELED, PaymentStatus.REFUNDED):
        assert status.is_final()
        assert status.can_transition_to(status)
        assert not status.can_transition_to(PaymentStatus.PROCESSING)
    assert not PaymentStatus.SUCCEEDED.is_final()


def test_money_helpers_respect_currency_exponent():
    assert to_major(5000, "USD") == Decimal("50.00")
    assert to_major(5000, "JPY") == Decimal("5000")
    assert to_minor("50.005", "USD") == 5001
    assert to_minor(Decimal("1200"), "CLP") == 1200
    assert normalize_currency(" usd ") == "USD"


@pytest.mark.parametrize("bad", ["US", "1SD", "", "EURO"])
def test_normalize_currency_rejects_malformed_codes(bad):
    with pytest.raises(DomainValidationException):
        normalize_currency(bad)


@pytest.mark.parametrize("amount", [0, -1, 1.5, True])
def test_amount_must_be_positive_integer(amount):
    with pytest.raises(DomainValidationException):
        ensure_positive_amount(amount)


def test_refund_balance_tracks_cumulative_refunds():
    balance = RefundBalance(provider="stripe", captured=5000)
    assert balance.resolve(2000) == 2000
    after = balance.apply(2000)
    assert after.remaining == 3000
    assert after.status() is PaymentStatus.PARTIALLY_REFUNDED
    # None means "whatever is left"
    assert after.resolve(None) == 3000
    assert after.apply(3000).status() is PaymentStatus.REFUNDED


def test_refund_balance_rejects_excess_without_changing_state():
    balance = RefundBalance(provider="stripe", captured=5000, refunded=2000)
    with pytest.raises(InvalidRefundAmountError) as exc_info:
        balance.resolve(3001)
    assert exc_info.value.details["refundable"] == 3000
    assert balance.refunded == 2000

    with pytest.raises(InvalidRefundAmountError):
        RefundBalance(provider="stripe", captured=5000, refunded=5000).resolve(None)
    with pytest.raises(InvalidRefundAmountError):
        RefundBalance(provider="stripe", captured=0).resolve(100)


def test_event_message_is_json_safe():
    changed = PaymentStatusChanged(
        provider="wompi",
        intent_id="tx_1",
        event_id="tx_1:APPROVED",
        event_type="transaction.updated",
        status=PaymentStatus.SUCCEEDED,
    )
    message = changed.to_message()
    assert message["kind"] == "payment.status_changed"
    assert message["status"] == "succeeded"
    assert message["occurred_at"].endswith("Z")
    assert changed.dedup_key == ("wompi", "tx_1:APPROVED")

    refunded = PaymentRefunded(
        provider="stripe",
        intent_id="pi_1",
        event_id="evt_2",
        event_type="charge.refunded",
        status=PaymentStatus.PARTIALLY_REFUNDED,
        amount_refunded=2000,
        remaining_refundable=3000,
    )
    assert refunded.to_message()["kind"] == "payment.refunded"
    assert refunded.to_message()["amount_refunded"] == 2000


@pytest.mark.parametrize("error", [
    GatewayCommunicationError("credentials rejected", provider="stripe", retryable=False, status_code=401),
    NotFoundError("pi_missing", provider="stripe"),
    UnsupportedGatewayError("bitcoinpay"),
    InvalidRefundAmountError("too much", provider="payu", requested=10, refundable=5),
])
def test_payment_errors_survive_pickling(error):
    restored = pickle.loads(pickle.dumps(error))
    assert type(restored) is type(error)
    assert str(restored) == str(error)
    assert restored.code == error.code
    assert restored.details == error.details
    assert restored.provider == error.provider
    assert restored.error_type == error.error_type
