"""
支付领域模型 - 支付状态与退款余额
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException
from domain.payment.exceptions import InvalidRefundAmountError


class PaymentStatus(str, Enum):
    """支付状态枚举（封闭集合，适配器不得扩展）"""
    REQUIRES_ACTION = "requires_action"        # 待确认/待用户操作
    PROCESSING = "processing"                  # 处理中
    SUCCEEDED = "succeeded"                    # 支付成功
    FAILED = "failed"                          # 支付失败
    CANCELED = "canceled"                      # 已取消
    REFUNDED = "refunded"                      # 已全额退款
    PARTIALLY_REFUNDED = "partially_refunded"  # 部分退款

    def is_final(self) -> bool:
        return self in _FINAL

    def can_transition_to(self, target: "PaymentStatus") -> bool:
        """
        状态单调性校验

        业务规则：
        1. succeeded -> partially_refunded -> refunded 合法
        2. refunded 不能回到 succeeded
        3. 相同状态视为幂等
        """
        if target == self:
            return True
        return target in _TRANSITIONS[self]


_FINAL = frozenset({PaymentStatus.FAILED, PaymentStatus.CANCELED, PaymentStatus.REFUNDED})

_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.REQUIRES_ACTION: frozenset({
        PaymentStatus.PROCESSING,
        PaymentStatus.SUCCEEDED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELED,
    }),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.REQUIRES_ACTION,
        PaymentStatus.SUCCEEDED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELED,
    }),
    PaymentStatus.SUCCEEDED: frozenset({
        PaymentStatus.PARTIALLY_REFUNDED,
        PaymentStatus.REFUNDED,
    }),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


# ISO-4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "CLP", "PYG", "VND", "ISK", "UGX"})


def normalize_currency(currency: str) -> str:
    code = (currency or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise DomainValidationException(f"无效的货币代码: {currency}", field="currency")
    return code


def currency_exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_major(amount_minor: int, currency: str) -> Decimal:
    """最小货币单位 -> 十进制金额（如 5000 USD -> 50.00）"""
    exponent = currency_exponent(currency)
    quantum = Decimal(1).scaleb(-exponent)
    return (Decimal(amount_minor) / (Decimal(10) ** exponent)).quantize(quantum)


def to_minor(amount: Decimal | str | float, currency: str) -> int:
    """十进制金额 -> 最小货币单位"""
    exponent = currency_exponent(currency)
    value = Decimal(str(amount)) * (Decimal(10) ** exponent)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def ensure_positive_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise DomainValidationException(f"支付金额必须为整数（最小货币单位）: {amount}", field="amount")
    if amount <= 0:
        raise DomainValidationException(f"支付金额必须大于0: {amount}", field="amount")
    return amount


@dataclass(frozen=True)
class RefundBalance:
    """
    退款余额 - 单笔支付的已捕获金额与已退款金额

    业务规则：
    1. 累计退款金额不能超过已捕获金额
    2. 退款金额为空表示退还剩余全部可退金额
    3. 校验失败时不产生任何状态变化
    """

    provider: str
    captured: int
    refunded: int = 0

    @property
    def remaining(self) -> int:
        return max(self.captured - self.refunded, 0)

    def resolve(self, amount: Optional[int]) -> int:
        """计算本次实际退款金额，超额时抛出 InvalidRefundAmountError"""
        remaining = self.remaining
        requested = remaining if amount is None else amount
        if isinstance(requested, bool) or not isinstance(requested, int):
            raise InvalidRefundAmountError(
                f"Refund amount must be an integer in minor units: {amount}",
                provider=self.provider,
                refundable=remaining,
            )
        if remaining <= 0:
            raise InvalidRefundAmountError(
                "Nothing left to refund for this payment",
                provider=self.provider,
                requested=requested,
                refundable=remaining,
            )
        if requested <= 0 or requested > remaining:
            raise InvalidRefundAmountError(
                f"Refund amount {requested} exceeds refundable balance {remaining}",
                provider=self.provider,
                requested=requested,
                refundable=remaining,
            )
        return requested

    def apply(self, amount: int) -> "RefundBalance":
        return RefundBalance(provider=self.provider, captured=self.captured, refunded=self.refunded + amount)

    def status(self) -> PaymentStatus:
        if self.refunded <= 0:
            return PaymentStatus.SUCCEEDED
        if self.refunded >= self.captured:
            return PaymentStatus.REFUNDED
        return PaymentStatus.PARTIALLY_REFUNDED
