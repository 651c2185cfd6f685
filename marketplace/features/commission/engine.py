"""
Commission split.

The platform fee is ``subtotal * rate / 100`` rounded half-up to a whole
unit, computed with Decimal so no float ever touches a money amount. The
vendor keeps the remainder, so fee + net always equals the subtotal.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from pydantic import BaseModel, ConfigDict

from marketplace.core.errors import ValidationError

RateLike = Union[Decimal, int, str]

_HUNDRED = Decimal(100)
_BPS_PER_PERCENT = Decimal(100)


class CommissionSplit(BaseModel):
    model_config = ConfigDict(frozen=True)

    subtotal: int
    commission_rate: Decimal
    platform_fee: int
    vendor_net: int


def _as_rate(rate: RateLike) -> Decimal:
    if isinstance(rate, float):
        # 0.1 -> Decimal('0.1'), not its binary expansion
        rate = str(rate)
    try:
        value = Decimal(rate)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"commission rate must be a number, got {rate!r}")
    if not value.is_finite() or value < 0 or value > _HUNDRED:
        raise ValidationError(f"commission rate must be between 0 and 100, got {rate}")
    return value


def split(order_subtotal: int, commission_rate_percent: RateLike) -> CommissionSplit:
    if isinstance(order_subtotal, bool) or not isinstance(order_subtotal, int):
        raise ValidationError("order subtotal must be an integer amount")
    if order_subtotal < 0:
        raise ValidationError("order subtotal must not be negative")

    rate = _as_rate(commission_rate_percent)
    fee = (Decimal(order_subtotal) * rate / _HUNDRED).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    platform_fee = int(fee)
    return CommissionSplit(
        subtotal=order_subtotal,
        commission_rate=rate,
        platform_fee=platform_fee,
        vendor_net=order_subtotal - platform_fee,
    )


def rate_to_bps(rate: RateLike) -> int:
    """15 -> 1500, 12.5 -> 1250. Rates carry at most two decimal places."""
    value = _as_rate(rate) * _BPS_PER_PERCENT
    if value != value.to_integral_value():
        raise ValidationError(f"commission rate supports at most two decimal places, got {rate}")
    return int(value)


def bps_to_rate(bps: int) -> Decimal:
    return Decimal(bps) / _BPS_PER_PERCENT
