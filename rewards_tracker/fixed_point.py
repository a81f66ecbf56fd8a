"""
Fixed-point arithmetic for quantities, unit prices and currency amounts.

Every value that enters the ledger is quantized here, so two runs over the same
history always produce identical lots and disposals.
"""

from decimal import Decimal
from typing import List, Sequence, Union

from rewards_tracker.models import GainType

Number = Union[Decimal, int, str, float]

ZERO = Decimal("0")


def to_decimal(value: Number) -> Decimal:
    """Convert a number to Decimal without picking up binary float noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


class FixedPoint:
    """Quantization rules for the three kinds of amounts the ledger stores."""

    def __init__(self, quantity_decimals: int = 9, price_decimals: int = 8,
                 currency_decimals: int = 2, rounding: str = "ROUND_HALF_EVEN"):
        self.quantity_exp = Decimal(1).scaleb(-quantity_decimals)
        self.price_exp = Decimal(1).scaleb(-price_decimals)
        self.currency_exp = Decimal(1).scaleb(-currency_decimals)
        self.rounding = rounding

    @classmethod
    def from_settings(cls, settings) -> "FixedPoint":
        return cls(
            quantity_decimals=settings.quantity_decimals,
            price_decimals=settings.price_decimals,
            currency_decimals=settings.currency_decimals,
            rounding=settings.rounding,
        )

    def quantity(self, value: Number) -> Decimal:
        return to_decimal(value).quantize(self.quantity_exp, rounding=self.rounding)

    def price(self, value: Number) -> Decimal:
        return to_decimal(value).quantize(self.price_exp, rounding=self.rounding)

    def currency(self, value: Number) -> Decimal:
        return to_decimal(value).quantize(self.currency_exp, rounding=self.rounding)

    def allocate(self, total: Number, weights: Sequence[Decimal]) -> List[Decimal]:
        """Split a currency total pro-rata across weights.

        Shares are rounded individually and the last share absorbs the rounding
        remainder, so the shares always sum exactly to the rounded total.
        """
        total = self.currency(total)
        if not weights:
            return []
        weight_sum = sum(weights, ZERO)
        if weight_sum <= 0:
            raise ValueError("Cannot allocate across non-positive weights")

        shares = []
        allocated = ZERO
        for weight in weights[:-1]:
            share = self.currency(total * weight / weight_sum)
            shares.append(share)
            allocated += share
        shares.append(total - allocated)
        return shares


def classify_holding_period(acquired_at: int, disposed_at: int, holding_period_seconds: int) -> GainType:
    """Long-term once the full holding period has elapsed, short-term before."""
    if disposed_at - acquired_at >= holding_period_seconds:
        return GainType.LONG_TERM
    return GainType.SHORT_TERM
