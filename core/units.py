"""
Fixed-point conversions between on-chain base units and display amounts.

All math is Decimal on exact integers: the raw amount is scaled by
10^decimals before any rounding, never pushed through a float.
Rounding is half-away-from-zero (Decimal's ROUND_HALF_UP).
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, localcontext
from typing import Optional, Union

# uint256 has 78 digits; leave room for the fractional part
_PRECISION = 120

AmountInput = Union[str, int, Decimal]


def to_display(raw_amount: int, decimals: int, digits: int) -> str:
    """Raw integer amount -> decimal string with exactly `digits` fractional digits."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        value = Decimal(int(raw_amount)).scaleb(-decimals)
        quantum = Decimal(1).scaleb(-digits)
        return str(value.quantize(quantum, rounding=ROUND_HALF_UP))


def to_base_units(amount: Decimal, decimals: int) -> int:
    """USD / token amount -> integer base units, rounded half-away-from-zero."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        scaled = Decimal(amount).scaleb(decimals)
        return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def parse_amount(value: Optional[AmountInput]) -> Optional[Decimal]:
    """
    Parse a user-entered amount. Returns None unless it is a finite,
    strictly positive decimal.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        value = repr(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount


def format_usd(amount: Decimal) -> str:
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return str(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
