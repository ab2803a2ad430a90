"""Minor-unit arithmetic helpers.

Amounts travel through the aggregation path as ``int`` minor units and are
only turned into :class:`~decimal.Decimal` (and finally ``float``) at the
display boundary.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, localcontext
from typing import Any

# enough precision for 78-digit uint256 balances
_PRECISION = 96


def parse_raw_amount(value: Any) -> int:
    """Return ``value`` as a non-negative integer amount of minor units."""

    if isinstance(value, bool):
        raise ValueError(f"invalid token amount {value!r}")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            parsed = Decimal(text)
        except InvalidOperation as exc:
            raise ValueError(f"invalid token amount {value!r}") from exc
        if not parsed.is_finite() or parsed != parsed.to_integral_value():
            raise ValueError(f"token amount {value!r} is not an integer")
        amount = int(parsed)
    elif value is None:
        return 0
    else:
        raise ValueError(f"invalid token amount {value!r}")
    if amount < 0:
        raise ValueError(f"token amount {value!r} is negative")
    return amount


def to_units(raw: int, decimals: int) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return Decimal(raw).scaleb(-int(decimals))


def usd_value(raw: int, decimals: int, unit_price: float) -> float:
    """USD value of ``raw`` minor units priced at ``unit_price`` per whole token."""

    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return float(to_units(raw, decimals) * Decimal(repr(float(unit_price))))


def format_amount(raw: int, decimals: int, max_fraction_digits: int | None = None) -> str:
    """Human readable amount with grouped thousands and no trailing zeros."""

    units = to_units(raw, decimals)
    digits = decimals if max_fraction_digits is None else min(decimals, max_fraction_digits)
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        quantized = units.quantize(Decimal(1).scaleb(-digits)) if digits > 0 else units.to_integral_value()
    text = f"{quantized:,f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


__all__ = ["format_amount", "parse_raw_amount", "to_units", "usd_value"]
