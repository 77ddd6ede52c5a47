from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional


def format_planck(amount: int, decimals: int = 10, symbol: str = "DOT") -> str:
    """
    Human readable token amount: thousands separators, at most two fraction digits.

    >>> format_planck(12_345_600_000_000)
    '1,234.56 DOT'
    """
    value = (Decimal(int(amount)) / (Decimal(10) ** decimals)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    text = f"{value:,.2f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return f"{text} {symbol}" if symbol else text


def format_apy(apy: Optional[float]) -> str:
    return f"{(apy or 0.0):.2f}%"
