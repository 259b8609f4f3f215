"""Price string parsing and smallest-unit conversion."""
from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

USDC_DECIMALS = 6

_PRICE_RE = re.compile(r"^\s*\$?\s*(\d+(?:\.\d+)?)\s*$")
# Caller-supplied price limits: "$X" or "$X.XX"
PRICE_LIMIT_RE = re.compile(r"^\$\d+(\.\d{1,2})?$")


def parse_price(value: str) -> Decimal:
    """Parse a currency-prefixed decimal string like "$0.02".

    Raises ValueError for anything that is not a non-negative decimal.
    """
    if value is None:
        raise ValueError("price is required")
    match = _PRICE_RE.match(str(value))
    if not match:
        raise ValueError(f"invalid price: {value!r}")
    try:
        return Decimal(match.group(1))
    except InvalidOperation as e:
        raise ValueError(f"invalid price: {value!r}") from e


def to_smallest_units(price: Decimal, decimals: int = USDC_DECIMALS) -> int:
    """Convert a token amount into integer smallest units (USDC: 6 decimals)."""
    scaled = (price * (Decimal(10) ** decimals)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(scaled)


def from_smallest_units(amount: int, decimals: int = USDC_DECIMALS) -> Decimal:
    return Decimal(amount) / (Decimal(10) ** decimals)


def format_price(price: Decimal) -> str:
    """Render a decimal as a display price, keeping at least two places."""
    normalized = price.normalize()
    if normalized.as_tuple().exponent > -2:
        normalized = normalized.quantize(Decimal("0.01"))
    return f"${normalized}"


def round_half_up(value: float | Decimal, places: int = 1) -> float:
    """Round half-up (not banker's rounding) to ``places`` decimals."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))
