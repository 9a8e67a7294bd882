"""Token unit conversion helpers using fixed 18-decimal precision."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_FLOOR

from .errors import EncodingError


WEI_PER_UNIT = 10**18
UINT96_MAX = 2**96 - 1
_UNIT_QUANT = Decimal(1) / Decimal(WEI_PER_UNIT)


def to_wei(value: Decimal | float | int | str) -> int:
    """Convert a human amount ("0.05", 50) to integer base units, rounding down."""
    try:
        dec = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise EncodingError(f"Invalid token amount: {value!r}") from e
    if not dec.is_finite() or dec < 0:
        raise EncodingError(f"Invalid token amount: {value!r}")
    return int(dec.quantize(_UNIT_QUANT, rounding=ROUND_FLOOR) * WEI_PER_UNIT)


def from_wei(value: int) -> Decimal:
    """Convert integer base units to a Decimal amount."""
    return Decimal(int(value)) / Decimal(WEI_PER_UNIT)


def format_units(value: int) -> str:
    """Render base units like ``formatEther``: no trailing zeros, at least one digit."""
    text = format(from_wei(value), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def require_uint96(value: int, field_name: str = "amount") -> int:
    """Validate an allowance-denominated amount fits the module's uint96 fields."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise EncodingError(f"{field_name} must be an integer base-unit value")
    if value < 0 or value > UINT96_MAX:
        raise EncodingError(f"{field_name} out of uint96 range: {value}")
    return value
