"""Money conversion helpers using fixed nano-TON precision."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from .errors import InvalidArgumentError


NANO_PER_TON = 1_000_000_000
_TON_QUANT = Decimal("0.000000001")


def ton_to_nano(value: Decimal | int | str) -> int:
    """Convert a TON amount to integer nano.

    Amounts finer than one nano are rejected rather than rounded, so the
    value paid is always the value requested.
    """
    if isinstance(value, float):
        raise InvalidArgumentError("TON amounts must be given as str, int or Decimal")
    try:
        dec = Decimal(str(value).strip())
    except InvalidOperation:
        raise InvalidArgumentError(f"Invalid TON amount: {value!r}") from None
    if not dec.is_finite():
        raise InvalidArgumentError(f"Invalid TON amount: {value!r}")
    try:
        quantized = dec.quantize(_TON_QUANT)
    except InvalidOperation:
        raise InvalidArgumentError(f"TON amount {value} is out of range") from None
    if dec != quantized:
        raise InvalidArgumentError(f"TON amount {value} has more than 9 decimal places")
    return int(dec * NANO_PER_TON)


def positive_ton_to_nano(value: Decimal | int | str) -> int:
    nano = ton_to_nano(value)
    if nano <= 0:
        raise InvalidArgumentError(f"TON amount must be greater than 0, got {value}")
    return nano


def nano_to_ton(value: int) -> str:
    """Format integer nano as a TON string without trailing zeros."""
    dec = (Decimal(int(value)) / Decimal(NANO_PER_TON)).quantize(_TON_QUANT)
    text = format(dec, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_ton(value: int) -> str:
    """Format integer nano for display."""
    return f"{nano_to_ton(value)} TON"
