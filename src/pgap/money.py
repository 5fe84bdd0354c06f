"""Base-unit conversion helpers for 6-decimal stablecoins."""

from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR


BASE_UNITS_PER_TOKEN = 1_000_000
_TOKEN_QUANT = Decimal("0.000001")


def tokens_to_base_units(value: Decimal | int | str) -> int:
    """Convert a token amount to integer base units, rounding down."""
    dec = Decimal(str(value)).quantize(_TOKEN_QUANT, rounding=ROUND_FLOOR)
    if dec < 0:
        raise ValueError(f"Negative amount: {value}")
    return int(dec * BASE_UNITS_PER_TOKEN)


def base_units_to_tokens(value: int | str) -> Decimal:
    """Convert integer base units (or their decimal string) to tokens."""
    return (Decimal(int(value)) / Decimal(BASE_UNITS_PER_TOKEN)).quantize(_TOKEN_QUANT)


def format_base_units(value: int | str, symbol: str = "USDC") -> str:
    """Format base units for display, e.g. ``1.500000 USDC``."""
    return f"{base_units_to_tokens(value)} {symbol}"
