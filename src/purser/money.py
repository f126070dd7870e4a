"""Money helpers using integer base units (USDC has 6 decimals)."""

from __future__ import annotations

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR


USDC_DECIMALS = 6
BASE_UNITS_PER_USDC = 10 ** USDC_DECIMALS


def parse_amount(value: int | str, field: str = "amount") -> int:
    """
    Normalize an amount to a non-negative integer of base units.

    Accepts ints and decimal digit strings (the persisted form). Floats are
    rejected outright: money never passes through binary floating point.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"{field} must be an integer number of base units, got {value!r}")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str):
        raw = value.strip()
        if not raw.isdigit():
            raise ValueError(f"{field} must be a non-negative integer string, got {value!r}")
        amount = int(raw)
    else:
        raise TypeError(f"{field} must be int or str, got {type(value).__name__}")
    if amount < 0:
        raise ValueError(f"{field} must be non-negative, got {amount}")
    return amount


def usdc_to_base_units(value: Decimal | int | str, limit: bool = False) -> int:
    """
    Convert a human USDC amount to base units.

    Spend amounts round up and limits round down, so conversion never
    loosens a budget.
    """
    rounding = ROUND_FLOOR if limit else ROUND_CEILING
    dec = Decimal(str(value)) * BASE_UNITS_PER_USDC
    return int(dec.to_integral_value(rounding=rounding))


def base_units_to_usdc(value: int) -> Decimal:
    return Decimal(value) / Decimal(BASE_UNITS_PER_USDC)


def format_amount(value: int, currency: str = "USDC") -> str:
    """Format base units for display, e.g. 10000 -> '0.010000 USDC'."""
    return f"{base_units_to_usdc(value):.{USDC_DECIMALS}f} {currency}"
