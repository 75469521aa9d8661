from __future__ import annotations

from decimal import ROUND_CEILING, Decimal

from .types import ValidationError

NATIVE_DECIMALS = 18


def accumulated_fees(update_count: int, fee_per_update: int) -> int:
    return max(0, update_count) * max(0, fee_per_update)


def fee_units_to_wei(fee_units: int, native_price: float, *, fee_decimals: int = 6) -> int:
    """Convert stable-denominated fee units into native wei, rounding up."""
    if fee_units <= 0:
        return 0
    price = Decimal(str(native_price))
    if price <= 0:
        raise ValidationError(f"Native asset price must be positive: {native_price!r}")

    usd = Decimal(fee_units) / (Decimal(10) ** fee_decimals)
    wei = (usd / price) * (Decimal(10) ** NATIVE_DECIMALS)
    return int(wei.to_integral_value(rounding=ROUND_CEILING))
