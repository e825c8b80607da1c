"""Currency arithmetic in integer minor units (øre).

Rounding is always half up: 8332.5 øre becomes 8333.
"""

from decimal import Decimal, ROUND_HALF_UP

MINOR_UNITS_PER_MAJOR = 100

# Largest difference tolerated when comparing split totals (0.01 NOK)
SPLIT_TOLERANCE_MINOR = 1


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_minor_units(amount) -> int:
    """``round(amount * 100)``; accepts Decimal, int, float or str."""
    return _round_half_up(Decimal(str(amount)) * MINOR_UNITS_PER_MAJOR)


def to_major_units(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / MINOR_UNITS_PER_MAJOR).quantize(Decimal("0.01"))


def application_fee(amount_minor: int, fee_percent) -> int:
    """Platform fee computed from the minor-unit amount, never from the major one."""
    return _round_half_up(Decimal(amount_minor) * Decimal(str(fee_percent)) / 100)


def amounts_match(total_minor: int, parts_minor: list[int]) -> bool:
    return abs(sum(parts_minor) - total_minor) <= SPLIT_TOLERANCE_MINOR
