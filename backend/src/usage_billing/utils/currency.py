"""Amount conversion utilities for USD-only ACH billing."""
from decimal import ROUND_HALF_UP, Decimal

# ACH transfers are always in US dollars
CURRENCY = "USD"

_CENT = Decimal("0.01")


def calculate_amount_cents(units: Decimal | int | float, price_per_unit_cents: int) -> int:
    """
    Price a quantity of usage in whole cents.

    Rounds half away from zero, so fractional units never lose a half cent
    to banker's rounding.

    Args:
        units: Total usage units (may be fractional)
        price_per_unit_cents: Price of one unit in cents

    Returns:
        Amount in cents

    Examples:
        >>> calculate_amount_cents(Decimal("3"), 400)
        1200
        >>> calculate_amount_cents(Decimal("0.00125"), 400)
        1
    """
    amount = Decimal(str(units)) * Decimal(price_per_unit_cents)
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_dollars(amount_cents: int) -> Decimal:
    """
    Convert cents to a two-place dollar Decimal.

    Example:
        >>> cents_to_dollars(1250)
        Decimal('12.50')
    """
    return (Decimal(amount_cents) / 100).quantize(_CENT)


def format_dollars(amount_cents: int) -> str:
    """
    Format cents as the plain decimal string the processor expects.

    Example:
        >>> format_dollars(5)
        '0.05'
    """
    return str(cents_to_dollars(amount_cents))


def dollars_to_cents(amount: str | Decimal) -> int:
    """
    Convert a dollar amount (e.g. a micro-deposit of "0.03") to cents.

    Example:
        >>> dollars_to_cents("0.07")
        7
    """
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
