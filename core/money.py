"""
Fixed-point money and quantity primitives.

Money is carried as integer minor units (cents): $10.00 = 1000. Quantities and
tax rates are Decimals with at most two fractional digits. Products and
percentages are computed exactly in Decimal and rounded half-up exactly once,
when a stored field is produced. Intermediate sums are never re-rounded.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable

from core.exceptions import ValidationFailureError

CENTS_PER_UNIT = 100
MAX_QUANTITY = Decimal("9999")
MAX_UNIT_PRICE_CENTS = 9_999_999_999  # NUMERIC(12, 2)
MAX_TAX_RATE = Decimal("100")
FRACTION_DIGITS = 2

_HUNDREDTH = Decimal("0.01")
# Inputs above 10**12 are out of range for every field; checked before any arithmetic
_MAX_ADJUSTED_EXPONENT = 12


def to_decimal(value: Decimal | int | float | str, field: str) -> Decimal:
    """
    Convert user input to an exact Decimal.

    Floats go through their shortest repr ("0.1" stays 0.1, not
    0.1000000000000000055...). Booleans, NaN, infinities and unparseable
    strings are rejected.
    """
    if isinstance(value, bool):
        raise ValidationFailureError(f"{field} must be a number", field=field)
    try:
        if isinstance(value, Decimal):
            result = value
        elif isinstance(value, float):
            result = Decimal(repr(value))
        else:
            result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationFailureError(f"{field} must be a number, got {value!r}", field=field)

    if not result.is_finite():
        raise ValidationFailureError(f"{field} must be finite", field=field)
    if result and result.adjusted() > _MAX_ADJUSTED_EXPONENT:
        raise ValidationFailureError(f"{field} is out of range", field=field)
    return result


def _check_precision(value: Decimal, field: str) -> None:
    if value != value.quantize(_HUNDREDTH, rounding=ROUND_HALF_UP):
        raise ValidationFailureError(
            f"{field} supports at most {FRACTION_DIGITS} decimal places", field=field
        )


def round_half_up(value: Decimal) -> int:
    """Round an exact amount of cents to a whole cent, halves away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_amount(value: Decimal | int | float | str, field: str = "amount") -> int:
    """
    Parse a non-negative major-unit amount ("19.99", 19.99, 20) into cents.

    Raises:
        ValidationFailureError: negative, non-finite, too precise or too large
    """
    amount = to_decimal(value, field)
    if amount < 0:
        raise ValidationFailureError(f"{field} cannot be negative", field=field)
    if amount > Decimal(MAX_UNIT_PRICE_CENTS) / CENTS_PER_UNIT:
        raise ValidationFailureError(f"{field} exceeds the maximum allowed amount", field=field)
    _check_precision(amount, field)
    return int(amount * CENTS_PER_UNIT)


def parse_quantity(value: Decimal | int | float | str, field: str = "quantity") -> Decimal:
    """
    Parse a line item quantity: 0 < quantity <= 9999, two decimal places.

    Returned value is quantized to exactly two places so it round-trips
    through NUMERIC(10, 2) unchanged.
    """
    quantity = to_decimal(value, field)
    if quantity <= 0:
        raise ValidationFailureError(f"{field} must be greater than zero", field=field)
    if quantity > MAX_QUANTITY:
        raise ValidationFailureError(f"{field} cannot exceed {MAX_QUANTITY}", field=field)
    _check_precision(quantity, field)
    return quantity.quantize(_HUNDREDTH)


def parse_tax_rate(value: Decimal | int | float | str, field: str = "tax_rate") -> Decimal:
    """Parse a tax percentage: 0 <= rate <= 100, two decimal places."""
    rate = to_decimal(value, field)
    if rate < 0:
        raise ValidationFailureError(f"{field} cannot be negative", field=field)
    if rate > MAX_TAX_RATE:
        raise ValidationFailureError(f"{field} cannot exceed {MAX_TAX_RATE}%", field=field)
    _check_precision(rate, field)
    return rate.quantize(_HUNDREDTH)


def exact_line_amount(quantity: Decimal, unit_price_cents: int) -> Decimal:
    """Unrounded quantity x unit price, in cents."""
    return quantity * unit_price_cents


def line_amount_cents(quantity: Decimal, unit_price_cents: int) -> int:
    """Stored line item amount: quantity x unit price rounded once."""
    return round_half_up(exact_line_amount(quantity, unit_price_cents))


def exact_subtotal(lines: Iterable[tuple[Decimal, int]]) -> Decimal:
    """Unrounded sum of quantity x unit price over (quantity, unit_price_cents) pairs."""
    return sum((exact_line_amount(q, p) for q, p in lines), Decimal(0))


def tax_cents(exact_amount: Decimal, tax_rate: Decimal) -> int:
    """Tax on an unrounded amount, rounded once."""
    return round_half_up(exact_amount * tax_rate / 100)


def format_cents(cents: int, currency_symbol: str = "$") -> str:
    """Render cents for humans: 13250 -> '$132.50'."""
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), CENTS_PER_UNIT)
    return f"{sign}{currency_symbol}{whole:,}.{frac:02d}"


def cents_to_decimal(cents: int) -> Decimal:
    """Cents as a major-unit Decimal with two places: 13250 -> Decimal('132.50')."""
    return (Decimal(cents) / CENTS_PER_UNIT).quantize(_HUNDREDTH)
