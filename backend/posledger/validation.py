from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .errors import ValidationError


# Maximum money value: 9,999,999,999.99 (Numeric(12, 2))
# Prevents database overflow and nonsensical amounts
MAX_MONEY = Decimal("9999999999.99")

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize_money(value: Decimal) -> Decimal:
    """Round to 2 fractional digits, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_money(value, field: str, *, allow_negative: bool = False) -> Decimal:
    """
    Strict money coercion.

    Accepts Decimal, int, or a plain decimal string. Floats are rejected
    because they cannot represent cents exactly; bools and None are rejected
    so a missing amount is never silently read as zero.
    """
    if value is None:
        raise ValidationError(f"{field} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a decimal amount")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be a Decimal or string, not a float")

    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, int):
        amount = Decimal(value)
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be a decimal amount")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain decimal (scientific notation not allowed)")
        try:
            amount = Decimal(stripped)
        except InvalidOperation:
            raise ValidationError(f"{field} must be a decimal amount")
    else:
        raise ValidationError(f"{field} must be a decimal amount")

    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite amount")
    if amount.as_tuple().exponent < -2:
        raise ValidationError(f"{field} cannot have more than 2 decimal places")
    if not allow_negative and amount < 0:
        raise ValidationError(f"{field} cannot be negative")
    if abs(amount) > MAX_MONEY:
        raise ValidationError(f"{field} exceeds maximum allowed amount")

    return quantize_money(amount)


def to_quantity(value, field: str, *, minimum: int = 1) -> int:
    """Strict integer quantity; rejects bools, floats and numeric strings."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value < minimum:
        raise ValidationError(f"{field} must be at least {minimum}")
    return value


def require_id(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} is required")
    return value
