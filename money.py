from decimal import Decimal, InvalidOperation, ROUND_DOWN

from errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize(value) -> Decimal:
    """round a money value down to paise (2 dp)."""
    return Decimal(value).quantize(CENT, rounding=ROUND_DOWN)


def to_decimal(value, field: str = "amount") -> Decimal:
    """
    coerce user / gateway input into a Decimal.
    floats go through str() so 26.97 stays 26.97.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} is required")
    if isinstance(value, float):
        value = str(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number, got {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return result


def to_amount(value, field: str = "amount") -> Decimal:
    """positive money amount, at most 2 decimal places."""
    amount = to_decimal(value, field)
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    if amount != amount.quantize(CENT):
        raise ValidationError(f"{field} cannot have more than 2 decimal places")
    return amount.quantize(CENT)


def fmt(value) -> str:
    return f"{Decimal(value):.2f}"
