"""
SALE AMOUNTS - DECIMAL PRECISION

Amounts are calculated in Decimal and stored as 2-place floats.
The transaction total is fixed once at creation:

    totalAmount = amount + fees
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Dict, Union
import logging

from title_registry.errors import ValidationError

logger = logging.getLogger(__name__)

QUANTIZE_PATTERN = Decimal('0.01')

Number = Union[float, int, str, Decimal]


def to_decimal(value: Number) -> Decimal:
    """
    Convert a numeric value to Decimal without rounding.
    Floats go through str() to avoid binary artefacts.
    """
    if isinstance(value, bool):
        raise ValidationError(f"Cannot convert boolean to an amount: {value}")
    if isinstance(value, Decimal):
        return value
    try:
        if isinstance(value, (int, float)):
            return Decimal(str(value))
        if isinstance(value, str):
            return Decimal(value.strip())
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {value!r}")
    raise ValidationError(f"Cannot convert {type(value).__name__} to an amount")


def round_financial(value: Number) -> Decimal:
    """Round to 2 decimal places, half up."""
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Number) -> float:
    """Round and convert to float for document storage."""
    return float(round_financial(value))


def validate_positive(value: Number, field_name: str) -> Decimal:
    """Return the value as Decimal, raising ValidationError unless it is > 0."""
    decimal_value = to_decimal(value)
    if not decimal_value.is_finite() or decimal_value <= Decimal('0'):
        raise ValidationError(f"'{field_name}' must be greater than zero: {value}")
    return decimal_value


def calculate_transaction_amounts(amount: Number, fees: Number) -> Dict[str, float]:
    """
    Compute the stored amount/fees/totalAmount triple for a new transaction.
    """
    amount_dec = validate_positive(amount, "amount")
    fees_dec = to_decimal(fees)
    if fees_dec < Decimal('0'):
        raise ValidationError(f"'fees' cannot be negative: {fees}")

    total = round_financial(amount_dec) + round_financial(fees_dec)

    return {
        "amount": to_float(amount_dec),
        "fees": to_float(fees_dec),
        "totalAmount": to_float(total),
    }
