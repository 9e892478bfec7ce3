"""
DECIMAL PRECISION & LAND SALES ARITHMETIC

This module provides:
1. Decimal precision lock (2-decimal money, 4-decimal hectares)
2. Safe arithmetic helpers
3. Value validation (no negative amounts)
4. Locked formulas for agreements, commissions, installments and area
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union
import logging

from landsales.core.errors import ValidationError

logger = logging.getLogger(__name__)

Number = Union[float, int, str, Decimal]

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
AREA_QUANTIZE_PATTERN = Decimal('0.0001')

SQM_PER_HECTARE = Decimal('10000')
SQM_PER_ACRE = Decimal('4046.8564224')


class FinancialPrecisionError(ValidationError):
    """Raised when a value cannot be handled as a Decimal"""

    def __init__(self, message: str):
        super().__init__(error_type="INVALID_NUMBER", message=message)


class NegativeValueError(ValidationError):
    """Raised when a negative (or zero, where positive is required) value is detected"""

    def __init__(self, field_name: str, message: str, value):
        super().__init__(
            error_type="NEGATIVE_VALUE",
            message=message,
            details={"field": field_name, "value": str(value)}
        )


def to_decimal(value: Number) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")
    try:
        if isinstance(value, (int, float)):
            # Convert via string to avoid float precision issues
            return Decimal(str(value))
        if isinstance(value, str):
            return Decimal(value)
    except InvalidOperation:
        raise FinancialPrecisionError(f"Cannot convert '{value}' to Decimal")
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Number) -> Decimal:
    """
    Round a value to 2 decimal places (half up).
    This should be called ONLY at calculation boundaries.
    """
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def round_area(value: Number) -> Decimal:
    """Round an area in hectares to 4 decimal places"""
    return to_decimal(value).quantize(AREA_QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Number) -> float:
    """
    Convert Decimal back to float for MongoDB storage.
    Rounds to 2 decimal places first.
    """
    return float(round_financial(value))


def validate_non_negative(value: Number, field_name: str) -> None:
    """Raises NegativeValueError if value < 0"""
    if to_decimal(value) < Decimal('0'):
        raise NegativeValueError(
            field_name,
            f"Value '{field_name}' cannot be negative: {value}",
            value
        )


def validate_positive(value: Number, field_name: str) -> None:
    """Raises NegativeValueError if value <= 0"""
    if to_decimal(value) <= Decimal('0'):
        raise NegativeValueError(
            field_name,
            f"Value '{field_name}' must be positive: {value}",
            value
        )


def safe_multiply(a: Number, b: Number) -> Decimal:
    return to_decimal(a) * to_decimal(b)


def safe_divide(numerator: Number, denominator: Number) -> Decimal:
    """Safe division with zero check"""
    denom = to_decimal(denominator)
    if denom == Decimal('0'):
        return Decimal('0')
    return to_decimal(numerator) / denom


def safe_subtract(a: Number, b: Number) -> Decimal:
    return to_decimal(a) - to_decimal(b)


def safe_add(*values: Number) -> Decimal:
    """Safe addition of multiple values"""
    result = Decimal('0')
    for v in values:
        result += to_decimal(v)
    return result


def calculate_percentage(amount: Number, percentage: Number) -> Decimal:
    """
    Calculate percentage of an amount.
    Example: calculate_percentage(1000, 10) = 100
    """
    return safe_multiply(amount, safe_divide(percentage, Decimal('100')))


# ===== AREA =====

def sqm_to_hectares(size_sqm: Number) -> Decimal:
    return safe_divide(size_sqm, SQM_PER_HECTARE)


def sqm_to_acres(size_sqm: Number) -> float:
    return float(round_area(safe_divide(size_sqm, SQM_PER_ACRE)))


def calculate_price_per_sqm(list_price: Number, size_sqm: Number) -> float:
    """price_per_sqm = list_price / size_sqm"""
    validate_positive(size_sqm, 'size_sqm')
    return to_float(safe_divide(list_price, size_sqm))


# ===== AGREEMENTS & COMMISSIONS =====

def calculate_agreement_balance(price: Number, deposit_paid: Number) -> dict:
    """
    LOCKED FORMULA:
    - balance_due = price - deposit_paid

    Returns rounded values ready for storage.
    """
    validate_positive(price, 'price')
    validate_non_negative(deposit_paid, 'deposit_paid')

    balance_due = safe_subtract(price, deposit_paid)

    return {
        'deposit_paid': to_float(deposit_paid),
        'balance_due': to_float(balance_due)
    }


def calculate_commission_values(
    price: Number,
    rate: Number,
    withholding_rate: Number = 0
) -> dict:
    """
    LOCKED FORMULAS:
    - amount = price * (rate / 100)
    - withholding_tax = amount * (withholding_rate / 100)
    - net_amount = amount - withholding_tax
    - balance = amount (nothing paid yet)
    """
    validate_positive(price, 'price')
    validate_non_negative(rate, 'commission_rate')
    if to_decimal(rate) > Decimal('100'):
        raise ValidationError(
            error_type="INVALID_COMMISSION_RATE",
            message=f"Commission rate must be between 0 and 100: {rate}",
            details={"rate": str(rate)}
        )
    validate_non_negative(withholding_rate, 'withholding_rate')

    amount = calculate_percentage(price, rate)
    withholding_tax = calculate_percentage(amount, withholding_rate)

    return {
        'base_amount': to_float(price),
        'rate_applied': float(to_decimal(rate)),
        'amount': to_float(amount),
        'withholding_tax': to_float(withholding_tax),
        'net_amount': to_float(safe_subtract(amount, withholding_tax)),
        'balance': to_float(amount)
    }


def calculate_installment_amount(
    price: Number,
    deposit_percent: Number,
    number_of_installments: int
) -> float:
    """
    LOCKED FORMULA:
    - installment_amount = (price - price * deposit_percent / 100) / number_of_installments
    """
    validate_positive(price, 'price')
    validate_non_negative(deposit_percent, 'deposit_percent')
    validate_positive(number_of_installments, 'number_of_installments')

    financed = safe_subtract(price, calculate_percentage(price, deposit_percent))
    return to_float(safe_divide(financed, number_of_installments))
