"""
Currency Precision Module

Converts between boundary representations (strings, Decimals, floats from
forms) and the integer minor units used everywhere inside the engine.
Aggregation math never sees anything but ints.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Union
import re

from .errors import ValidationError


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    CAD = ("CAD", 2)  # Canadian Dollar, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def minor_per_major(self) -> int:
        """Minor units in one major unit (100 for cents)"""
        return 10 ** self.precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValidationError(f"Unknown currency code {code!r}", rule="currency")


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number ("$1,234.56", "1234,56")

    Returns:
        Decimal value

    Raises:
        ValidationError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValidationError("Amount must be a non-empty string", rule="amount_format")

    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    # Handle comma as decimal separator (European format)
    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - assume comma is thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:  # Likely decimal separator
            clean_value = clean_value.replace(',', '.')
        else:  # Likely thousands separator
            clean_value = clean_value.replace(',', '')
    else:
        clean_value = clean_value.replace(',', '')

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValidationError(f"Cannot convert {value!r} to an amount", rule="amount_format")


def to_minor_units(value: Union[str, int, float, Decimal],
                   currency: Currency = Currency.USD) -> int:
    """
    Convert a major-unit amount from an input boundary to integer minor units.

    Values with more fractional digits than the currency allows are rejected
    rather than rounded, so no drift enters the ledger.

    >>> to_minor_units("100.25")
    10025
    """
    if isinstance(value, bool):
        raise ValidationError("Amount must be numeric", rule="amount_format")
    if isinstance(value, str):
        amount = decimal_from_string(value)
    elif isinstance(value, float):
        # repr gives the shortest string that round-trips
        amount = Decimal(repr(value))
    elif isinstance(value, (int, Decimal)):
        amount = Decimal(value)
    else:
        raise ValidationError(f"Unsupported amount type {type(value).__name__}",
                              rule="amount_format")

    if not amount.is_finite():
        raise ValidationError("Amount must be finite", rule="amount_format")

    scaled = amount * currency.minor_per_major
    if scaled != scaled.to_integral_value():
        raise ValidationError(
            f"Amount {value} exceeds {currency.precision} decimal places for {currency.code}",
            rule="amount_precision",
            details={"amount": str(value), "currency": currency.code},
        )
    return int(scaled)


def from_minor_units(minor: int, currency: Currency = Currency.USD) -> Decimal:
    """Convert integer minor units to a Decimal in major units for output"""
    quantum = Decimal(1).scaleb(-currency.precision)
    return (Decimal(minor) / currency.minor_per_major).quantize(quantum)


def round_to_minor(value: Decimal) -> int:
    """Round a Decimal quantity of minor units half-up to an int"""
    return int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def format_amount(minor: int, currency: Currency = Currency.USD) -> str:
    """Format for display"""
    major = from_minor_units(minor, currency)
    if currency.precision == 0:
        return f"{currency.code} {major:,.0f}"
    return f"{currency.code} {major:,.{currency.precision}f}"
