"""Decimal helpers for prices, amounts and raw promotion values."""
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

CENT = Decimal('0.01')
ZERO = Decimal('0')
HUNDRED = Decimal('100')

NUMBER_PATTERN = re.compile(r"(\d+(?:\.\d+)?)")


def to_decimal(value, field: str = 'value') -> Decimal:
    """
    Convert an int, float, Decimal or numeric string to Decimal.

    Floats go through str() so 0.1 stays 0.1.

    Raises:
        ValueError: if the value is empty or not numeric.
    """
    if value is None or value == '':
        raise ValueError(f'{field} is required')
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f'{field} must be numeric, got {value!r}')
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f'{field} must be numeric, got {value!r}')


def parse_amount(value) -> Decimal:
    """
    Extract the first number of a loosely formatted amount.

    Accepts what catalog records carry: "50%", "₱10.50", " 15 ", 20, 7.5.

    Raises:
        ValueError: if no number can be found or it is negative.
    """
    if value is None:
        raise ValueError('Amount is required')

    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        amount = to_decimal(value)
    else:
        match = NUMBER_PATTERN.search(str(value))
        if not match:
            raise ValueError(f'No numeric amount in {value!r}')
        amount = Decimal(match.group(1))

    if amount < 0:
        raise ValueError('Amount cannot be negative')
    return amount


def round2(value: Decimal) -> Decimal:
    """Round to cents, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)
