"""Amount conversions between API decimals and stored cents"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

CENT = Decimal("0.01")

# Largest amount whose cents fit a signed 64-bit column
MAX_CENTS = 2**63 - 1


def quantize_amount(value: Union[Decimal, int, float, str]) -> Decimal:
    """
    Normalize an amount to two fractional digits.

    Floats go through str() so 50.1 stays 50.10 instead of 50.0999...

    Raises:
        ValueError: If the value is not a finite number or has too many digits
    """
    try:
        amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
        if not amount.is_finite():
            raise ValueError(f"Invalid amount: {value!r}")
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e


def to_cents(amount: Decimal) -> int:
    return int(quantize_amount(amount) * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)
