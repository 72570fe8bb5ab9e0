"""Integer money arithmetic.

Every amount in this package is an ``int`` counting centavos (the smallest
currency unit).  Rates are ``Decimal`` fractions (``Decimal("0.015")`` is
1.5 %).  Nothing in here ever touches ``float``; conversions go through
``Decimal`` and results are rounded half-up to a whole centavo.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Sequence, Union

Money = int

RateLike = Union[Decimal, int, str]

CENTAVOS_PER_UNIT = 100


def to_rate(value: RateLike) -> Decimal:
    """Normalise a rate into a ``Decimal``.  Floats are rejected."""
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"Rates must be Decimal, int or str, got {type(value).__name__}")
    return value if isinstance(value, Decimal) else Decimal(str(value))


def round_half_up(value: Decimal) -> Money:
    """Round a Decimal quantity of centavos to the nearest whole centavo."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def floor_div(amount: Money, divisor: Money) -> int:
    if divisor <= 0:
        raise ValueError("divisor must be positive")
    return amount // divisor


def apply_rate(amount: Money, rate: RateLike) -> Money:
    """``amount × rate`` rounded half-up.  Used for fees, discounts and interest."""
    return round_half_up(Decimal(amount) * to_rate(rate))


def allocate_proportionally(amount: Money, weights: Sequence[Money]) -> list[Money]:
    """Distribute *amount* across *weights* using the largest-remainder method.

    The shares are exact integers and always sum to *amount*; ties on the
    fractional remainder go to the earlier weight.
    """
    if amount < 0:
        raise ValueError("amount must not be negative")
    if any(w < 0 for w in weights):
        raise ValueError("weights must not be negative")
    total_weight = sum(weights)
    if total_weight == 0:
        return [0 for _ in weights]

    shares = []
    remainders = []
    for idx, weight in enumerate(weights):
        quotient, remainder = divmod(amount * weight, total_weight)
        shares.append(quotient)
        remainders.append((remainder, -idx))

    leftover = amount - sum(shares)
    for _, neg_idx in sorted(remainders, reverse=True)[:leftover]:
        shares[-neg_idx] += 1
    return shares


def total(amounts: Iterable[Money]) -> Money:
    return sum(amounts, 0)


def format_money(amount: Money, currency: str = "PHP") -> str:
    """Render centavos in major units, e.g. ``123456 -> 'PHP 1,234.56'``."""
    sign = "-" if amount < 0 else ""
    major, minor = divmod(abs(amount), CENTAVOS_PER_UNIT)
    return f"{sign}{currency} {major:,}.{minor:02d}"
