from decimal import ROUND_HALF_UP, Decimal
from typing import Union

MONEY_PLACES = 4
PERCENT_PLACES = 2

MONEY_QUANTUM = Decimal(1).scaleb(-MONEY_PLACES)
PERCENT_QUANTUM = Decimal(1).scaleb(-PERCENT_PLACES)

ZERO = Decimal("0").quantize(MONEY_QUANTUM)
HUNDRED = Decimal("100")

Number = Union[Decimal, int, str]


def to_money(value: Number) -> Decimal:
    return Decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def to_percent(value: Number) -> Decimal:
    return Decimal(value).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


def percentage_of(part: Decimal, total: Decimal) -> Decimal:
    # A non-positive total has no meaningful share; report 0 instead of dividing.
    if total <= 0:
        return to_percent(0)
    return to_percent(part * HUNDRED / total)
