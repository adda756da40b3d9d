"""
Fixed-point monetary amounts in BRL.

Amounts are held as integer centavos. Construction goes through
``Money.parse`` which rejects anything that cannot be represented exactly
with two decimal places (binary floats included), non-finite values and
values outside an optional range.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from troco_service.errors import InvalidAmount

CENT = Decimal("0.01")

# 100 billion reais; anything beyond is treated as an arithmetic overflow
MAX_CENTS = 10 ** 13

AmountLike = Union["Money", Decimal, int, float, str]


@dataclass(frozen=True, order=True)
class Money:
    cents: int

    def __post_init__(self):
        if isinstance(self.cents, bool) or not isinstance(self.cents, int):
            raise InvalidAmount(f"Money must be built from integer centavos, got {self.cents!r}")
        if abs(self.cents) > MAX_CENTS:
            raise InvalidAmount("Monetary amount overflow", context={"cents": self.cents})

    @classmethod
    def zero(cls) -> "Money":
        return cls(0)

    @classmethod
    def parse(cls, value: AmountLike, minimum: Optional["Money"] = None,
              maximum: Optional["Money"] = None, field: str = "amount") -> "Money":
        if isinstance(value, Money):
            money = value
        else:
            money = cls(_to_cents(value, field))
        if minimum is not None and money < minimum:
            raise InvalidAmount(f"Amount {money} is below the minimum of {minimum}", field=field,
                                context={"minimum": str(minimum)})
        if maximum is not None and money > maximum:
            raise InvalidAmount(f"Amount {money} exceeds the maximum of {maximum}", field=field,
                                context={"maximum": str(maximum)})
        return money

    def __add__(self, other: "Money") -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.cents + other.cents)

    def __sub__(self, other: "Money") -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.cents - other.cents)

    def __neg__(self) -> "Money":
        return Money(-self.cents)

    @property
    def is_zero(self) -> bool:
        return self.cents == 0

    @property
    def is_negative(self) -> bool:
        return self.cents < 0

    def to_decimal(self) -> Decimal:
        return (Decimal(self.cents) * CENT).quantize(CENT)

    def __str__(self) -> str:
        return str(self.to_decimal())

    def format_brl(self) -> str:
        """Display form, e.g. ``R$ 1.234,56``"""
        sign = "-" if self.cents < 0 else ""
        reais, centavos = divmod(abs(self.cents), 100)
        grouped = f"{reais:,}".replace(",", ".")
        return f"{sign}R$ {grouped},{centavos:02d}"


def _to_cents(value, field: str) -> int:
    if isinstance(value, bool):
        raise InvalidAmount(f"Invalid amount: {value!r}", field=field)
    if isinstance(value, float):
        # repr() gives the shortest decimal that round-trips, so 10.5 stays 10.5
        # while 0.1 + 0.2 is caught by the precision check below
        value = repr(value)
    try:
        amount = Decimal(value.strip()) if isinstance(value, str) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"Invalid amount: {value!r}", field=field)
    if not amount.is_finite():
        raise InvalidAmount(f"Amount must be finite, got {value!r}", field=field)
    if amount.adjusted() >= 15:
        raise InvalidAmount("Monetary amount overflow", field=field)
    if amount != amount.quantize(CENT):
        raise InvalidAmount(f"Amount {value!r} has more than two decimal places", field=field)
    return int(amount * 100)


# System-wide bounds for a single PIX payout
PAYOUT_MIN = Money(1)
PAYOUT_MAX = Money(9999)

