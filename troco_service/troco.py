"""
Change (troco) calculation
"""
from dataclasses import dataclass

from common.error_handling import ErrorCodes
from troco_service.errors import ValidationError
from troco_service.money import AmountLike, Money


@dataclass(frozen=True)
class ChangeQuote:
    total: Money
    paid: Money
    change: Money

    @property
    def has_change(self) -> bool:
        return not self.change.is_zero


def compute_change(total: AmountLike, paid: AmountLike) -> ChangeQuote:
    """Change owed when ``paid`` covers ``total``; underpayment is rejected"""
    total = Money.parse(total, minimum=Money(1), field="total_amount")
    paid = Money.parse(paid, minimum=Money.zero(), field="paid_amount")
    change = paid - total
    if change.is_negative:
        raise ValidationError(
            ErrorCodes.NEGATIVE_CHANGE,
            f"Paid amount {paid} does not cover the total of {total}",
            field="paid_amount",
            context={"missing": str(-change)},
        )
    return ChangeQuote(total=total, paid=paid, change=change)
