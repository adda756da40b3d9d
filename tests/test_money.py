from decimal import Decimal

import pytest

from troco_service.errors import InvalidAmount
from troco_service.money import MAX_CENTS, PAYOUT_MAX, PAYOUT_MIN, Money


class TestParsing:
    """Amounts become exact centavos or are rejected"""

    @pytest.mark.parametrize("value, cents", [
        ("10.50", 1050),
        ("10.5", 1050),
        (" 7 ", 700),
        (10.5, 1050),
        (99.99, 9999),
        (3, 300),
        (Decimal("0.01"), 1),
    ])
    def test_accepts_two_decimal_places(self, value, cents):
        assert Money.parse(value).cents == cents

    @pytest.mark.parametrize("value", ["1.005", 0.1 + 0.2, "abc", "", None, True, "NaN", "Infinity", float("inf")])
    def test_rejects_unrepresentable_values(self, value):
        with pytest.raises(InvalidAmount):
            Money.parse(value)

    def test_range_is_enforced_when_given(self):
        with pytest.raises(InvalidAmount) as exc:
            Money.parse("100.00", minimum=PAYOUT_MIN, maximum=PAYOUT_MAX)
        assert exc.value.context == {"maximum": "99.99"}

        with pytest.raises(InvalidAmount):
            Money.parse("0.00", minimum=PAYOUT_MIN, maximum=PAYOUT_MAX)

        assert Money.parse("0.01", minimum=PAYOUT_MIN, maximum=PAYOUT_MAX) == PAYOUT_MIN
        assert Money.parse("99.99", minimum=PAYOUT_MIN, maximum=PAYOUT_MAX) == PAYOUT_MAX

    def test_field_name_is_reported(self):
        with pytest.raises(InvalidAmount) as exc:
            Money.parse("x", field="paid_amount")
        assert exc.value.field == "paid_amount"


class TestArithmetic:
    def test_add_subtract_compare(self):
        a, b = Money.parse("10.50"), Money.parse("0.75")
        assert (a + b).cents == 1125
        assert (a - b).cents == 975
        assert (b - a).is_negative
        assert a > b
        assert Money.zero().is_zero

    def test_overflow_is_detected(self):
        with pytest.raises(InvalidAmount):
            Money(MAX_CENTS) + Money(1)
        with pytest.raises(InvalidAmount):
            Money.parse("1e20")

    def test_only_integer_centavos(self):
        with pytest.raises(InvalidAmount):
            Money(10.5)
        with pytest.raises(InvalidAmount):
            Money(False)


class TestFormatting:
    def test_canonical_string(self):
        assert str(Money(1050)) == "10.50"
        assert str(Money(1)) == "0.01"

    def test_brl_display(self):
        assert Money(123456).format_brl() == "R$ 1.234,56"
        assert Money(1234).format_brl() == "R$ 12,34"
        assert Money(-5).format_brl() == "-R$ 0,05"
