from dataclasses import replace
from datetime import date

import pytest

from troco_service.errors import PolicyDenied
from troco_service.ledger import WalletState
from troco_service.limits import DenialReason, can_payout
from troco_service.money import Money

TODAY = date(2026, 3, 10)


def wallet(**overrides) -> WalletState:
    base = WalletState(
        balance=Money.parse("50.00"),
        reserved=Money.zero(),
        daily_used=Money.zero(),
        daily_count=0,
        daily_limit=Money.parse("500.00"),
        max_per_transaction=Money.parse("99.99"),
        is_active=True,
        last_reset=TODAY,
    )
    return replace(base, **overrides)


def amount(value):
    return Money.parse(value)


class TestPriority:
    """The first failing check wins, in a fixed order"""

    def test_inactive_beats_everything(self):
        w = wallet(is_active=False, balance=Money.zero(), daily_used=Money.parse("500.00"))
        assert can_payout(w, amount("120.00"), TODAY).reason == DenialReason.ACCOUNT_INACTIVE

    def test_tx_limit_beats_daily_and_balance(self):
        w = wallet(balance=Money.zero(), daily_used=Money.parse("500.00"))
        assert can_payout(w, amount("120.00"), TODAY).reason == DenialReason.EXCEEDS_TX_LIMIT

    def test_daily_limit_beats_balance(self):
        w = wallet(balance=Money.zero(), daily_used=Money.parse("495.00"))
        assert can_payout(w, amount("10.00"), TODAY).reason == DenialReason.EXCEEDS_DAILY_LIMIT

    def test_insufficient_balance(self):
        w = wallet(balance=Money.parse("5.00"))
        assert can_payout(w, amount("10.00"), TODAY).reason == DenialReason.INSUFFICIENT_BALANCE


class TestBoundaries:
    def test_exact_limits_are_allowed(self):
        w = wallet(balance=Money.parse("99.99"), daily_used=Money.parse("400.01"))
        decision = can_payout(w, amount("99.99"), TODAY)
        assert decision.allowed
        assert decision.reason is None

    def test_reserved_funds_are_not_available(self):
        w = wallet(reserved=Money.parse("40.00"))
        assert can_payout(w, amount("10.00"), TODAY).allowed
        assert can_payout(w, amount("10.01"), TODAY).reason == DenialReason.INSUFFICIENT_BALANCE

    def test_reserved_funds_count_against_daily_limit(self):
        w = wallet(balance=Money.parse("1000.00"), daily_used=Money.parse("450.00"), reserved=Money.parse("45.00"))
        assert can_payout(w, amount("5.00"), TODAY).allowed
        assert can_payout(w, amount("5.01"), TODAY).reason == DenialReason.EXCEEDS_DAILY_LIMIT


class TestDailyReset:
    def test_new_day_clears_daily_usage(self):
        w = wallet(daily_used=Money.parse("500.00"), daily_count=12, last_reset=date(2026, 3, 9))
        assert can_payout(w, amount("10.00"), TODAY).allowed

        rolled = w.rolled_over(TODAY)
        assert rolled.daily_used.is_zero
        assert rolled.daily_count == 0
        assert rolled.last_reset == TODAY

    def test_same_day_keeps_usage(self):
        w = wallet(daily_used=Money.parse("500.00"))
        assert w.rolled_over(TODAY) is w
        assert can_payout(w, amount("0.01"), TODAY).reason == DenialReason.EXCEEDS_DAILY_LIMIT


def test_denial_raises_with_reason_code():
    decision = can_payout(wallet(balance=Money.parse("5.00")), amount("10.00"), TODAY)
    with pytest.raises(PolicyDenied) as exc:
        decision.raise_if_denied({"sub_account_id": "s1"})
    assert exc.value.reason == "INSUFFICIENT_BALANCE"
    assert exc.value.code == "INSUFFICIENT_BALANCE"
    assert exc.value.context == {"sub_account_id": "s1"}
