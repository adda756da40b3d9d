"""
Limit policy: decides whether a sub-account may pay out a given amount.

Checks run in a fixed order and the first failing one is reported.
Amounts already reserved by open transactions count against both the
balance and the daily limit.
"""
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional

from troco_service.errors import PolicyDenied
from troco_service.ledger import WalletState
from troco_service.money import Money


class DenialReason(str, Enum):
    ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
    EXCEEDS_TX_LIMIT = "EXCEEDS_TX_LIMIT"
    EXCEEDS_DAILY_LIMIT = "EXCEEDS_DAILY_LIMIT"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"


_MESSAGES = {
    DenialReason.ACCOUNT_INACTIVE: "Sub-account is inactive",
    DenialReason.EXCEEDS_TX_LIMIT: "Amount exceeds the per-transaction limit",
    DenialReason.EXCEEDS_DAILY_LIMIT: "Amount exceeds the remaining daily limit",
    DenialReason.INSUFFICIENT_BALANCE: "Insufficient balance",
}


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    reason: Optional[DenialReason] = None

    def raise_if_denied(self, context: dict = None):
        if not self.allowed:
            raise PolicyDenied(self.reason.value, _MESSAGES[self.reason], context=context)


ALLOWED = PolicyDecision(True)


def can_payout(wallet: WalletState, amount: Money, today: date) -> PolicyDecision:
    wallet = wallet.rolled_over(today)
    if not wallet.is_active:
        return PolicyDecision(False, DenialReason.ACCOUNT_INACTIVE)
    if amount > wallet.max_per_transaction:
        return PolicyDecision(False, DenialReason.EXCEEDS_TX_LIMIT)
    if wallet.daily_used + wallet.reserved + amount > wallet.daily_limit:
        return PolicyDecision(False, DenialReason.EXCEEDS_DAILY_LIMIT)
    if amount > wallet.available:
        return PolicyDecision(False, DenialReason.INSUFFICIENT_BALANCE)
    return ALLOWED
