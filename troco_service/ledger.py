"""
Ledger store: accounts, sub-account wallets and PIX transactions.

Every write that touches wallet counters is a compare-and-swap: the caller
passes the wallet state it read and the state it wants, and the store
applies the change only if the row still holds the expected state. A
transaction status change may carry such a wallet update, in which case
both are applied together or not at all.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional

from common.error_handling import ErrorCodes
from troco_service.errors import ConflictError, NotFoundError
from troco_service.money import Money


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionStatus.COMPLETED, TransactionStatus.CANCELLED)


class TransactionSource(str, Enum):
    WEB = "web"
    DEVICE = "arduino"


# Columns a status update may set alongside the new status
TRANSACTION_FIELDS = frozenset({"gateway_tx_id", "end_to_end_id", "error_message", "retry_count", "processed_at"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WalletState:
    """Mutable counters of a sub-account, compared as a whole on every conditional write"""
    balance: Money
    reserved: Money
    daily_used: Money
    daily_count: int
    daily_limit: Money
    max_per_transaction: Money
    is_active: bool
    last_reset: date

    @property
    def available(self) -> Money:
        return self.balance - self.reserved

    @property
    def remaining_daily_limit(self) -> Money:
        remaining = self.daily_limit - self.daily_used - self.reserved
        return remaining if not remaining.is_negative else Money.zero()

    def rolled_over(self, today: date) -> "WalletState":
        """Lazy daily reset: the first touch on a new calendar day zeroes the day counters"""
        if self.last_reset < today:
            return replace(self, daily_used=Money.zero(), daily_count=0, last_reset=today)
        return self

    def hold(self, amount: Money) -> "WalletState":
        return replace(self, reserved=self.reserved + amount)

    def release(self, amount: Money) -> "WalletState":
        return replace(self, reserved=_floor_zero(self.reserved - amount))

    def settle(self, amount: Money) -> "WalletState":
        return replace(
            self,
            balance=self.balance - amount,
            reserved=_floor_zero(self.reserved - amount),
            daily_used=self.daily_used + amount,
            daily_count=self.daily_count + 1,
        )

    def credit(self, amount: Money) -> "WalletState":
        return replace(self, balance=self.balance + amount)


def _floor_zero(amount: Money) -> Money:
    return amount if not amount.is_negative else Money.zero()


@dataclass(frozen=True)
class Account:
    id: str
    name: str
    tax_id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class SubAccount:
    id: str
    account_id: str
    company_name: str
    wallet: WalletState
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class PixTransaction:
    id: str
    sub_account_id: str
    account_id: str
    pix_key: str
    pix_key_type: str
    amount: Money
    status: TransactionStatus = TransactionStatus.PENDING
    source: TransactionSource = TransactionSource.WEB
    description: str = ""
    gateway_tx_id: Optional[str] = None
    end_to_end_id: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


@dataclass(frozen=True)
class Establishment:
    id: str
    code: str
    account_id: str
    sub_account_id: str
    name: str
    tax_id: Optional[str] = None
    is_active: bool = True
    last_seen: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class WalletUpdate:
    sub_account_id: str
    expected: WalletState
    new: WalletState


@dataclass
class TransactionSummary:
    counts: Dict[TransactionStatus, int] = field(default_factory=dict)
    totals: Dict[TransactionStatus, Money] = field(default_factory=dict)

    def add(self, status: TransactionStatus, amount: Money, count: int = 1):
        self.counts[status] = self.counts.get(status, 0) + count
        self.totals[status] = self.totals.get(status, Money.zero()) + amount

    @property
    def total_count(self) -> int:
        return sum(self.counts.values())


class LedgerStore(ABC):
    """Persistence boundary of the payout engine"""

    # Accounts
    @abstractmethod
    async def create_account(self, account: Account, sub_account: SubAccount) -> None: ...

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]: ...

    @abstractmethod
    async def set_account_active(self, account_id: str, is_active: bool) -> Account: ...

    # Wallets
    @abstractmethod
    async def get_sub_account(self, sub_account_id: str) -> Optional[SubAccount]: ...

    @abstractmethod
    async def get_sub_account_for_account(self, account_id: str) -> Optional[SubAccount]: ...

    @abstractmethod
    async def conditional_update_sub_account(self, sub_account_id: str, expected: WalletState,
                                             new: WalletState) -> SubAccount:
        """Raises ConflictError if the stored wallet no longer equals ``expected``"""

    # Transactions
    @abstractmethod
    async def create_transaction(self, transaction: PixTransaction,
                                 wallet_update: Optional[WalletUpdate] = None) -> PixTransaction: ...

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[PixTransaction]: ...

    @abstractmethod
    async def update_transaction_status(self, transaction_id: str, from_status: TransactionStatus,
                                        to_status: TransactionStatus, fields: Optional[dict] = None,
                                        wallet_update: Optional[WalletUpdate] = None) -> PixTransaction:
        """Raises ConflictError if the status is no longer ``from_status`` or the wallet changed"""

    @abstractmethod
    async def list_transactions(self, sub_account_id: str, statuses: Optional[Iterable[TransactionStatus]] = None,
                                limit: int = 50, offset: int = 0) -> List[PixTransaction]: ...

    @abstractmethod
    async def summarize_transactions(self, sub_account_id: str) -> TransactionSummary: ...

    # Establishments (device access)
    @abstractmethod
    async def create_establishment(self, establishment: Establishment) -> Establishment: ...

    @abstractmethod
    async def get_establishment_by_code(self, code: str) -> Optional[Establishment]: ...

    @abstractmethod
    async def list_establishments(self, account_id: str) -> List[Establishment]: ...

    @abstractmethod
    async def touch_establishment(self, code: str, seen_at: datetime) -> Optional[Establishment]: ...


def check_transaction_fields(fields: Optional[dict]) -> dict:
    fields = dict(fields or {})
    unknown = set(fields) - TRANSACTION_FIELDS
    if unknown:
        raise ValueError(f"Cannot update transaction fields: {sorted(unknown)}")
    return fields


class InMemoryLedgerStore(LedgerStore):
    """Document-style backend kept in process memory.

    No method awaits between reading and writing, so each call runs to
    completion on the event loop and is atomic with respect to other tasks.
    """

    def __init__(self):
        self._accounts: Dict[str, Account] = {}
        self._sub_accounts: Dict[str, SubAccount] = {}
        self._transactions: Dict[str, PixTransaction] = {}
        self._establishments: Dict[str, Establishment] = {}

    async def create_account(self, account: Account, sub_account: SubAccount) -> None:
        if account.id in self._accounts or sub_account.id in self._sub_accounts:
            raise ConflictError("Account already exists", "account", account.id)
        now = utcnow()
        self._accounts[account.id] = replace(account, created_at=account.created_at or now)
        self._sub_accounts[sub_account.id] = replace(sub_account, created_at=sub_account.created_at or now,
                                                     updated_at=now)

    async def get_account(self, account_id: str) -> Optional[Account]:
        return self._accounts.get(account_id)

    async def set_account_active(self, account_id: str, is_active: bool) -> Account:
        if account_id not in self._accounts:
            raise NotFoundError(ErrorCodes.ACCOUNT_NOT_FOUND, f"Account {account_id} not found")
        account = replace(self._accounts[account_id], is_active=is_active)
        self._accounts[account_id] = account
        return account

    async def get_sub_account(self, sub_account_id: str) -> Optional[SubAccount]:
        return self._sub_accounts.get(sub_account_id)

    async def get_sub_account_for_account(self, account_id: str) -> Optional[SubAccount]:
        for sub_account in self._sub_accounts.values():
            if sub_account.account_id == account_id:
                return sub_account
        return None

    async def conditional_update_sub_account(self, sub_account_id: str, expected: WalletState,
                                             new: WalletState) -> SubAccount:
        self._check_wallet(WalletUpdate(sub_account_id, expected, new))
        return self._apply_wallet(WalletUpdate(sub_account_id, expected, new))

    async def create_transaction(self, transaction: PixTransaction,
                                 wallet_update: Optional[WalletUpdate] = None) -> PixTransaction:
        if transaction.id in self._transactions:
            raise ConflictError("Transaction already exists", "transaction", transaction.id)
        if wallet_update is not None:
            self._check_wallet(wallet_update)
            self._apply_wallet(wallet_update)
        now = utcnow()
        transaction = replace(transaction, created_at=transaction.created_at or now, updated_at=now)
        self._transactions[transaction.id] = transaction
        return transaction

    async def get_transaction(self, transaction_id: str) -> Optional[PixTransaction]:
        return self._transactions.get(transaction_id)

    async def update_transaction_status(self, transaction_id: str, from_status: TransactionStatus,
                                        to_status: TransactionStatus, fields: Optional[dict] = None,
                                        wallet_update: Optional[WalletUpdate] = None) -> PixTransaction:
        fields = check_transaction_fields(fields)
        current = self._transactions.get(transaction_id)
        if current is None or current.status != from_status:
            raise ConflictError(
                f"Transaction {transaction_id} is no longer {from_status.value}",
                "transaction", transaction_id,
            )
        if wallet_update is not None:
            self._check_wallet(wallet_update)
            self._apply_wallet(wallet_update)
        updated = replace(current, status=to_status, updated_at=utcnow(), **fields)
        self._transactions[transaction_id] = updated
        return updated

    async def list_transactions(self, sub_account_id: str, statuses: Optional[Iterable[TransactionStatus]] = None,
                                limit: int = 50, offset: int = 0) -> List[PixTransaction]:
        wanted = set(statuses) if statuses else None
        rows = [
            tx for tx in self._transactions.values()
            if tx.sub_account_id == sub_account_id and (wanted is None or tx.status in wanted)
        ]
        rows.sort(key=lambda tx: tx.created_at, reverse=True)
        return rows[offset:offset + limit]

    async def summarize_transactions(self, sub_account_id: str) -> TransactionSummary:
        summary = TransactionSummary()
        for tx in self._transactions.values():
            if tx.sub_account_id == sub_account_id:
                summary.add(tx.status, tx.amount)
        return summary

    async def create_establishment(self, establishment: Establishment) -> Establishment:
        if any(e.code == establishment.code for e in self._establishments.values()):
            raise ConflictError("Establishment code already in use", "establishment", establishment.code)
        establishment = replace(establishment, created_at=establishment.created_at or utcnow())
        self._establishments[establishment.id] = establishment
        return establishment

    async def get_establishment_by_code(self, code: str) -> Optional[Establishment]:
        for establishment in self._establishments.values():
            if establishment.code == code:
                return establishment
        return None

    async def list_establishments(self, account_id: str) -> List[Establishment]:
        return [e for e in self._establishments.values() if e.account_id == account_id]

    async def touch_establishment(self, code: str, seen_at: datetime) -> Optional[Establishment]:
        establishment = await self.get_establishment_by_code(code)
        if establishment is None:
            return None
        establishment = replace(establishment, last_seen=seen_at)
        self._establishments[establishment.id] = establishment
        return establishment

    def _check_wallet(self, update: WalletUpdate):
        current = self._sub_accounts.get(update.sub_account_id)
        if current is None or current.wallet != update.expected:
            raise ConflictError(
                f"Sub-account {update.sub_account_id} changed since it was read",
                "sub_account", update.sub_account_id,
            )

    def _apply_wallet(self, update: WalletUpdate) -> SubAccount:
        sub_account = replace(self._sub_accounts[update.sub_account_id], wallet=update.new, updated_at=utcnow())
        self._sub_accounts[update.sub_account_id] = sub_account
        return sub_account
