"""
Relational ledger backend (MySQL in production, SQLite in tests).

Sessions are synchronous and run on a worker thread. Conditional writes are
single UPDATE statements whose WHERE clause carries the expected state; a
rowcount other than one means another writer got there first.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from common.error_handling import ErrorCodes
from troco_service.db import make_engine, make_session_factory
from troco_service.errors import ConflictError, NotFoundError
from troco_service.ledger import (Account, Establishment, LedgerStore, PixTransaction, SubAccount,
                                  TransactionSource, TransactionStatus, TransactionSummary, WalletState,
                                  WalletUpdate, check_transaction_fields, utcnow)
from troco_service.models import AccountRow, Base, EstablishmentRow, PixTransactionRow, SubAccountRow
from troco_service.money import Money

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _wallet_values(wallet: WalletState) -> dict:
    return {
        "balance": wallet.balance.cents,
        "reserved": wallet.reserved.cents,
        "daily_used": wallet.daily_used.cents,
        "daily_count": wallet.daily_count,
        "daily_limit": wallet.daily_limit.cents,
        "max_per_transaction": wallet.max_per_transaction.cents,
        "is_active": wallet.is_active,
        "last_reset": wallet.last_reset,
    }


def _wallet_matches(wallet: WalletState) -> list:
    return [getattr(SubAccountRow, name) == value for name, value in _wallet_values(wallet).items()]


def _account(row: AccountRow) -> Account:
    return Account(id=row.id, name=row.name, tax_id=row.tax_id, email=row.email, phone=row.phone,
                   is_active=row.is_active, created_at=_aware(row.created_at))


def _sub_account(row: SubAccountRow) -> SubAccount:
    wallet = WalletState(
        balance=Money(row.balance),
        reserved=Money(row.reserved),
        daily_used=Money(row.daily_used),
        daily_count=row.daily_count,
        daily_limit=Money(row.daily_limit),
        max_per_transaction=Money(row.max_per_transaction),
        is_active=row.is_active,
        last_reset=row.last_reset,
    )
    return SubAccount(id=row.id, account_id=row.account_id, company_name=row.company_name, wallet=wallet,
                      created_at=_aware(row.created_at), updated_at=_aware(row.updated_at))


def _transaction(row: PixTransactionRow) -> PixTransaction:
    return PixTransaction(
        id=row.id,
        sub_account_id=row.sub_account_id,
        account_id=row.account_id,
        pix_key=row.pix_key,
        pix_key_type=row.pix_key_type,
        amount=Money(row.amount),
        status=TransactionStatus(row.status),
        source=TransactionSource(row.source),
        description=row.description or "",
        gateway_tx_id=row.gateway_tx_id,
        end_to_end_id=row.end_to_end_id,
        error_message=row.error_message,
        retry_count=row.retry_count,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        processed_at=_aware(row.processed_at),
    )


def _establishment(row: EstablishmentRow) -> Establishment:
    return Establishment(id=row.id, code=row.code, account_id=row.account_id, sub_account_id=row.sub_account_id,
                         name=row.name, tax_id=row.tax_id, is_active=row.is_active,
                         last_seen=_aware(row.last_seen), created_at=_aware(row.created_at))


class SqlLedgerStore(LedgerStore):
    def __init__(self, session_factory):
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, url: str = None, create_schema: bool = True) -> "SqlLedgerStore":
        engine = make_engine(url)
        if create_schema:
            Base.metadata.create_all(bind=engine)
        return cls(make_session_factory(engine))

    async def _run(self, fn, *args):
        return await asyncio.to_thread(fn, *args)

    # Accounts
    async def create_account(self, account: Account, sub_account: SubAccount) -> None:
        await self._run(self._create_account, account, sub_account)

    def _create_account(self, account: Account, sub_account: SubAccount):
        now = utcnow()
        with self._session_factory() as db:
            try:
                db.add(AccountRow(id=account.id, name=account.name, tax_id=account.tax_id, email=account.email,
                                  phone=account.phone, is_active=account.is_active,
                                  created_at=account.created_at or now))
                # Parent row first so the foreign key holds on backends that check it eagerly
                db.flush()
                db.add(SubAccountRow(id=sub_account.id, account_id=account.id,
                                     company_name=sub_account.company_name,
                                     created_at=sub_account.created_at or now, updated_at=now,
                                     **_wallet_values(sub_account.wallet)))
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ConflictError("Account already exists", "account", account.id) from e

    async def get_account(self, account_id: str) -> Optional[Account]:
        return await self._run(self._get_account, account_id)

    def _get_account(self, account_id: str) -> Optional[Account]:
        with self._session_factory() as db:
            row = db.get(AccountRow, account_id)
            return _account(row) if row else None

    async def set_account_active(self, account_id: str, is_active: bool) -> Account:
        return await self._run(self._set_account_active, account_id, is_active)

    def _set_account_active(self, account_id: str, is_active: bool) -> Account:
        with self._session_factory() as db:
            row = db.get(AccountRow, account_id)
            if row is None:
                raise NotFoundError(ErrorCodes.ACCOUNT_NOT_FOUND, f"Account {account_id} not found")
            row.is_active = is_active
            db.commit()
            return _account(row)

    # Wallets
    async def get_sub_account(self, sub_account_id: str) -> Optional[SubAccount]:
        return await self._run(self._get_sub_account, sub_account_id)

    def _get_sub_account(self, sub_account_id: str) -> Optional[SubAccount]:
        with self._session_factory() as db:
            row = db.get(SubAccountRow, sub_account_id)
            return _sub_account(row) if row else None

    async def get_sub_account_for_account(self, account_id: str) -> Optional[SubAccount]:
        return await self._run(self._get_sub_account_for_account, account_id)

    def _get_sub_account_for_account(self, account_id: str) -> Optional[SubAccount]:
        with self._session_factory() as db:
            row = db.execute(
                select(SubAccountRow).where(SubAccountRow.account_id == account_id)
                .order_by(SubAccountRow.created_at).limit(1)
            ).scalar_one_or_none()
            return _sub_account(row) if row else None

    async def conditional_update_sub_account(self, sub_account_id: str, expected: WalletState,
                                             new: WalletState) -> SubAccount:
        return await self._run(self._conditional_update_sub_account, WalletUpdate(sub_account_id, expected, new))

    def _conditional_update_sub_account(self, wallet_update: WalletUpdate) -> SubAccount:
        with self._session_factory() as db:
            self._apply_wallet(db, wallet_update)
            db.commit()
            return _sub_account(db.get(SubAccountRow, wallet_update.sub_account_id))

    # Transactions
    async def create_transaction(self, transaction: PixTransaction,
                                 wallet_update: Optional[WalletUpdate] = None) -> PixTransaction:
        return await self._run(self._create_transaction, transaction, wallet_update)

    def _create_transaction(self, transaction: PixTransaction,
                            wallet_update: Optional[WalletUpdate]) -> PixTransaction:
        now = utcnow()
        with self._session_factory() as db:
            if wallet_update is not None:
                self._apply_wallet(db, wallet_update)
            row = PixTransactionRow(
                id=transaction.id,
                sub_account_id=transaction.sub_account_id,
                account_id=transaction.account_id,
                pix_key=transaction.pix_key,
                pix_key_type=transaction.pix_key_type,
                amount=transaction.amount.cents,
                description=transaction.description,
                status=transaction.status.value,
                source=transaction.source.value,
                gateway_tx_id=transaction.gateway_tx_id,
                end_to_end_id=transaction.end_to_end_id,
                error_message=transaction.error_message,
                retry_count=transaction.retry_count,
                created_at=transaction.created_at or now,
                updated_at=now,
                processed_at=transaction.processed_at,
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ConflictError("Transaction already exists", "transaction", transaction.id) from e
            return _transaction(row)

    async def get_transaction(self, transaction_id: str) -> Optional[PixTransaction]:
        return await self._run(self._get_transaction, transaction_id)

    def _get_transaction(self, transaction_id: str) -> Optional[PixTransaction]:
        with self._session_factory() as db:
            row = db.get(PixTransactionRow, transaction_id)
            return _transaction(row) if row else None

    async def update_transaction_status(self, transaction_id: str, from_status: TransactionStatus,
                                        to_status: TransactionStatus, fields: Optional[dict] = None,
                                        wallet_update: Optional[WalletUpdate] = None) -> PixTransaction:
        fields = check_transaction_fields(fields)
        return await self._run(self._update_transaction_status, transaction_id, from_status, to_status,
                               fields, wallet_update)

    def _update_transaction_status(self, transaction_id: str, from_status: TransactionStatus,
                                   to_status: TransactionStatus, fields: dict,
                                   wallet_update: Optional[WalletUpdate]) -> PixTransaction:
        with self._session_factory() as db:
            result = db.execute(
                update(PixTransactionRow)
                .where(PixTransactionRow.id == transaction_id, PixTransactionRow.status == from_status.value)
                .values(status=to_status.value, updated_at=utcnow(), **fields)
            )
            if result.rowcount != 1:
                db.rollback()
                raise ConflictError(f"Transaction {transaction_id} is no longer {from_status.value}",
                                    "transaction", transaction_id)
            if wallet_update is not None:
                self._apply_wallet(db, wallet_update)
            db.commit()
            return _transaction(db.get(PixTransactionRow, transaction_id))

    async def list_transactions(self, sub_account_id: str, statuses: Optional[Iterable[TransactionStatus]] = None,
                                limit: int = 50, offset: int = 0) -> List[PixTransaction]:
        statuses = [s.value for s in statuses] if statuses else None
        return await self._run(self._list_transactions, sub_account_id, statuses, limit, offset)

    def _list_transactions(self, sub_account_id: str, statuses: Optional[list], limit: int,
                           offset: int) -> List[PixTransaction]:
        stmt = select(PixTransactionRow).where(PixTransactionRow.sub_account_id == sub_account_id)
        if statuses:
            stmt = stmt.where(PixTransactionRow.status.in_(statuses))
        stmt = stmt.order_by(PixTransactionRow.created_at.desc()).limit(limit).offset(offset)
        with self._session_factory() as db:
            return [_transaction(row) for row in db.execute(stmt).scalars()]

    async def summarize_transactions(self, sub_account_id: str) -> TransactionSummary:
        return await self._run(self._summarize_transactions, sub_account_id)

    def _summarize_transactions(self, sub_account_id: str) -> TransactionSummary:
        stmt = (
            select(PixTransactionRow.status, func.count(), func.coalesce(func.sum(PixTransactionRow.amount), 0))
            .where(PixTransactionRow.sub_account_id == sub_account_id)
            .group_by(PixTransactionRow.status)
        )
        summary = TransactionSummary()
        with self._session_factory() as db:
            for status, count, total in db.execute(stmt):
                summary.add(TransactionStatus(status), Money(int(total)), count=count)
        return summary

    # Establishments
    async def create_establishment(self, establishment: Establishment) -> Establishment:
        return await self._run(self._create_establishment, establishment)

    def _create_establishment(self, establishment: Establishment) -> Establishment:
        with self._session_factory() as db:
            row = EstablishmentRow(id=establishment.id, code=establishment.code,
                                   account_id=establishment.account_id,
                                   sub_account_id=establishment.sub_account_id, name=establishment.name,
                                   tax_id=establishment.tax_id, is_active=establishment.is_active,
                                   created_at=establishment.created_at or utcnow())
            db.add(row)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ConflictError("Establishment code already in use", "establishment",
                                    establishment.code) from e
            return _establishment(row)

    async def get_establishment_by_code(self, code: str) -> Optional[Establishment]:
        return await self._run(self._get_establishment_by_code, code)

    def _get_establishment_by_code(self, code: str) -> Optional[Establishment]:
        with self._session_factory() as db:
            row = db.execute(select(EstablishmentRow).where(EstablishmentRow.code == code)).scalar_one_or_none()
            return _establishment(row) if row else None

    async def list_establishments(self, account_id: str) -> List[Establishment]:
        return await self._run(self._list_establishments, account_id)

    def _list_establishments(self, account_id: str) -> List[Establishment]:
        with self._session_factory() as db:
            rows = db.execute(
                select(EstablishmentRow).where(EstablishmentRow.account_id == account_id)
                .order_by(EstablishmentRow.created_at)
            ).scalars()
            return [_establishment(row) for row in rows]

    async def touch_establishment(self, code: str, seen_at: datetime) -> Optional[Establishment]:
        return await self._run(self._touch_establishment, code, seen_at)

    def _touch_establishment(self, code: str, seen_at: datetime) -> Optional[Establishment]:
        with self._session_factory() as db:
            db.execute(update(EstablishmentRow).where(EstablishmentRow.code == code).values(last_seen=seen_at))
            db.commit()
        return self._get_establishment_by_code(code)

    @staticmethod
    def _apply_wallet(db, wallet_update: WalletUpdate):
        result = db.execute(
            update(SubAccountRow)
            .where(SubAccountRow.id == wallet_update.sub_account_id, *_wallet_matches(wallet_update.expected))
            .values(updated_at=utcnow(), **_wallet_values(wallet_update.new))
        )
        if result.rowcount != 1:
            db.rollback()
            logger.info(f"Conditional update lost on sub-account {wallet_update.sub_account_id}")
            raise ConflictError(f"Sub-account {wallet_update.sub_account_id} changed since it was read",
                                "sub_account", wallet_update.sub_account_id)
