"""
Payout orchestrator: drives a PIX transaction through its lifecycle.

    pending -> processing -> completed | failed | cancelled
    failed  -> pending (retry, bounded)

Funds are held on the sub-account from the moment a transaction is opened
and debited only when it completes. The policy check and the hold are one
conditional write, as are the debit and the ``completed`` mark, so no two
requests can spend the same money and no debit exists without a completed
transaction. No lock is held across an await; losing a conditional write
means re-reading and trying once more.
"""
import asyncio
import logging
import secrets
import string
import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from common.error_handling import ErrorCodes
from common.retry import LEDGER_CONFLICT_ATTEMPTS
from troco_service.errors import (ConflictError, IllegalTransition, NotFoundError, PolicyDenied,
                                  ReconciliationRequired, ValidationError)
from troco_service.gateway import (Debtor, GatewayError, PaymentGateway, PayoutReceipt, PayoutRequest, ProviderStatus,
                                   new_send_id)
from troco_service.ledger import (Account, Establishment, LedgerStore, PixTransaction, SubAccount,
                                  TransactionSource, TransactionStatus, TransactionSummary, WalletState,
                                  WalletUpdate, utcnow)
from troco_service.limits import PolicyDecision, can_payout
from troco_service.money import PAYOUT_MAX, PAYOUT_MIN, AmountLike, Money
from troco_service.pix_keys import resolve_key_type
from troco_service.troco import ChangeQuote, compute_change

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: {TransactionStatus.PROCESSING, TransactionStatus.CANCELLED},
    # processing -> processing records a lost gateway response without resolving it
    TransactionStatus.PROCESSING: {TransactionStatus.PROCESSING, TransactionStatus.COMPLETED,
                                   TransactionStatus.FAILED, TransactionStatus.CANCELLED},
    TransactionStatus.FAILED: {TransactionStatus.PENDING, TransactionStatus.CANCELLED},
    TransactionStatus.COMPLETED: set(),
    TransactionStatus.CANCELLED: set(),
}

ESTABLISHMENT_CODE_LENGTH = 8
DESCRIPTION_MAX_LENGTH = 140
_CODE_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class PayoutResult:
    transaction: PixTransaction
    warning: Optional[str] = None
    receipt: Optional[PayoutReceipt] = None


@dataclass(frozen=True)
class ChangeResult:
    quote: ChangeQuote
    payout: Optional[PayoutResult] = None


class PayoutOrchestrator:
    def __init__(self, store: LedgerStore, gateway: PaymentGateway, max_retries: int = 3,
                 clock: Callable[[], datetime] = utcnow, utc_offset_hours: int = -3,
                 default_max_per_transaction: Money = PAYOUT_MAX,
                 default_daily_limit: Money = Money(50000)):
        self.store = store
        self.gateway = gateway
        self.max_retries = max_retries
        self.clock = clock
        self.tz = timezone(timedelta(hours=utc_offset_hours))
        self.default_max_per_transaction = default_max_per_transaction
        self.default_daily_limit = default_daily_limit

    @classmethod
    def from_settings(cls, store: LedgerStore, gateway: PaymentGateway, settings) -> "PayoutOrchestrator":
        return cls(
            store,
            gateway,
            max_retries=settings.pix_max_retries,
            utc_offset_hours=settings.daily_reset_utc_offset_hours,
            default_max_per_transaction=Money.parse(settings.default_max_per_transaction, minimum=PAYOUT_MIN,
                                                    maximum=PAYOUT_MAX, field="default_max_per_transaction"),
            default_daily_limit=Money.parse(settings.default_daily_limit, minimum=PAYOUT_MIN,
                                            field="default_daily_limit"),
        )

    def today(self) -> date:
        """Calendar day of the lazy daily reset"""
        return self.clock().astimezone(self.tz).date()

    def wallet_view(self, sub_account: SubAccount) -> WalletState:
        """Wallet as it reads today, with an overdue daily reset applied (not persisted)"""
        return sub_account.wallet.rolled_over(self.today())

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------
    async def initiate(self, sub_account_id: str, pix_key: str, amount: AmountLike, description: str = "",
                       source: TransactionSource = TransactionSource.WEB,
                       pix_key_type: Optional[str] = None, debtor: Optional[Debtor] = None) -> PayoutResult:
        """Open a payout and submit it to the bank.

        ``debtor`` defaults to the account holder of the sub-account.
        """
        key_type = resolve_key_type(pix_key, pix_key_type)
        amount = Money.parse(amount, minimum=PAYOUT_MIN)
        sub_account = await self._load_sub_account(sub_account_id)

        transaction = PixTransaction(
            id=str(uuid.uuid4()),
            sub_account_id=sub_account.id,
            account_id=sub_account.account_id,
            pix_key=pix_key,
            pix_key_type=key_type.value,
            amount=amount,
            status=TransactionStatus.PENDING,
            source=TransactionSource(source),
            description=(description or "")[:DESCRIPTION_MAX_LENGTH],
        )
        transaction = await self._reserve(
            sub_account.id, amount, lambda update: self.store.create_transaction(transaction, update)
        )
        logger.info(f"💸 PIX {transaction.id} opened: {amount.format_brl()} to {key_type.value} key "
                    f"(source {transaction.source.value})")
        return await self._execute(transaction, debtor)

    async def get_status(self, transaction_id: str) -> PayoutResult:
        """Current state, reconciled with the bank while the payout is still in flight.

        Bank errors are logged and the last known local state is returned.
        """
        transaction = await self._load_transaction(transaction_id)
        if transaction.status != TransactionStatus.PROCESSING or not transaction.gateway_tx_id:
            return PayoutResult(transaction)

        try:
            provider_status = await self.gateway.check_status(transaction.gateway_tx_id)
        except (GatewayError, asyncio.TimeoutError) as e:
            logger.warning(f"⚠️ Status check for PIX {transaction.id} failed, keeping {transaction.status.value}: {e}")
            return PayoutResult(transaction)

        try:
            if provider_status == ProviderStatus.SETTLED:
                transaction = await self._complete(transaction)
            elif provider_status == ProviderStatus.REMOVED_BY_RECEIVER:
                transaction = await self._move(transaction, TransactionStatus.CANCELLED,
                                               {"processed_at": self.clock(),
                                                "error_message": "Removed by the receiver"},
                                               wallet_change=lambda w: w.release(transaction.amount))
            elif provider_status == ProviderStatus.REJECTED:
                transaction = await self._fail(transaction, "Payout rejected by the bank")
        except ConflictError as e:
            logger.warning(f"⚠️ Could not record status {provider_status.value} for PIX {transaction.id}: {e.message}")
            transaction = await self._load_transaction(transaction_id)
        return PayoutResult(transaction)

    async def cancel(self, transaction_id: str, reason: str = "Cancelled by merchant") -> PayoutResult:
        transaction = await self._load_transaction(transaction_id)
        if transaction.status.is_terminal:
            raise self._already_terminal(transaction)

        warning = None
        if transaction.gateway_tx_id:
            try:
                await self.gateway.cancel(transaction.gateway_tx_id, reason)
            except (GatewayError, asyncio.TimeoutError) as e:
                warning = f"Bank-side cancellation failed, reconcile manually: {e}"
                logger.warning(f"⚠️ PIX {transaction.id}: {warning}")

        holds_funds = transaction.status in (TransactionStatus.PENDING, TransactionStatus.PROCESSING)
        try:
            transaction = await self._move(
                transaction, TransactionStatus.CANCELLED,
                {"processed_at": self.clock()},
                wallet_change=(lambda w: w.release(transaction.amount)) if holds_funds else None,
            )
        except ConflictError:
            current = await self._load_transaction(transaction_id)
            if current.status.is_terminal:
                raise self._already_terminal(current)
            raise
        logger.info(f"🛑 PIX {transaction.id} cancelled: {reason}")
        return PayoutResult(transaction, warning=warning)

    async def retry(self, transaction_id: str) -> PayoutResult:
        transaction = await self._load_transaction(transaction_id)
        if transaction.status != TransactionStatus.FAILED or transaction.retry_count >= self.max_retries:
            raise IllegalTransition(
                ErrorCodes.NOT_RETRYABLE,
                f"Transaction is {transaction.status.value} with {transaction.retry_count} of "
                f"{self.max_retries} retries used",
                context={"status": transaction.status.value, "retry_count": transaction.retry_count},
            )

        # Make sure the previous attempt really did not go through before paying again
        if transaction.gateway_tx_id:
            try:
                provider_status = await self.gateway.check_status(transaction.gateway_tx_id)
            except (GatewayError, asyncio.TimeoutError) as e:
                logger.error(f"❌ Cannot confirm previous attempt of PIX {transaction.id}, refusing to resubmit")
                raise ReconciliationRequired(
                    "The outcome of the previous attempt could not be confirmed with the bank; try again later", e
                )
            if provider_status == ProviderStatus.SETTLED:
                return await self._recover_settled(transaction)

        transaction = await self._reopen(transaction)
        logger.info(f"🔁 PIX {transaction.id} retry {transaction.retry_count}/{self.max_retries}")
        return await self._execute(transaction)

    # ------------------------------------------------------------------
    # Change (troco)
    # ------------------------------------------------------------------
    async def preview_change(self, sub_account_id: str, total: AmountLike,
                             paid: AmountLike) -> Tuple[ChangeQuote, Optional[PolicyDecision]]:
        quote = compute_change(total, paid)
        if not quote.has_change:
            return quote, None
        sub_account = await self._load_sub_account(sub_account_id)
        return quote, can_payout(sub_account.wallet, quote.change, self.today())

    async def return_change(self, sub_account_id: str, pix_key: str, total: AmountLike, paid: AmountLike,
                            description: str = "", source: TransactionSource = TransactionSource.WEB,
                            pix_key_type: Optional[str] = None, debtor: Optional[Debtor] = None) -> ChangeResult:
        quote = compute_change(total, paid)
        if not quote.has_change:
            logger.info(f"No change owed on sub-account {sub_account_id}, nothing to send")
            return ChangeResult(quote)
        payout = await self.initiate(sub_account_id, pix_key, quote.change, description or "Troco automatico",
                                     source=source, pix_key_type=pix_key_type, debtor=debtor)
        return ChangeResult(quote, payout)

    # ------------------------------------------------------------------
    # Accounts and wallets
    # ------------------------------------------------------------------
    async def register(self, name: str, tax_id: str, email: Optional[str] = None, phone: Optional[str] = None,
                       company_name: Optional[str] = None) -> Tuple[Account, SubAccount]:
        if not (name or "").strip():
            raise ValidationError(ErrorCodes.VALIDATION_ERROR, "Name is required", field="name")
        if not (tax_id or "").strip():
            raise ValidationError(ErrorCodes.VALIDATION_ERROR, "Tax id is required", field="tax_id")

        account = Account(id=str(uuid.uuid4()), name=name.strip(), tax_id=tax_id.strip(), email=email, phone=phone)
        sub_account = SubAccount(
            id=str(uuid.uuid4()),
            account_id=account.id,
            company_name=(company_name or name).strip(),
            wallet=WalletState(
                balance=Money.zero(),
                reserved=Money.zero(),
                daily_used=Money.zero(),
                daily_count=0,
                daily_limit=self.default_daily_limit,
                max_per_transaction=self.default_max_per_transaction,
                is_active=True,
                last_reset=self.today(),
            ),
        )
        await self.store.create_account(account, sub_account)
        logger.info(f"👤 Registered account {account.id} with sub-account {sub_account.id}")
        return await self.get_profile(account.id)

    async def get_account(self, account_id: str) -> Account:
        account = await self.store.get_account(account_id)
        if account is None:
            raise NotFoundError(ErrorCodes.ACCOUNT_NOT_FOUND, f"Account {account_id} not found")
        return account

    async def get_profile(self, account_id: str) -> Tuple[Account, SubAccount]:
        account = await self.get_account(account_id)
        sub_account = await self.store.get_sub_account_for_account(account_id)
        if sub_account is None:
            raise NotFoundError(ErrorCodes.SUB_ACCOUNT_NOT_FOUND, f"Account {account_id} has no sub-account")
        return account, sub_account

    async def deactivate_account(self, account_id: str) -> Account:
        account, sub_account = await self.get_profile(account_id)
        await self._update_wallet(sub_account.id, lambda w: replace(w, is_active=False))
        account = await self.store.set_account_active(account.id, False)
        logger.info(f"Account {account_id} deactivated")
        return account

    async def credit(self, sub_account_id: str, amount: AmountLike) -> SubAccount:
        amount = Money.parse(amount, minimum=PAYOUT_MIN)
        sub_account = await self._update_wallet(sub_account_id, lambda w: w.credit(amount))
        logger.info(f"💰 Credited {amount.format_brl()} to sub-account {sub_account_id}")
        return sub_account

    async def update_limits(self, sub_account_id: str, max_per_transaction: Optional[AmountLike] = None,
                            daily_limit: Optional[AmountLike] = None,
                            is_active: Optional[bool] = None) -> SubAccount:
        if max_per_transaction is not None:
            max_per_transaction = Money.parse(max_per_transaction, minimum=PAYOUT_MIN, maximum=PAYOUT_MAX,
                                              field="max_per_transaction")
        if daily_limit is not None:
            daily_limit = Money.parse(daily_limit, minimum=PAYOUT_MIN, field="daily_limit")
        if is_active:
            # A deactivated account stays closed; only its wallet limits may change
            sub_account = await self._load_sub_account(sub_account_id)
            if not (await self.get_account(sub_account.account_id)).is_active:
                raise ValidationError(ErrorCodes.ACCOUNT_INACTIVE,
                                      "Cannot reactivate the wallet of a deactivated account", field="is_active")

        def change(wallet: WalletState) -> WalletState:
            if daily_limit is not None:
                committed = wallet.daily_used + wallet.reserved
                if daily_limit < committed:
                    raise ValidationError(
                        ErrorCodes.INVALID_LIMITS,
                        f"Daily limit cannot be set below the {committed} already committed today",
                        field="daily_limit",
                        context={"committed": str(committed)},
                    )
                wallet = replace(wallet, daily_limit=daily_limit)
            if max_per_transaction is not None:
                wallet = replace(wallet, max_per_transaction=max_per_transaction)
            if is_active is not None:
                wallet = replace(wallet, is_active=is_active)
            return wallet

        return await self._update_wallet(sub_account_id, change)

    async def transaction_history(self, sub_account_id: str, status: Optional[TransactionStatus] = None,
                                  limit: int = 50, offset: int = 0
                                  ) -> Tuple[List[PixTransaction], TransactionSummary]:
        statuses = [TransactionStatus(status)] if status else None
        transactions = await self.store.list_transactions(sub_account_id, statuses, limit=limit, offset=offset)
        summary = await self.store.summarize_transactions(sub_account_id)
        return transactions, summary

    async def get_transaction_for_account(self, transaction_id: str, account_id: str) -> PixTransaction:
        transaction = await self.store.get_transaction(transaction_id)
        if transaction is None or transaction.account_id != account_id:
            raise NotFoundError(ErrorCodes.TRANSACTION_NOT_FOUND, f"Transaction {transaction_id} not found")
        return transaction

    # ------------------------------------------------------------------
    # Establishments (device access)
    # ------------------------------------------------------------------
    async def create_establishment(self, account_id: str, name: str, tax_id: Optional[str] = None,
                                   code: Optional[str] = None) -> Establishment:
        _, sub_account = await self.get_profile(account_id)
        if code is not None:
            code = code.strip().upper()
            if len(code) != ESTABLISHMENT_CODE_LENGTH or not code.isalnum():
                raise ValidationError(ErrorCodes.VALIDATION_ERROR,
                                      f"Establishment code must be {ESTABLISHMENT_CODE_LENGTH} letters or digits",
                                      field="code")
        else:
            code = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(ESTABLISHMENT_CODE_LENGTH))
        establishment = await self.store.create_establishment(Establishment(
            id=str(uuid.uuid4()),
            code=code,
            account_id=account_id,
            sub_account_id=sub_account.id,
            name=name,
            tax_id=tax_id,
        ))
        logger.info(f"🏪 Establishment {establishment.code} created for account {account_id}")
        return establishment

    async def list_establishments(self, account_id: str) -> List[Establishment]:
        return await self.store.list_establishments(account_id)

    async def resolve_establishment(self, code: str) -> Establishment:
        establishment = await self.store.get_establishment_by_code((code or "").strip().upper())
        if establishment is None or not establishment.is_active:
            raise NotFoundError(ErrorCodes.ESTABLISHMENT_NOT_FOUND, f"Establishment {code} not found or inactive")
        return establishment

    async def device_status(self, code: str) -> Tuple[Establishment, SubAccount]:
        establishment = await self.resolve_establishment(code)
        return establishment, await self._load_sub_account(establishment.sub_account_id)

    async def heartbeat(self, code: str) -> Establishment:
        establishment = await self.resolve_establishment(code)
        return await self.store.touch_establishment(establishment.code, self.clock())

    async def device_return_change(self, code: str, pix_key: str, total: AmountLike, paid: AmountLike,
                                   description: str = "") -> ChangeResult:
        establishment = await self.resolve_establishment(code)
        return await self.return_change(establishment.sub_account_id, pix_key, total, paid,
                                        description or f"Troco - {establishment.name}",
                                        source=TransactionSource.DEVICE,
                                        debtor=Debtor(establishment.name, establishment.tax_id))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _execute(self, transaction: PixTransaction, debtor: Optional[Debtor] = None) -> PayoutResult:
        """Submit an opened transaction and record the outcome"""
        if debtor is None:
            debtor = await self._account_debtor(transaction.account_id)
        send_id = new_send_id(transaction.id, transaction.retry_count)
        # The send id is stored first so a lost response can be looked up
        transaction = await self._move(transaction, TransactionStatus.PROCESSING,
                                       {"gateway_tx_id": send_id, "error_message": None})
        request = PayoutRequest(send_id=send_id, pix_key=transaction.pix_key, amount=transaction.amount,
                                description=transaction.description, debtor=debtor)
        try:
            receipt = await self.gateway.submit_payout(request)
        except GatewayError as e:
            if e.ambiguous:
                logger.warning(f"⚠️ PIX {transaction.id} outcome unknown, left processing: {e.message}")
                transaction = await self._move(transaction, TransactionStatus.PROCESSING,
                                               {"error_message": e.message})
                return PayoutResult(transaction, warning="Bank response was lost; the status will be "
                                                         "confirmed on the next status query")
            logger.warning(f"❌ PIX {transaction.id} failed at the bank: {e.message}")
            return PayoutResult(await self._fail(transaction, e.message))

        if receipt.provider_status == ProviderStatus.REJECTED:
            logger.warning(f"❌ PIX {transaction.id} rejected by the bank")
            return PayoutResult(await self._fail(transaction, "Payout rejected by the bank"), receipt=receipt)

        try:
            transaction = await self._complete(transaction, receipt)
        except ConflictError as e:
            # The bank has the money moving; the next status query settles the ledger
            logger.error(f"❌ PIX {transaction.id} accepted by the bank but not recorded: {e.message}")
            return PayoutResult(await self._load_transaction(transaction.id),
                                warning="Payout accepted by the bank; ledger update pending reconciliation",
                                receipt=receipt)
        return PayoutResult(transaction, receipt=receipt)

    async def _recover_settled(self, transaction: PixTransaction) -> PayoutResult:
        """A failed attempt that the bank reports as settled: debit it without paying again"""
        logger.warning(f"⚠️ PIX {transaction.id} was marked failed but the bank settled it, recovering")
        gateway_tx_id = transaction.gateway_tx_id
        try:
            transaction = await self._reopen(transaction)
        except PolicyDenied as e:
            logger.error(f"❌ PIX {transaction.id} settled at the bank but the wallet cannot absorb it: {e.reason}")
            raise ReconciliationRequired("The bank settled this payout but the wallet cannot record the debit", e)
        transaction = await self._move(transaction, TransactionStatus.PROCESSING,
                                       {"gateway_tx_id": gateway_tx_id})
        transaction = await self._complete(transaction)
        return PayoutResult(transaction, warning="The previous attempt had already been paid; no new payout was sent")

    async def _reopen(self, transaction: PixTransaction) -> PixTransaction:
        self._check_transition(transaction.status, TransactionStatus.PENDING)
        fields = {"retry_count": transaction.retry_count + 1, "error_message": None, "processed_at": None}
        return await self._reserve(
            transaction.sub_account_id, transaction.amount,
            lambda update: self.store.update_transaction_status(
                transaction.id, TransactionStatus.FAILED, TransactionStatus.PENDING, fields, update
            ),
        )

    async def _complete(self, transaction: PixTransaction, receipt: Optional[PayoutReceipt] = None) -> PixTransaction:
        fields = {"processed_at": self.clock(), "error_message": None}
        if receipt is not None:
            fields["gateway_tx_id"] = receipt.gateway_tx_id
            if receipt.end_to_end_id:
                fields["end_to_end_id"] = receipt.end_to_end_id
        transaction = await self._move(transaction, TransactionStatus.COMPLETED, fields,
                                       wallet_change=lambda w: w.settle(transaction.amount))
        logger.info(f"✅ PIX {transaction.id} completed, {transaction.amount.format_brl()} debited")
        return transaction

    async def _fail(self, transaction: PixTransaction, message: str) -> PixTransaction:
        return await self._move(transaction, TransactionStatus.FAILED,
                                {"error_message": message, "processed_at": self.clock()},
                                wallet_change=lambda w: w.release(transaction.amount))

    async def _reserve(self, sub_account_id: str, amount: Money, write):
        """Check the limit policy and place a hold in the same conditional write.

        ``write`` receives the wallet update and performs the store call that
        carries it.
        """
        last_conflict = None
        for _ in range(LEDGER_CONFLICT_ATTEMPTS):
            sub_account = await self._load_sub_account(sub_account_id)
            today = self.today()
            wallet = sub_account.wallet.rolled_over(today)
            can_payout(wallet, amount, today).raise_if_denied(
                context={"sub_account_id": sub_account_id, "amount": str(amount)}
            )
            try:
                return await write(WalletUpdate(sub_account_id, sub_account.wallet, wallet.hold(amount)))
            except ConflictError as e:
                if e.entity != "sub_account":
                    raise
                last_conflict = e
                logger.info(f"Hold on sub-account {sub_account_id} lost a race, re-reading")
        raise last_conflict

    async def _update_wallet(self, sub_account_id: str, change: Callable[[WalletState], WalletState]) -> SubAccount:
        last_conflict = None
        for _ in range(LEDGER_CONFLICT_ATTEMPTS):
            sub_account = await self._load_sub_account(sub_account_id)
            new = change(sub_account.wallet.rolled_over(self.today()))
            try:
                return await self.store.conditional_update_sub_account(sub_account_id, sub_account.wallet, new)
            except ConflictError as e:
                last_conflict = e
                logger.info(f"Update of sub-account {sub_account_id} lost a race, re-reading")
        raise last_conflict

    async def _move(self, transaction: PixTransaction, to_status: TransactionStatus, fields: dict = None,
                    wallet_change: Callable[[WalletState], WalletState] = None) -> PixTransaction:
        """Guarded status change, optionally applying a wallet change in the same write"""
        self._check_transition(transaction.status, to_status)
        last_conflict = None
        for _ in range(LEDGER_CONFLICT_ATTEMPTS):
            wallet_update = None
            if wallet_change is not None:
                sub_account = await self._load_sub_account(transaction.sub_account_id)
                wallet_update = WalletUpdate(sub_account.id, sub_account.wallet,
                                             wallet_change(sub_account.wallet.rolled_over(self.today())))
            try:
                updated = await self.store.update_transaction_status(
                    transaction.id, transaction.status, to_status, fields, wallet_update
                )
            except ConflictError as e:
                if e.entity != "sub_account":
                    raise
                last_conflict = e
                logger.info(f"PIX {transaction.id} {to_status.value} write lost a race on its sub-account, re-reading")
                continue
            if updated.status != transaction.status:
                logger.info(f"PIX {transaction.id}: {transaction.status.value} -> {to_status.value}")
            return updated
        raise last_conflict

    @staticmethod
    def _check_transition(from_status: TransactionStatus, to_status: TransactionStatus):
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise IllegalTransition(
                ErrorCodes.ILLEGAL_TRANSITION,
                f"Cannot move a {from_status.value} transaction to {to_status.value}",
                context={"from": from_status.value, "to": to_status.value},
            )

    @staticmethod
    def _already_terminal(transaction: PixTransaction) -> IllegalTransition:
        return IllegalTransition(
            ErrorCodes.ALREADY_TERMINAL,
            f"Transaction is already {transaction.status.value}",
            context={"status": transaction.status.value},
        )

    async def _load_transaction(self, transaction_id: str) -> PixTransaction:
        transaction = await self.store.get_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError(ErrorCodes.TRANSACTION_NOT_FOUND, f"Transaction {transaction_id} not found")
        return transaction

    async def _account_debtor(self, account_id: str) -> Optional[Debtor]:
        account = await self.store.get_account(account_id)
        if account is None:
            return None
        return Debtor(account.name, account.tax_id)

    async def _load_sub_account(self, sub_account_id: str) -> SubAccount:
        sub_account = await self.store.get_sub_account(sub_account_id)
        if sub_account is None:
            raise NotFoundError(ErrorCodes.SUB_ACCOUNT_NOT_FOUND, f"Sub-account {sub_account_id} not found")
        return sub_account
