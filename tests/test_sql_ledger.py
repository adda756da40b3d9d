from dataclasses import replace
from datetime import date, datetime, timezone

import pytest

from troco_service.errors import ConflictError
from troco_service.gateway import GatewayTimeout, MockPaymentGateway, ProviderStatus
from troco_service.ledger import (Account, Establishment, PixTransaction, SubAccount, TransactionSource,
                                  TransactionStatus, WalletState, WalletUpdate)
from troco_service.money import Money
from troco_service.orchestrator import PayoutOrchestrator
from troco_service.sql_ledger import SqlLedgerStore


@pytest.fixture
def sql_store(tmp_path):
    return SqlLedgerStore.from_url(f"sqlite:///{tmp_path / 'ledger.db'}")


def new_wallet(balance="50.00") -> WalletState:
    return WalletState(
        balance=Money.parse(balance),
        reserved=Money.zero(),
        daily_used=Money.zero(),
        daily_count=0,
        daily_limit=Money.parse("500.00"),
        max_per_transaction=Money.parse("99.99"),
        is_active=True,
        last_reset=date(2026, 3, 10),
    )


async def seed(store, balance="50.00"):
    account = Account(id="acc-1", name="Padaria", tax_id="12.345.678/0001-95", email="dono@padaria.com.br")
    sub_account = SubAccount(id="sub-1", account_id="acc-1", company_name="Padaria LTDA", wallet=new_wallet(balance))
    await store.create_account(account, sub_account)
    return account, sub_account


def pending_tx(tx_id="tx-1", amount="10.00") -> PixTransaction:
    return PixTransaction(id=tx_id, sub_account_id="sub-1", account_id="acc-1", pix_key="a@b.com",
                          pix_key_type="email", amount=Money.parse(amount))


class TestAccounts:
    async def test_round_trip(self, sql_store):
        await seed(sql_store)
        account = await sql_store.get_account("acc-1")
        assert account.tax_id == "12.345.678/0001-95"
        assert account.is_active

        sub_account = await sql_store.get_sub_account_for_account("acc-1")
        assert sub_account.id == "sub-1"
        assert sub_account.wallet == new_wallet()
        assert await sql_store.get_sub_account("missing") is None

    async def test_duplicate_account(self, sql_store):
        await seed(sql_store)
        with pytest.raises(ConflictError):
            await seed(sql_store)

    async def test_deactivate(self, sql_store):
        await seed(sql_store)
        account = await sql_store.set_account_active("acc-1", False)
        assert not account.is_active
        assert not (await sql_store.get_account("acc-1")).is_active


class TestConditionalWrites:
    async def test_stale_wallet_is_rejected(self, sql_store):
        _, sub_account = await seed(sql_store)
        current = sub_account.wallet
        credited = current.credit(Money.parse("5.00"))
        updated = await sql_store.conditional_update_sub_account("sub-1", current, credited)
        assert updated.wallet.balance == Money.parse("55.00")

        with pytest.raises(ConflictError) as exc:
            await sql_store.conditional_update_sub_account("sub-1", current, current.credit(Money(1)))
        assert exc.value.entity == "sub_account"
        assert (await sql_store.get_sub_account("sub-1")).wallet == credited

    async def test_transaction_and_hold_are_one_write(self, sql_store):
        _, sub_account = await seed(sql_store)
        wallet = sub_account.wallet
        held = wallet.hold(Money.parse("10.00"))
        tx = await sql_store.create_transaction(pending_tx(), WalletUpdate("sub-1", wallet, held))
        assert tx.status == TransactionStatus.PENDING
        assert tx.created_at.tzinfo is not None

        # Same expected state again: the wallet moved on, so nothing is written
        with pytest.raises(ConflictError):
            await sql_store.create_transaction(pending_tx("tx-2"), WalletUpdate("sub-1", wallet, held))
        assert await sql_store.get_transaction("tx-2") is None
        assert (await sql_store.get_sub_account("sub-1")).wallet.reserved == Money.parse("10.00")

    async def test_status_guard(self, sql_store):
        await seed(sql_store)
        await sql_store.create_transaction(pending_tx())
        tx = await sql_store.update_transaction_status("tx-1", TransactionStatus.PENDING, TransactionStatus.PROCESSING,
                                                       {"gateway_tx_id": "tx1R0"})
        assert tx.status == TransactionStatus.PROCESSING
        assert tx.gateway_tx_id == "tx1R0"

        with pytest.raises(ConflictError) as exc:
            await sql_store.update_transaction_status("tx-1", TransactionStatus.PENDING, TransactionStatus.CANCELLED)
        assert exc.value.entity == "transaction"

    async def test_stale_wallet_rolls_back_status_change(self, sql_store):
        _, sub_account = await seed(sql_store)
        wallet = sub_account.wallet
        await sql_store.create_transaction(pending_tx())
        await sql_store.conditional_update_sub_account("sub-1", wallet, wallet.credit(Money(100)))

        with pytest.raises(ConflictError):
            await sql_store.update_transaction_status(
                "tx-1", TransactionStatus.PENDING, TransactionStatus.CANCELLED,
                wallet_update=WalletUpdate("sub-1", wallet, wallet.release(Money.parse("10.00"))),
            )
        assert (await sql_store.get_transaction("tx-1")).status == TransactionStatus.PENDING

    async def test_unknown_fields_are_refused(self, sql_store):
        await seed(sql_store)
        await sql_store.create_transaction(pending_tx())
        with pytest.raises(ValueError):
            await sql_store.update_transaction_status("tx-1", TransactionStatus.PENDING, TransactionStatus.PROCESSING,
                                                      {"amount": 1})


class TestQueries:
    async def test_history_and_summary(self, sql_store):
        await seed(sql_store)
        base = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        for i, (status, amount) in enumerate([
            (TransactionStatus.COMPLETED, "10.00"),
            (TransactionStatus.COMPLETED, "2.50"),
            (TransactionStatus.FAILED, "1.00"),
        ]):
            tx = replace(pending_tx(f"tx-{i}", amount), status=status, created_at=base.replace(minute=i))
            await sql_store.create_transaction(tx)

        rows = await sql_store.list_transactions("sub-1")
        assert [tx.id for tx in rows] == ["tx-2", "tx-1", "tx-0"]
        rows = await sql_store.list_transactions("sub-1", [TransactionStatus.COMPLETED], limit=1, offset=1)
        assert [tx.id for tx in rows] == ["tx-0"]

        summary = await sql_store.summarize_transactions("sub-1")
        assert summary.counts == {TransactionStatus.COMPLETED: 2, TransactionStatus.FAILED: 1}
        assert summary.totals[TransactionStatus.COMPLETED] == Money.parse("12.50")
        assert summary.total_count == 3

    async def test_establishments(self, sql_store):
        await seed(sql_store)
        est = Establishment(id="est-1", code="AB123456", account_id="acc-1", sub_account_id="sub-1", name="Caixa 1")
        await sql_store.create_establishment(est)
        with pytest.raises(ConflictError):
            await sql_store.create_establishment(replace(est, id="est-2"))

        assert (await sql_store.get_establishment_by_code("AB123456")).name == "Caixa 1"
        assert [e.id for e in await sql_store.list_establishments("acc-1")] == ["est-1"]

        seen = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)
        touched = await sql_store.touch_establishment("AB123456", seen)
        assert touched.last_seen == seen
        assert await sql_store.touch_establishment("NOPE0000", seen) is None


class TestOrchestratorOnSql:
    async def test_payout_lifecycle(self, sql_store, clock):
        gateway = MockPaymentGateway(status=ProviderStatus.UNKNOWN)
        orchestrator = PayoutOrchestrator(sql_store, gateway, clock=clock)
        _, sub_account = await orchestrator.register("Mercadinho", "123.456.789-09")
        await orchestrator.credit(sub_account.id, "50.00")

        result = await orchestrator.initiate(sub_account.id, "a@b.com", "10.50")
        assert result.transaction.status == TransactionStatus.COMPLETED

        gateway.submit_error = GatewayTimeout("Timed out waiting for the bank")
        pending = (await orchestrator.initiate(sub_account.id, "+5511987654321", "5.00",
                                               source=TransactionSource.DEVICE)).transaction
        assert pending.status == TransactionStatus.PROCESSING

        gateway.status = ProviderStatus.SETTLED
        settled = (await orchestrator.get_status(pending.id)).transaction
        assert settled.status == TransactionStatus.COMPLETED
        assert settled.source == TransactionSource.DEVICE

        wallet = (await sql_store.get_sub_account(sub_account.id)).wallet
        assert wallet.balance == Money.parse("34.50")
        assert wallet.daily_used == Money.parse("15.50")
        assert wallet.daily_count == 2
        assert wallet.reserved.is_zero
