"""
Shared fixtures: an orchestrator on the in-memory ledger with the mock
gateway and a clock the tests can move.
"""
from datetime import datetime, timedelta, timezone

import pytest

from troco_service.gateway import MockPaymentGateway, ProviderStatus
from troco_service.ledger import InMemoryLedgerStore
from troco_service.orchestrator import PayoutOrchestrator


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    # 12:00 in Brasília
    return FixedClock(datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def gateway():
    # Status queries find nothing unless a test says otherwise
    return MockPaymentGateway(status=ProviderStatus.UNKNOWN)


@pytest.fixture
def orchestrator(store, gateway, clock):
    return PayoutOrchestrator(store, gateway, max_retries=3, clock=clock)


@pytest.fixture
def make_wallet(orchestrator):
    """Register a merchant and fund its sub-account; returns the sub-account"""
    async def _make(balance="50.00", max_per_transaction="99.99", daily_limit="500.00"):
        account, sub_account = await orchestrator.register("Padaria Central", "12.345.678/0001-95",
                                                           email="dono@padaria.com.br")
        if balance != "0.00":
            await orchestrator.credit(sub_account.id, balance)
        return await orchestrator.update_limits(sub_account.id, max_per_transaction=max_per_transaction,
                                                daily_limit=daily_limit)
    return _make
