import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest

from troco_service.gateway import (Debtor, EfiBankGateway, GatewayAuthError, GatewayError, GatewayTimeout,
                                   MockPaymentGateway, PayoutRequest, ProviderStatus, get_payment_gateway,
                                   map_provider_status, new_send_id)
from troco_service.ledger import InMemoryLedgerStore, TransactionStatus
from troco_service.money import Money
from troco_service.orchestrator import PayoutOrchestrator


class FakeBank:
    """In-process stand-in for the bank API"""

    def __init__(self, expires_in=3600):
        self.expires_in = expires_in
        self.token_calls = 0
        self.token_status = 200
        self.requests = []
        self.responder = lambda request: httpx.Response(200, json={})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/token":
            self.token_calls += 1
            assert request.headers["authorization"].startswith("Basic ")
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_client"})
            return httpx.Response(200, json={"access_token": f"tok{self.token_calls}",
                                             "expires_in": self.expires_in})
        self.requests.append(request)
        return self.responder(request)


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr("common.retry.calculate_delay", lambda attempt, config: 0)


@pytest.fixture
def bank():
    return FakeBank()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def client(bank, clock):
    return EfiBankGateway("https://bank.test", "client-id", "client-secret", "payer@bank.com.br",
                          timeout=2.0, transport=httpx.MockTransport(bank), clock=clock)


def payout(send_id="abc123R0", amount="10.50", debtor=None):
    return PayoutRequest(send_id=send_id, pix_key="a@b.com", amount=Money.parse(amount), description="Troco",
                         debtor=debtor)


class TestAuthentication:
    async def test_token_is_cached(self, client, bank):
        bank.responder = lambda request: httpx.Response(200, json={"status": "REALIZADO"})
        await client.check_status("abc123R0")
        await client.check_status("abc123R0")
        assert bank.token_calls == 1
        assert bank.requests[-1].headers["authorization"] == "Bearer tok1"

    async def test_expired_token_is_refreshed(self, client, bank, clock):
        bank.expires_in = 60
        first = await client.authenticate()
        clock.now += 100
        second = await client.authenticate()
        assert first.value == "tok1"
        assert second.value == "tok2"
        assert bank.token_calls == 2

    async def test_concurrent_callers_share_one_token_request(self, client, bank):
        tokens = await asyncio.gather(*(client.authenticate() for _ in range(5)))
        assert {t.value for t in tokens} == {"tok1"}
        assert bank.token_calls == 1

    async def test_bad_credentials(self, client, bank):
        bank.token_status = 401
        with pytest.raises(GatewayAuthError) as exc:
            await client.authenticate()
        assert exc.value.http_status == 401
        assert not exc.value.ambiguous

    async def test_refused_token_is_dropped(self, client, bank):
        bank.responder = lambda request: httpx.Response(401, json={"mensagem": "token expirado"})
        with pytest.raises(GatewayAuthError):
            await client.submit_payout(payout())
        bank.responder = lambda request: httpx.Response(200, json={"status": "REALIZADO"})
        await client.check_status("abc123R0")
        assert bank.token_calls == 2


class TestSubmitPayout:
    async def test_request_and_receipt(self, client, bank):
        bank.responder = lambda request: httpx.Response(201, json={
            "idEnvio": "abc123R0", "e2eId": "E09089356202603101500API", "valor": "10.50",
            "status": "EM_PROCESSAMENTO",
        })
        receipt = await client.submit_payout(payout(debtor=Debtor("Padaria Central", "123.456.789-09")))

        request = bank.requests[0]
        assert request.method == "PUT"
        assert request.url.path == "/v2/gn/pix/abc123R0"
        assert json.loads(request.content) == {
            "valor": "10.50",
            "pagador": {"chave": "payer@bank.com.br", "infoPagador": "Troco"},
            "favorecido": {"chave": "a@b.com"},
            "devedor": {"nome": "Padaria Central", "cpf": "12345678909"},
        }
        assert receipt.gateway_tx_id == "abc123R0"
        assert receipt.end_to_end_id == "E09089356202603101500API"
        assert receipt.provider_status == ProviderStatus.UNKNOWN

    async def test_client_error_is_definitive(self, client, bank):
        bank.responder = lambda request: httpx.Response(400, json={"nome": "chave_invalida",
                                                                   "mensagem": "Chave inexistente"})
        with pytest.raises(GatewayError) as exc:
            await client.submit_payout(payout())
        assert exc.value.http_status == 400
        assert exc.value.message == "Chave inexistente"
        assert not exc.value.ambiguous

    async def test_server_error_is_ambiguous(self, client, bank):
        bank.responder = lambda request: httpx.Response(502, text="Bad Gateway")
        with pytest.raises(GatewayError) as exc:
            await client.submit_payout(payout())
        assert exc.value.http_status == 502
        assert exc.value.ambiguous

    async def test_read_timeout_is_ambiguous_and_not_resent(self, client, bank):
        def timeout(request):
            raise httpx.ReadTimeout("read timed out", request=request)
        bank.responder = timeout

        with pytest.raises(GatewayTimeout) as exc:
            await client.submit_payout(payout())
        assert exc.value.ambiguous
        assert len(bank.requests) == 1

    async def test_connect_error_is_definitive_after_retry(self, client, bank):
        def refused(request):
            raise httpx.ConnectError("connection refused", request=request)
        bank.responder = refused

        with pytest.raises(GatewayError) as exc:
            await client.submit_payout(payout())
        assert not exc.value.ambiguous
        assert len(bank.requests) == 2

    async def test_unreadable_success_is_ambiguous(self, client, bank):
        bank.responder = lambda request: httpx.Response(201, text="<html>ok</html>")
        with pytest.raises(GatewayError) as exc:
            await client.submit_payout(payout())
        assert exc.value.ambiguous


class TestStatusAndCancel:
    @pytest.mark.parametrize("raw, expected", [
        ("REALIZADO", ProviderStatus.SETTLED),
        ("EM_PROCESSAMENTO", ProviderStatus.UNKNOWN),
        ("NAO_REALIZADO", ProviderStatus.REJECTED),
        ("DEVOLVIDO", ProviderStatus.REMOVED_BY_RECEIVER),
    ])
    async def test_status_mapping(self, client, bank, raw, expected):
        bank.responder = lambda request: httpx.Response(200, json={"idEnvio": "abc123R0", "status": raw})
        assert await client.check_status("abc123R0") == expected
        assert bank.requests[0].url.path == "/v2/gn/pix/enviados/id-envio/abc123R0"

    async def test_unknown_send_id(self, client, bank):
        bank.responder = lambda request: httpx.Response(404, json={"mensagem": "nao encontrado"})
        assert await client.check_status("abc123R0") == ProviderStatus.UNKNOWN

    async def test_cancel(self, client, bank):
        bank.responder = lambda request: httpx.Response(200, json={})
        assert await client.cancel("abc123R0", "Cliente desistiu") is True
        request = bank.requests[0]
        assert request.method == "DELETE"
        assert json.loads(request.content) == {"motivo": "Cliente desistiu"}

    async def test_cancel_of_unknown_payout_is_acknowledged(self, client, bank):
        bank.responder = lambda request: httpx.Response(404, json={})
        assert await client.cancel("abc123R0", "x") is True

    async def test_status_retries_transport_errors(self, client, bank):
        calls = []

        def flaky(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ReadError("connection reset", request=request)
            return httpx.Response(200, json={"status": "REALIZADO"})
        bank.responder = flaky

        assert await client.check_status("abc123R0") == ProviderStatus.SETTLED
        assert len(calls) == 2

    async def test_circuit_opens_after_repeated_failures(self, client, bank):
        bank.responder = lambda request: httpx.Response(503, text="unavailable")
        for _ in range(5):
            with pytest.raises(GatewayError):
                await client.check_status("abc123R0")

        with pytest.raises(GatewayError) as exc:
            await client.check_status("abc123R0")
        assert not exc.value.ambiguous
        assert len(bank.requests) == 5
        assert client.circuit_breaker.get_state()["state"] == "OPEN"


def corrupt_gzip(request):
    return httpx.Response(200, headers={"Content-Encoding": "gzip"}, content=b"definitely not gzip")


class TestUndecodableResponses:
    async def test_status_body_is_ambiguous(self, client, bank):
        bank.responder = corrupt_gzip
        with pytest.raises(GatewayError) as exc:
            await client.check_status("abc123R0")
        assert exc.value.ambiguous

    async def test_submit_body_is_ambiguous(self, client, bank):
        bank.responder = corrupt_gzip
        with pytest.raises(GatewayError) as exc:
            await client.submit_payout(payout())
        assert exc.value.ambiguous
        assert len(bank.requests) == 1

    async def test_payout_stays_in_flight_and_status_query_survives(self, client, bank):
        orchestrator = PayoutOrchestrator(InMemoryLedgerStore(), client)
        _, sub_account = await orchestrator.register("Mercadinho", "123.456.789-09")
        await orchestrator.credit(sub_account.id, "20.00")

        bank.responder = corrupt_gzip
        result = await orchestrator.initiate(sub_account.id, "a@b.com", "5.00")
        assert result.transaction.status == TransactionStatus.PROCESSING
        assert result.warning

        status = await orchestrator.get_status(result.transaction.id)
        assert status.transaction.status == TransactionStatus.PROCESSING
        wallet = (await orchestrator.store.get_sub_account(sub_account.id)).wallet
        assert wallet.reserved == Money.parse("5.00")
        assert wallet.balance == Money.parse("20.00")


def test_send_id_shape():
    send_id = new_send_id("3f2b8c1e-4d5a-4b6c-8d7e-9f0a1b2c3d4e", 0)
    assert send_id == "3f2b8c1e4d5a4b6c8d7e9f0a1b2c3d4eR0"
    assert send_id.isalnum()
    assert len(new_send_id("3f2b8c1e-4d5a-4b6c-8d7e-9f0a1b2c3d4e", 12)) <= 35
    assert new_send_id("tx-1", 1) != new_send_id("tx-1", 2)


def test_provider_status_strings():
    assert map_provider_status("concluida") == ProviderStatus.SETTLED
    assert map_provider_status("REMOVIDA_PELO_USUARIO_RECEBEDOR") == ProviderStatus.REMOVED_BY_RECEIVER
    assert map_provider_status(None) == ProviderStatus.UNKNOWN


def test_gateway_factory():
    assert isinstance(get_payment_gateway(SimpleNamespace(pix_gateway="mock")), MockPaymentGateway)
    with pytest.raises(ValueError):
        get_payment_gateway(SimpleNamespace(pix_gateway="carrier-pigeon"))
