"""
Payment gateway client for the bank's PIX payout API.

The bank client authenticates with OAuth2 client credentials over mutual
TLS, caches its bearer token and shares a single in-flight token request
between concurrent callers. Every payout carries a send id chosen by us
(``idEnvio``), so an outcome lost in transit can be looked up later.

Failures are split in two. *Definitive* ones mean the bank certainly did
not accept the payout (the connection was never made, the circuit is open,
the request was rejected with a 4xx). *Ambiguous* ones mean the payout may
have gone through (timeouts after sending, 5xx, unreadable 2xx bodies); the
caller must reconcile through ``check_status`` before trying again.
"""
import asyncio
import logging
import re
import ssl
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx

from common.circuit_breaker import CircuitBreaker, CircuitBreakerException, gateway_circuit_breaker_config
from common.error_handling import ErrorCodes, ServiceError
from common.retry import GATEWAY_RETRY_CONFIG, GATEWAY_SUBMIT_RETRY_CONFIG, retry_async
from common.tracing import get_trace_headers
from troco_service.money import Money

logger = logging.getLogger(__name__)


class ProviderStatus(str, Enum):
    SETTLED = "SETTLED"
    REMOVED_BY_RECEIVER = "REMOVED_BY_RECEIVER"
    REJECTED = "REJECTED"
    UNKNOWN = "UNKNOWN"


_PROVIDER_STATUSES = {
    "REALIZADO": ProviderStatus.SETTLED,
    "CONCLUIDA": ProviderStatus.SETTLED,
    "REMOVIDA_PELO_USUARIO_RECEBEDOR": ProviderStatus.REMOVED_BY_RECEIVER,
    "REMOVIDA_PELO_PSP": ProviderStatus.REMOVED_BY_RECEIVER,
    "DEVOLVIDO": ProviderStatus.REMOVED_BY_RECEIVER,
    "NAO_REALIZADO": ProviderStatus.REJECTED,
}


def map_provider_status(raw: Optional[str]) -> ProviderStatus:
    return _PROVIDER_STATUSES.get((raw or "").upper(), ProviderStatus.UNKNOWN)


def new_send_id(transaction_id: str, retry_count: int) -> str:
    """Send id for one submission attempt: at most 35 alphanumerics, unique per attempt"""
    base = re.sub(r"[^a-zA-Z0-9]", "", transaction_id)[:32] or uuid.uuid4().hex
    return f"{base}R{retry_count}"[:35]


class GatewayError(ServiceError):
    def __init__(self, message: str, http_status: int = None, ambiguous: bool = False,
                 code: str = ErrorCodes.GATEWAY_ERROR, original_error: Exception = None):
        self.http_status = http_status
        self.ambiguous = ambiguous
        super().__init__(code, message, original_error)


class GatewayAuthError(GatewayError):
    def __init__(self, message: str, http_status: int = None, original_error: Exception = None):
        super().__init__(message, http_status=http_status, ambiguous=False,
                         code=ErrorCodes.GATEWAY_AUTH_ERROR, original_error=original_error)


class GatewayTimeout(GatewayError):
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message, ambiguous=True, code=ErrorCodes.TIMEOUT_ERROR, original_error=original_error)


@dataclass(frozen=True)
class Debtor:
    """Who the payout is made on behalf of: the merchant or the establishment"""
    name: str
    tax_id: Optional[str] = None

    def as_payload(self) -> Dict[str, str]:
        payload = {"nome": self.name[:200]}
        digits = re.sub(r"\D", "", self.tax_id or "")
        if len(digits) == 11:
            payload["cpf"] = digits
        elif len(digits) == 14:
            payload["cnpj"] = digits
        return payload


@dataclass(frozen=True)
class PayoutRequest:
    send_id: str
    pix_key: str
    amount: Money
    description: str = ""
    debtor: Optional[Debtor] = None


@dataclass(frozen=True)
class PayoutReceipt:
    gateway_tx_id: str
    end_to_end_id: Optional[str] = None
    provider_status: ProviderStatus = ProviderStatus.UNKNOWN
    qr_code: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: float

    def is_fresh(self, now: float, skew: float = 30.0) -> bool:
        return now < self.expires_at - skew


class PaymentGateway(ABC):
    @abstractmethod
    async def authenticate(self) -> AccessToken: ...

    @abstractmethod
    async def submit_payout(self, request: PayoutRequest) -> PayoutReceipt: ...

    @abstractmethod
    async def check_status(self, gateway_tx_id: str) -> ProviderStatus: ...

    @abstractmethod
    async def cancel(self, gateway_tx_id: str, reason: str) -> bool: ...

    async def aclose(self):
        pass


def build_ssl_context(cert_path: str, key_path: str = "", password: str = "",
                      ca_bundle: str = "") -> ssl.SSLContext:
    """Client-certificate context for the bank endpoint (PEM certificate and key)"""
    context = ssl.create_default_context(cafile=ca_bundle or None)
    context.load_cert_chain(cert_path, keyfile=key_path or None, password=password or None)
    return context


class EfiBankGateway(PaymentGateway):
    def __init__(self, base_url: str, client_id: str, client_secret: str, payer_key: str,
                 timeout: float = 15.0, ssl_context: ssl.SSLContext = None,
                 transport: httpx.AsyncBaseTransport = None, clock: Callable[[], float] = time.monotonic):
        self.client_id = client_id
        self.client_secret = client_secret
        self.payer_key = payer_key
        self._clock = clock
        self._token: Optional[AccessToken] = None
        self._token_lock = asyncio.Lock()
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
            verify=ssl_context if ssl_context is not None else True,
            transport=transport,
        )
        # The breaker's timeout bounds a whole call including its retries
        self.circuit_breaker = CircuitBreaker("efi-bank", gateway_circuit_breaker_config(timeout * 2))

    @classmethod
    def from_settings(cls, settings) -> "EfiBankGateway":
        ssl_context = None
        if settings.efi_bank_cert_path:
            ssl_context = build_ssl_context(settings.efi_bank_cert_path, settings.efi_bank_key_path,
                                            settings.efi_bank_cert_password, settings.efi_bank_ca_bundle)
        else:
            logger.warning("⚠️ EFI_BANK_CERT_PATH not set, bank calls will not present a client certificate")
        return cls(
            base_url=settings.efi_bank_api_url,
            client_id=settings.efi_bank_client_id,
            client_secret=settings.efi_bank_client_secret,
            payer_key=settings.efi_bank_payer_key,
            timeout=settings.gateway_timeout_seconds,
            ssl_context=ssl_context,
        )

    async def aclose(self):
        await self._client.aclose()

    # OAuth
    async def authenticate(self) -> AccessToken:
        token = self._token
        if token is not None and token.is_fresh(self._clock()):
            return token
        async with self._token_lock:
            # Another caller may have refreshed while we waited
            token = self._token
            if token is not None and token.is_fresh(self._clock()):
                return token
            self._token = await self._fetch_token()
            return self._token

    async def _fetch_token(self) -> AccessToken:
        try:
            response = await retry_async(
                self._client.post, GATEWAY_RETRY_CONFIG, "/oauth/token",
                json={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
        except httpx.HTTPError as e:
            logger.error(f"❌ Bank authentication failed: {e!r}")
            raise GatewayAuthError(f"Could not reach the bank token endpoint: {e}", original_error=e)

        if response.status_code != 200:
            logger.error(f"❌ Bank authentication rejected: HTTP {response.status_code}")
            raise GatewayAuthError("Bank rejected the client credentials", http_status=response.status_code)
        try:
            data = response.json()
            token = AccessToken(data["access_token"], self._clock() + float(data.get("expires_in", 3600)))
        except (ValueError, KeyError, TypeError) as e:
            raise GatewayAuthError("Malformed token response from the bank", http_status=200, original_error=e)
        logger.info("✅ Authenticated with the bank")
        return token

    # PIX
    async def submit_payout(self, request: PayoutRequest) -> PayoutReceipt:
        payload = {
            "valor": str(request.amount),
            "pagador": {
                "chave": self.payer_key,
                "infoPagador": (request.description or "Troco automatico")[:140],
            },
            "favorecido": {"chave": request.pix_key},
        }
        if request.debtor is not None:
            payload["devedor"] = request.debtor.as_payload()
        response = await self._request("PUT", f"/v2/gn/pix/{request.send_id}", json=payload, submit=True)
        data = self._json(response)
        receipt = PayoutReceipt(
            gateway_tx_id=data.get("idEnvio") or request.send_id,
            end_to_end_id=data.get("e2eId"),
            provider_status=map_provider_status(data.get("status")),
            raw=data,
        )
        logger.info(f"✅ PIX {request.send_id} accepted by the bank (status {data.get('status')})")
        return receipt

    async def check_status(self, gateway_tx_id: str) -> ProviderStatus:
        response = await self._request("GET", f"/v2/gn/pix/enviados/id-envio/{gateway_tx_id}", not_found_ok=True)
        if response.status_code == 404:
            return ProviderStatus.UNKNOWN
        return map_provider_status(self._json(response).get("status"))

    async def cancel(self, gateway_tx_id: str, reason: str) -> bool:
        response = await self._request("DELETE", f"/v2/gn/pix/{gateway_tx_id}", json={"motivo": reason},
                                       not_found_ok=True)
        if response.status_code == 404:
            logger.info(f"PIX {gateway_tx_id} unknown to the bank, nothing to cancel")
        return True

    async def _send(self, method: str, path: str, token: str, json: dict = None) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}", **get_trace_headers()}
        response = await self._client.request(method, path, json=json, headers=headers)
        if response.status_code >= 500:
            raise GatewayError(f"Bank returned HTTP {response.status_code}", http_status=response.status_code,
                               ambiguous=True)
        return response

    async def _request(self, method: str, path: str, json: dict = None, submit: bool = False,
                       not_found_ok: bool = False) -> httpx.Response:
        token = await self.authenticate()
        config = GATEWAY_SUBMIT_RETRY_CONFIG if submit else GATEWAY_RETRY_CONFIG
        try:
            response = await self.circuit_breaker.call(retry_async, self._send, config, method, path, token.value, json)
        except CircuitBreakerException as e:
            raise GatewayError(str(e), original_error=e)
        except GatewayError:
            raise
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            logger.warning(f"⚠️ Could not connect to the bank for {method} {path}: {e!r}")
            raise GatewayError(f"Could not connect to the bank: {e}", original_error=e)
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            logger.warning(f"⚠️ Bank call {method} {path} timed out")
            raise GatewayTimeout("Timed out waiting for the bank", original_error=e)
        except httpx.TransportError as e:
            logger.warning(f"⚠️ Bank call {method} {path} failed after sending: {e!r}")
            raise GatewayError(f"Lost the bank response: {e}", ambiguous=True, original_error=e)
        except httpx.RequestError as e:
            # Undecodable bodies and redirect loops: the request reached the bank
            logger.warning(f"⚠️ Bank call {method} {path} returned an unusable response: {e!r}")
            raise GatewayError(f"Unusable response from the bank: {e}", ambiguous=True, original_error=e)

        if response.status_code in (401, 403):
            self._token = None
            raise GatewayAuthError("Bank refused the access token", http_status=response.status_code)
        if response.status_code == 404 and not_found_ok:
            return response
        if response.status_code >= 400:
            raise GatewayError(self._error_message(response), http_status=response.status_code)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise GatewayError("Unreadable response from the bank", http_status=response.status_code,
                               ambiguous=True, original_error=e)
        if not isinstance(data, dict):
            raise GatewayError("Unexpected response from the bank", http_status=response.status_code,
                               ambiguous=True)
        return data

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if isinstance(data, dict) and (data.get("mensagem") or data.get("message")):
            return str(data.get("mensagem") or data.get("message"))
        return f"Bank returned HTTP {response.status_code}"


class MockPaymentGateway(PaymentGateway):
    """Gateway for development and tests: never moves money.

    Outcomes can be scripted by setting ``submit_error``, ``status`` and
    friends; every call is recorded.
    """

    def __init__(self, status: ProviderStatus = ProviderStatus.SETTLED, latency: float = 0.0):
        self.status = status
        self.latency = latency
        self.submit_error: Optional[Exception] = None
        self.status_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.submitted: List[PayoutRequest] = []
        self.status_checks: List[str] = []
        self.cancelled: List[str] = []

    async def authenticate(self) -> AccessToken:
        return AccessToken("mock-token", float("inf"))

    async def submit_payout(self, request: PayoutRequest) -> PayoutReceipt:
        self.submitted.append(request)
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.submit_error is not None:
            raise self.submit_error
        return PayoutReceipt(
            gateway_tx_id=request.send_id,
            end_to_end_id=f"MOCK{uuid.uuid4().hex[:28].upper()}",
            provider_status=ProviderStatus.SETTLED,
            raw={"mode": "mock"},
        )

    async def check_status(self, gateway_tx_id: str) -> ProviderStatus:
        self.status_checks.append(gateway_tx_id)
        if self.status_error is not None:
            raise self.status_error
        return self.status

    async def cancel(self, gateway_tx_id: str, reason: str) -> bool:
        self.cancelled.append(gateway_tx_id)
        if self.cancel_error is not None:
            raise self.cancel_error
        return True


def get_payment_gateway(settings) -> PaymentGateway:
    if settings.pix_gateway == "efi":
        return EfiBankGateway.from_settings(settings)
    if settings.pix_gateway == "mock":
        logger.warning("⚠️ Using the mock PIX gateway, no money will move")
        return MockPaymentGateway()
    raise ValueError(f"Unknown PIX gateway: {settings.pix_gateway!r}")
