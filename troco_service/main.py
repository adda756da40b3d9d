from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
import logging

from common.error_handling import add_error_handlers
from common.redis_client import RedisClient, redis_client
from common.schemas import (AccountOut, AddBalanceRequest, DeviceStatusResponse, DeviceTrocoRequest,
                            EstablishmentCreateRequest, EstablishmentListResponse, EstablishmentOut,
                            HeartbeatResponse, PayoutResponse, PixProcessRequest, PixTransactionOut,
                            ProfileResponse, RegisterRequest, RegisterResponse, StatusSummary,
                            SubAccountOut, SubAccountResponse, TransactionListResponse, TrocoCalculateRequest,
                            TrocoCalculateResponse, TrocoProcessRequest, TrocoProcessResponse,
                            UpdateSubAccountRequest)
from common.security import mint_user_jwt, verify_token
from common.settings import settings
from common.tracing import troco_tracer, tracing_middleware
from troco_service.gateway import EfiBankGateway, get_payment_gateway
from troco_service.ledger import Account, Establishment, InMemoryLedgerStore, PixTransaction, SubAccount, TransactionStatus
from troco_service.orchestrator import PayoutOrchestrator, PayoutResult

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Troco PIX Service")

# Add tracing middleware
@app.middleware("http")
async def add_tracing(request: Request, call_next):
    return await tracing_middleware(request, call_next, troco_tracer)

add_error_handlers(app)

_orchestrator: Optional[PayoutOrchestrator] = None

def build_orchestrator() -> PayoutOrchestrator:
    if settings.ledger_backend == "memory":
        logger.warning("⚠️ Using the in-memory ledger, balances are lost on restart")
        store = InMemoryLedgerStore()
    else:
        # Imported here so the memory backend runs without a database driver
        from troco_service.sql_ledger import SqlLedgerStore
        store = SqlLedgerStore.from_url(settings.sql_url)
    return PayoutOrchestrator.from_settings(store, get_payment_gateway(settings), settings)

def get_orchestrator() -> PayoutOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
        logger.info(f"🚀 Troco service ready (ledger={settings.ledger_backend}, gateway={settings.pix_gateway})")
    return _orchestrator

def get_rate_limiter() -> RedisClient:
    return redis_client

# Authentication dependency
async def current_account_id(authorization: str = Header(None, description="Bearer token"),
                             orchestrator: PayoutOrchestrator = Depends(get_orchestrator)) -> str:
    """Account id carried in the merchant's bearer token; deactivated accounts are refused"""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail="Invalid authorization header format. Expected 'Bearer <token>'"
        )
    token = authorization.split(" ", 1)[1]
    try:
        claims = verify_token(token)
    except Exception as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {str(e)}")
    account = await orchestrator.get_account(claims["sub"])
    if not account.is_active:
        raise HTTPException(status_code=401, detail="Account is deactivated")
    return account.id

# Devices authenticate by establishment code only, so they are throttled per client address
async def device_rate_limit(request: Request, limiter: RedisClient = Depends(get_rate_limiter)):
    caller = request.client.host if request.client else "unknown"
    max_requests = settings.device_rate_limit_requests
    result = limiter.check_rate_limit(caller, "arduino", max_requests, settings.device_rate_limit_window_seconds)
    if not result["allowed"]:
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Try again in {result['retry_after']} seconds",
            headers={
                "X-RateLimit-Limit": str(max_requests),
                "X-RateLimit-Remaining": str(result["remaining"]),
                "X-RateLimit-Reset": str(result["reset_time"]),
                "Retry-After": str(result["retry_after"])
            }
        )
    return result

def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None

def account_out(account: Account) -> AccountOut:
    return AccountOut(id=account.id, name=account.name, tax_id=account.tax_id, email=account.email,
                      phone=account.phone, is_active=account.is_active)

def sub_account_out(orchestrator: PayoutOrchestrator, sub_account: SubAccount) -> SubAccountOut:
    wallet = orchestrator.wallet_view(sub_account)
    return SubAccountOut(
        id=sub_account.id,
        company_name=sub_account.company_name,
        balance=str(wallet.balance),
        reserved=str(wallet.reserved),
        available=str(wallet.available),
        max_per_transaction=str(wallet.max_per_transaction),
        daily_limit=str(wallet.daily_limit),
        daily_used=str(wallet.daily_used),
        daily_count=wallet.daily_count,
        remaining_daily_limit=str(wallet.remaining_daily_limit),
        is_active=wallet.is_active,
        last_reset=wallet.last_reset.isoformat(),
    )

def transaction_out(transaction: PixTransaction) -> PixTransactionOut:
    return PixTransactionOut(
        id=transaction.id,
        sub_account_id=transaction.sub_account_id,
        pix_key=transaction.pix_key,
        pix_key_type=transaction.pix_key_type,
        amount=str(transaction.amount),
        description=transaction.description,
        status=transaction.status.value,
        source=transaction.source.value,
        gateway_tx_id=transaction.gateway_tx_id,
        end_to_end_id=transaction.end_to_end_id,
        error_message=transaction.error_message,
        retry_count=transaction.retry_count,
        created_at=_iso(transaction.created_at),
        processed_at=_iso(transaction.processed_at),
    )

def payout_response(result: PayoutResult) -> PayoutResponse:
    return PayoutResponse(transaction=transaction_out(result.transaction), warning=result.warning)

def establishment_out(establishment: Establishment) -> EstablishmentOut:
    return EstablishmentOut(id=establishment.id, code=establishment.code, name=establishment.name,
                            tax_id=establishment.tax_id, is_active=establishment.is_active,
                            last_seen=_iso(establishment.last_seen))

@app.get("/health")
async def health(limiter: RedisClient = Depends(get_rate_limiter),
                 orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    """Health check"""
    gateway = orchestrator.gateway
    body = {
        "ok": True,
        "status": "healthy",
        "service": "troco_service",
        "ledger_backend": settings.ledger_backend,
        "pix_gateway": settings.pix_gateway,
        "redis": "up" if limiter.ping() else "down",
    }
    if isinstance(gateway, EfiBankGateway):
        body["gateway_circuit"] = gateway.circuit_breaker.get_state()
    return body

# Accounts
@app.post("/accounts/register", response_model=RegisterResponse, status_code=201)
async def register(req: RegisterRequest, orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    account, sub_account = await orchestrator.register(req.name, req.tax_id, email=req.email, phone=req.phone,
                                                       company_name=req.company_name)
    token = mint_user_jwt(sub=account.id, claims={"scope": "merchant"})
    return RegisterResponse(account=account_out(account), sub_account=sub_account_out(orchestrator, sub_account),
                            token=token)

@app.get("/accounts/profile", response_model=ProfileResponse)
async def profile(account_id: str = Depends(current_account_id),
                  orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    account, sub_account = await orchestrator.get_profile(account_id)
    return ProfileResponse(account=account_out(account), sub_account=sub_account_out(orchestrator, sub_account))

@app.put("/accounts/subaccount", response_model=SubAccountResponse)
async def update_sub_account(req: UpdateSubAccountRequest, account_id: str = Depends(current_account_id),
                             orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    _, sub_account = await orchestrator.get_profile(account_id)
    sub_account = await orchestrator.update_limits(sub_account.id, max_per_transaction=req.max_per_transaction,
                                                   daily_limit=req.daily_limit, is_active=req.is_active)
    return SubAccountResponse(sub_account=sub_account_out(orchestrator, sub_account))

@app.post("/accounts/add-balance", response_model=SubAccountResponse)
async def add_balance(req: AddBalanceRequest, account_id: str = Depends(current_account_id),
                      orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    _, sub_account = await orchestrator.get_profile(account_id)
    sub_account = await orchestrator.credit(sub_account.id, req.amount)
    return SubAccountResponse(sub_account=sub_account_out(orchestrator, sub_account))

@app.delete("/accounts/profile", response_model=ProfileResponse)
async def deactivate(account_id: str = Depends(current_account_id),
                     orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    await orchestrator.deactivate_account(account_id)
    account, sub_account = await orchestrator.get_profile(account_id)
    return ProfileResponse(account=account_out(account), sub_account=sub_account_out(orchestrator, sub_account))

@app.get("/accounts/transactions", response_model=TransactionListResponse)
async def transactions(status: Optional[TransactionStatus] = None,
                       limit: int = Query(50, ge=1, le=200), offset: int = Query(0, ge=0),
                       account_id: str = Depends(current_account_id),
                       orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    _, sub_account = await orchestrator.get_profile(account_id)
    rows, summary = await orchestrator.transaction_history(sub_account.id, status=status, limit=limit,
                                                           offset=offset)
    return TransactionListResponse(
        transactions=[transaction_out(tx) for tx in rows],
        summary={
            s.value: StatusSummary(count=summary.counts[s], total=str(summary.totals[s]))
            for s in summary.counts
        },
        limit=limit,
        offset=offset,
    )

# PIX
@app.post("/pix/process", response_model=PayoutResponse)
async def process_pix(req: PixProcessRequest, account_id: str = Depends(current_account_id),
                      orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    _, sub_account = await orchestrator.get_profile(account_id)
    result = await orchestrator.initiate(sub_account.id, req.pix_key, req.amount, req.description,
                                         pix_key_type=req.pix_key_type)
    return payout_response(result)

@app.get("/pix/status/{transaction_id}", response_model=PayoutResponse)
async def pix_status(transaction_id: str, account_id: str = Depends(current_account_id),
                     orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    await orchestrator.get_transaction_for_account(transaction_id, account_id)
    return payout_response(await orchestrator.get_status(transaction_id))

@app.delete("/pix/cancel/{transaction_id}", response_model=PayoutResponse)
async def cancel_pix(transaction_id: str, reason: str = Query("Cancelled by merchant", max_length=140),
                     account_id: str = Depends(current_account_id),
                     orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    await orchestrator.get_transaction_for_account(transaction_id, account_id)
    return payout_response(await orchestrator.cancel(transaction_id, reason))

@app.post("/pix/retry/{transaction_id}", response_model=PayoutResponse)
async def retry_pix(transaction_id: str, account_id: str = Depends(current_account_id),
                    orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    await orchestrator.get_transaction_for_account(transaction_id, account_id)
    return payout_response(await orchestrator.retry(transaction_id))

# Troco
@app.post("/troco/calculate", response_model=TrocoCalculateResponse)
async def calculate_troco(req: TrocoCalculateRequest, account_id: str = Depends(current_account_id),
                          orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    _, sub_account = await orchestrator.get_profile(account_id)
    quote, decision = await orchestrator.preview_change(sub_account.id, req.total_amount, req.paid_amount)
    return TrocoCalculateResponse(
        total_amount=str(quote.total),
        paid_amount=str(quote.paid),
        change_amount=str(quote.change),
        has_change=quote.has_change,
        allowed=decision is None or decision.allowed,
        reason=decision.reason.value if decision is not None and decision.reason else None,
    )

@app.post("/troco/process", response_model=TrocoProcessResponse)
async def process_troco(req: TrocoProcessRequest, account_id: str = Depends(current_account_id),
                        orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    _, sub_account = await orchestrator.get_profile(account_id)
    result = await orchestrator.return_change(sub_account.id, req.pix_key, req.total_amount, req.paid_amount,
                                              req.description, pix_key_type=req.pix_key_type)
    return TrocoProcessResponse(
        change_amount=str(result.quote.change),
        has_change=result.quote.has_change,
        transaction=transaction_out(result.payout.transaction) if result.payout else None,
        warning=result.payout.warning if result.payout else None,
    )

# Establishments
@app.post("/establishments", response_model=EstablishmentOut, status_code=201)
async def create_establishment(req: EstablishmentCreateRequest, account_id: str = Depends(current_account_id),
                               orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    establishment = await orchestrator.create_establishment(account_id, req.name, tax_id=req.tax_id, code=req.code)
    return establishment_out(establishment)

@app.get("/establishments", response_model=EstablishmentListResponse)
async def list_establishments(account_id: str = Depends(current_account_id),
                              orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    rows = await orchestrator.list_establishments(account_id)
    return EstablishmentListResponse(establishments=[establishment_out(e) for e in rows])

# Devices (no bearer token)
@app.post("/arduino/process-troco", response_model=TrocoProcessResponse,
          dependencies=[Depends(device_rate_limit)])
async def device_process_troco(req: DeviceTrocoRequest, orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    result = await orchestrator.device_return_change(req.establishment_code, req.pix_key, req.total_amount,
                                                     req.paid_amount, req.description)
    return TrocoProcessResponse(
        change_amount=str(result.quote.change),
        has_change=result.quote.has_change,
        transaction=transaction_out(result.payout.transaction) if result.payout else None,
        warning=result.payout.warning if result.payout else None,
    )

@app.get("/arduino/status/{code}", response_model=DeviceStatusResponse, dependencies=[Depends(device_rate_limit)])
async def device_status(code: str, orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    establishment, sub_account = await orchestrator.device_status(code)
    wallet = orchestrator.wallet_view(sub_account)
    return DeviceStatusResponse(
        establishment_code=establishment.code,
        establishment_name=establishment.name,
        is_active=wallet.is_active,
        available=str(wallet.available),
        max_per_transaction=str(wallet.max_per_transaction),
        remaining_daily_limit=str(wallet.remaining_daily_limit),
    )

@app.post("/arduino/heartbeat/{code}", response_model=HeartbeatResponse, dependencies=[Depends(device_rate_limit)])
async def device_heartbeat(code: str, orchestrator: PayoutOrchestrator = Depends(get_orchestrator)):
    establishment = await orchestrator.heartbeat(code)
    return HeartbeatResponse(establishment_code=establishment.code, last_seen=_iso(establishment.last_seen))
