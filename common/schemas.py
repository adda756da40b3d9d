from pydantic import BaseModel, Field
from typing import Dict, List, Literal, Optional, Union

# Amounts arrive as JSON numbers or strings and are parsed into exact centavos
# by the service; they leave as strings with two decimal places.
AmountIn = Union[str, int, float]

PixKeyTypeName = Literal["cpf", "cnpj", "email", "phone", "random"]

# Accounts
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    tax_id: str = Field(..., min_length=1, max_length=32)
    email: Optional[str] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None

class AccountOut(BaseModel):
    id: str
    name: str
    tax_id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool

class SubAccountOut(BaseModel):
    id: str
    company_name: str
    balance: str
    reserved: str
    available: str
    max_per_transaction: str
    daily_limit: str
    daily_used: str
    daily_count: int
    remaining_daily_limit: str
    is_active: bool
    last_reset: str

class RegisterResponse(BaseModel):
    success: bool = True
    account: AccountOut
    sub_account: SubAccountOut
    token: str

class ProfileResponse(BaseModel):
    success: bool = True
    account: AccountOut
    sub_account: SubAccountOut

class UpdateSubAccountRequest(BaseModel):
    max_per_transaction: Optional[AmountIn] = None
    daily_limit: Optional[AmountIn] = None
    is_active: Optional[bool] = None

class AddBalanceRequest(BaseModel):
    amount: AmountIn

class SubAccountResponse(BaseModel):
    success: bool = True
    sub_account: SubAccountOut

# PIX
class PixProcessRequest(BaseModel):
    pix_key: str = Field(..., min_length=1, max_length=255)
    pix_key_type: Optional[PixKeyTypeName] = None
    amount: AmountIn
    description: str = Field("", max_length=140)

class PixTransactionOut(BaseModel):
    id: str
    sub_account_id: str
    pix_key: str
    pix_key_type: str
    amount: str
    description: str
    status: str
    source: str
    gateway_tx_id: Optional[str] = None
    end_to_end_id: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int
    created_at: Optional[str] = None
    processed_at: Optional[str] = None

class PayoutResponse(BaseModel):
    success: bool = True
    transaction: PixTransactionOut
    warning: Optional[str] = None

class StatusSummary(BaseModel):
    count: int
    total: str

class TransactionListResponse(BaseModel):
    success: bool = True
    transactions: List[PixTransactionOut]
    summary: Dict[str, StatusSummary]
    limit: int
    offset: int

# Troco
class TrocoCalculateRequest(BaseModel):
    total_amount: AmountIn
    paid_amount: AmountIn

class TrocoCalculateResponse(BaseModel):
    success: bool = True
    total_amount: str
    paid_amount: str
    change_amount: str
    has_change: bool
    allowed: bool
    reason: Optional[str] = None

class TrocoProcessRequest(BaseModel):
    total_amount: AmountIn
    paid_amount: AmountIn
    pix_key: str = Field(..., min_length=1, max_length=255)
    pix_key_type: Optional[PixKeyTypeName] = None
    description: str = Field("", max_length=140)

class TrocoProcessResponse(BaseModel):
    success: bool = True
    change_amount: str
    has_change: bool
    transaction: Optional[PixTransactionOut] = None
    warning: Optional[str] = None

# Establishments and devices
class EstablishmentCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    tax_id: Optional[str] = None
    code: Optional[str] = Field(None, min_length=8, max_length=8)

class EstablishmentOut(BaseModel):
    id: str
    code: str
    name: str
    tax_id: Optional[str] = None
    is_active: bool
    last_seen: Optional[str] = None

class EstablishmentListResponse(BaseModel):
    success: bool = True
    establishments: List[EstablishmentOut]

class DeviceTrocoRequest(BaseModel):
    establishment_code: str = Field(..., min_length=8, max_length=8)
    total_amount: AmountIn
    paid_amount: AmountIn
    pix_key: str = Field(..., min_length=1, max_length=255)
    description: str = Field("", max_length=140)

class DeviceStatusResponse(BaseModel):
    success: bool = True
    establishment_code: str
    establishment_name: str
    is_active: bool
    available: str
    max_per_transaction: str
    remaining_daily_limit: str

class HeartbeatResponse(BaseModel):
    success: bool = True
    establishment_code: str
    last_seen: str
