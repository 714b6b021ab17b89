# app/schemas/payment_schema.py

from pydantic import BaseModel, ConfigDict, Field, EmailStr
from typing import Optional
from datetime import datetime
from decimal import Decimal

class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    contract_id: Optional[str] = None
    payer_id: Optional[str] = None
    payee_id: Optional[str] = None
    amount: Decimal
    platform_fee: Decimal
    net_amount: Decimal
    total_amount: Decimal
    currency: str
    payment_method: str
    status: str
    type: str
    is_escrow: bool
    transaction_id: Optional[str] = None
    description: Optional[str] = None
    failure_reason: Optional[str] = None
    refund_reason: Optional[str] = None
    paypal_order_id: Optional[str] = None
    held_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

# --- 儲值 / 提領 (Input) ---
class PayPalOrderCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)

class PayPalCapture(BaseModel):
    order_id: str

class WithdrawRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    paypal_email: Optional[EmailStr] = None

# --- 輸出 ---
class PayPalOrderOut(BaseModel):
    order_id: str
    status: Optional[str] = None
    approval_url: Optional[str] = None
    payment: PaymentOut

class FundsResultOut(BaseModel):
    success: bool = True
    message: str
    balance: Decimal
    payment: PaymentOut
