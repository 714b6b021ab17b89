# app/schemas/contract_schema.py

from pydantic import BaseModel, ConfigDict, Field
from typing import List, Literal, Optional
from datetime import datetime
from decimal import Decimal

from app.schemas.payment_schema import PaymentOut

# --- 1. 建立合約 (Input) ---
# 提案被接受後建立合約，同時向雇主扣款並建立託管
class ContractCreate(BaseModel):
    job_id: str
    proposal_id: str
    freelancer_id: str
    # 省略時視為目前登入的雇主
    client_id: Optional[str] = None
    agreed_amount: Decimal = Field(..., gt=0, decimal_places=2)
    budget_type: Literal["fixed", "hourly"] = "fixed"
    # 交付天數，用來推算截止日
    agreed_delivery_time: Optional[int] = Field(None, gt=0)
    description: Optional[str] = None

# --- 2. 交付物 (Input) ---
class DeliverableSubmit(BaseModel):
    description: str
    files: List[str] = []

# action 在 Service 層驗證 (accept / request_revision)
class DeliverableReview(BaseModel):
    action: str
    revision_note: Optional[str] = None

# --- 3. 時薪制工時 (Input) ---
class HoursUpdate(BaseModel):
    hours_worked: Decimal

# --- 4. 管理員操作 (Input) ---
class AdminCancelRequest(BaseModel):
    reason: Optional[str] = None

class AdminAmountUpdate(BaseModel):
    new_amount: Decimal
    reason: Optional[str] = None

# --- 5. 輸出 ---
class DeliverableOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    deliverable_id: str
    contract_id: str
    submitted_by: str
    description: str
    files: List[str]
    status: str
    revision_note: Optional[str] = None
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None

class AmountChangeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    change_id: str
    old_amount: Decimal
    new_amount: Decimal
    changed_by: str
    reason: Optional[str] = None
    created_at: Optional[datetime] = None

# 用於 GET /contracts/{id} 或 GET /contracts/my
class ContractOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    contract_id: str
    job_id: str
    proposal_id: str
    client_id: str
    freelancer_id: str
    description: Optional[str] = None
    agreed_amount: Decimal
    budget_type: str
    agreed_delivery_time: Optional[int] = None
    calculated_deadline: Optional[datetime] = None
    hours_worked: Decimal
    status: str
    version: int
    pending_deliverable_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    terminated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    deliverables: List[DeliverableOut] = []
    amount_history: List[AmountChangeOut] = []

class SubmitWorkOut(BaseModel):
    deliverable: DeliverableOut
    contract: ContractOut

class ReviewWorkOut(BaseModel):
    deliverable: DeliverableOut
    contract: ContractOut
    # 驗收通過時實際撥給工作者的金額
    released_amount: Optional[Decimal] = None

class ContractWithEscrowOut(BaseModel):
    contract: ContractOut
    escrow: Optional[PaymentOut] = None
