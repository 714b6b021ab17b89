# app/schemas/modification_schema.py

from pydantic import BaseModel, ConfigDict
from typing import Optional
from datetime import datetime
from decimal import Decimal

# 欄位組合 (budget / deadline / both) 的檢查在 Service 層，錯誤統一回傳 fields 清單
class ModificationCreate(BaseModel):
    contract_id: str
    modification_type: str
    requested_budget: Optional[Decimal] = None
    requested_delivery_time: Optional[int] = None
    reason: str

class ModificationRespond(BaseModel):
    action: str
    response_note: Optional[str] = None

class ModificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    request_id: str
    contract_id: str
    job_id: str
    requested_by: str
    requested_to: str
    modification_type: str
    current_budget: Decimal
    current_delivery_time: Optional[int] = None
    current_deadline: Optional[datetime] = None
    requested_budget: Optional[Decimal] = None
    requested_delivery_time: Optional[int] = None
    requested_deadline: Optional[datetime] = None
    budget_difference: Decimal
    reason: str
    status: str
    response_note: Optional[str] = None
    responded_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
