# app/routers/payment_router.py

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from app.core.database import get_db
from app.core.security import get_current_user
from app.models.user import User
from app.schemas.payment_schema import PaymentOut
from app.services.payment_service import PaymentService

router = APIRouter(
    prefix="/payments",
    tags=["Payments"]
)

def get_payment_service(db: AsyncSession = Depends(get_db)) -> PaymentService:
    return PaymentService(db)

@router.get("/my", response_model=List[PaymentOut], summary="我的付款紀錄")
async def api_get_my_payments(
    direction: Optional[str] = Query(None, alias="type", description="sent / received"),
    service: PaymentService = Depends(get_payment_service),
    current_user: User = Depends(get_current_user)
):
    return await service.get_my_payments(current_user, direction)

@router.get("/contract/{contract_id}/escrow", response_model=PaymentOut, summary="合約的託管紀錄")
async def api_get_contract_escrow(
    contract_id: str,
    service: PaymentService = Depends(get_payment_service),
    current_user: User = Depends(get_current_user)
):
    return await service.get_contract_escrow(contract_id, current_user)

@router.get("/{payment_id}", response_model=PaymentOut, summary="檢視付款紀錄")
async def api_get_payment(
    payment_id: str,
    service: PaymentService = Depends(get_payment_service),
    current_user: User = Depends(get_current_user)
):
    return await service.get_payment(payment_id, current_user)
