# app/routers/admin_router.py

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from app.core.database import get_db
from app.core.security import require_admin
from app.models.user import User
from app.schemas.contract_schema import (
    AdminCancelRequest, AdminAmountUpdate, ContractOut, ContractWithEscrowOut
)
from app.schemas.payment_schema import PaymentOut
from app.services.contract_service import ContractService
from app.services.payment_service import PaymentService

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(require_admin)] # (重要) 整個路由都需要管理員
)

def get_contract_service(db: AsyncSession = Depends(get_db)) -> ContractService:
    return ContractService(db)

def get_payment_service(db: AsyncSession = Depends(get_db)) -> PaymentService:
    return PaymentService(db)

@router.post("/contracts/{contract_id}/cancel", response_model=ContractWithEscrowOut, summary="管理員取消合約")
async def api_admin_cancel_contract(
    contract_id: str,
    data: Optional[AdminCancelRequest] = None,
    service: ContractService = Depends(get_contract_service),
    admin: User = Depends(require_admin)
):
    """
    進行中 / 暫停的合約 -> terminated，託管款項退回雇主，案件重新開放
    """
    contract = await service.admin_cancel_contract(contract_id, admin, data.reason if data else None)
    escrow = await service.get_latest_escrow(contract_id)
    return {"contract": contract, "escrow": escrow}

@router.post("/contracts/{contract_id}/complete", response_model=ContractWithEscrowOut, summary="管理員完成合約")
async def api_admin_complete_contract(
    contract_id: str,
    service: ContractService = Depends(get_contract_service),
    admin: User = Depends(require_admin)
):
    contract = await service.admin_complete_contract(contract_id, admin)
    escrow = await service.get_latest_escrow(contract_id)
    return {"contract": contract, "escrow": escrow}

@router.patch("/contracts/{contract_id}/amount", response_model=ContractWithEscrowOut, summary="管理員調整合約金額")
async def api_admin_update_amount(
    contract_id: str,
    data: AdminAmountUpdate,
    service: ContractService = Depends(get_contract_service),
    admin: User = Depends(require_admin)
):
    """
    差額會透過雇主餘額與託管金額同步調整 (增加時扣款，減少時退款)
    """
    contract = await service.admin_update_contract_amount(contract_id, admin, data.new_amount, data.reason)
    escrow = await service.get_latest_escrow(contract_id)
    return {"contract": contract, "escrow": escrow}

@router.get("/contracts", response_model=List[ContractOut], summary="所有合約")
async def api_admin_list_contracts(
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: ContractService = Depends(get_contract_service),
    admin: User = Depends(require_admin)
):
    return await service.list_all_contracts(admin, status=status_filter, limit=limit, offset=offset)

@router.get("/payments", response_model=List[PaymentOut], summary="所有付款紀錄")
async def api_admin_list_payments(
    status_filter: Optional[str] = Query(None, alias="status"),
    type_filter: Optional[str] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: PaymentService = Depends(get_payment_service),
    admin: User = Depends(require_admin)
):
    return await service.list_all_payments(admin, status=status_filter, type_=type_filter, limit=limit, offset=offset)
