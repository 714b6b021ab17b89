# app/routers/modification_router.py

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from app.core.database import get_db
from app.core.security import get_current_user
from app.models.user import User
from app.schemas.modification_schema import ModificationCreate, ModificationRespond, ModificationOut
from app.services.modification_service import ModificationService

router = APIRouter(
    prefix="/modification-requests",
    tags=["Contract Modifications"]
)

def get_modification_service(db: AsyncSession = Depends(get_db)) -> ModificationService:
    return ModificationService(db)

@router.post(
    "",
    response_model=ModificationOut,
    status_code=status.HTTP_201_CREATED,
    summary="提出合約修改請求 (工作者)"
)
async def api_request_modification(
    data: ModificationCreate,
    service: ModificationService = Depends(get_modification_service),
    current_user: User = Depends(get_current_user)
):
    """
    (工作者) 對進行中的合約提出預算 / 工期修改。

    - `modification_type`: budget / deadline / both
    - 同一份合約同時只能有一筆待處理的請求
    """
    return await service.request_modification(data, current_user)

@router.post(
    "/{request_id}/respond",
    response_model=ModificationOut,
    summary="回覆修改請求 (雇主)"
)
async def api_respond_to_modification(
    request_id: str,
    data: ModificationRespond,
    service: ModificationService = Depends(get_modification_service),
    current_user: User = Depends(get_current_user)
):
    """
    (雇主) `approve` 或 `reject`。
    核准增加預算時會從雇主餘額扣除差額並增加託管金額；減少預算時退回差額。
    """
    return await service.respond_to_modification(request_id, current_user, data.action, data.response_note)

@router.get("/my", response_model=List[ModificationOut], summary="我的修改請求")
async def api_get_my_requests(
    status_filter: Optional[str] = Query(None, alias="status"),
    role: Optional[str] = Query(None, description="requester / approver"),
    service: ModificationService = Depends(get_modification_service),
    current_user: User = Depends(get_current_user)
):
    return await service.list_my_requests(current_user, status=status_filter, role=role)

@router.get("/contract/{contract_id}", response_model=List[ModificationOut], summary="合約的修改請求紀錄")
async def api_get_contract_requests(
    contract_id: str,
    service: ModificationService = Depends(get_modification_service),
    current_user: User = Depends(get_current_user)
):
    return await service.list_for_contract(contract_id, current_user)

@router.get("/{request_id}", response_model=ModificationOut, summary="檢視修改請求")
async def api_get_request(
    request_id: str,
    service: ModificationService = Depends(get_modification_service),
    current_user: User = Depends(get_current_user)
):
    return await service.get_request(request_id, current_user)

@router.delete("/{request_id}", response_model=ModificationOut, summary="撤回修改請求 (工作者)")
async def api_cancel_request(
    request_id: str,
    service: ModificationService = Depends(get_modification_service),
    current_user: User = Depends(get_current_user)
):
    """
    只能撤回自己提出、仍在待處理的請求 (狀態改為 cancelled，保留紀錄)
    """
    return await service.cancel_modification(request_id, current_user)
