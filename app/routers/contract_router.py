# app/routers/contract_router.py

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from app.services.contract_service import ContractService
from app.schemas.contract_schema import (
    ContractCreate, ContractOut, ContractWithEscrowOut,
    DeliverableSubmit, DeliverableReview, HoursUpdate,
    SubmitWorkOut, ReviewWorkOut
)

from app.models.user import User
from app.core.security import get_current_user # 依賴注入：獲取當前使用者
from app.core.database import get_db # 依賴注入：獲取 DB Session

router = APIRouter(
    prefix="/contracts",
    tags=["Contracts"] # API 文件分組
)

# 輔助函式：在路由中快速實例化 Service
def get_contract_service(db: AsyncSession = Depends(get_db)) -> ContractService:
    return ContractService(db)

@router.post(
    "",
    response_model=ContractWithEscrowOut,
    status_code=status.HTTP_201_CREATED,
    summary="建立合約並託管款項"
)
async def api_create_contract(
    contract_data: ContractCreate,
    service: ContractService = Depends(get_contract_service),
    current_user: User = Depends(get_current_user)
):
    """
    (雇主) 提案被接受後建立合約。

    建立時會從雇主餘額扣除 `agreed_amount` 並建立託管紀錄，
    餘額不足會回傳 `requiredAmount` / `currentBalance` / `shortfall`。
    """
    contract = await service.create_contract(contract_data, current_user)
    escrow = await service.get_latest_escrow(contract.contract_id)
    return {"contract": contract, "escrow": escrow}

@router.get(
    "/my",
    response_model=List[ContractOut],
    summary="獲取我的合約列表"
)
async def api_get_my_contracts(
    role: Optional[str] = Query(None, description="client / freelancer，省略則兩者皆列出"),
    service: ContractService = Depends(get_contract_service),
    current_user: User = Depends(get_current_user)
):
    return await service.list_my_contracts(current_user, role=role)

@router.get(
    "/{contract_id}",
    response_model=ContractWithEscrowOut,
    summary="檢視合約詳情"
)
async def api_get_contract_details(
    contract_id: str,
    service: ContractService = Depends(get_contract_service),
    current_user: User = Depends(get_current_user)
):
    """
    (雇主 / 工作者 / 管理員) 檢視單一合約與其託管紀錄。
    """
    contract = await service.get_contract(contract_id, current_user)
    escrow = await service.get_latest_escrow(contract_id)
    return {"contract": contract, "escrow": escrow}

@router.post(
    "/{contract_id}/complete",
    response_model=ContractWithEscrowOut,
    summary="完成合約並撥款"
)
async def api_complete_contract(
    contract_id: str,
    service: ContractService = Depends(get_contract_service),
    current_user: User = Depends(get_current_user)
):
    """
    (雇主 / 管理員) 將進行中的合約標記為完成，託管款項扣除平台費後撥給工作者。
    """
    contract = await service.complete_contract(contract_id, current_user)
    escrow = await service.get_latest_escrow(contract_id)
    return {"contract": contract, "escrow": escrow}

@router.post(
    "/{contract_id}/deliverables",
    response_model=SubmitWorkOut,
    status_code=status.HTTP_201_CREATED,
    summary="提交交付物 (工作者)"
)
async def api_submit_work(
    contract_id: str,
    data: DeliverableSubmit,
    service: ContractService = Depends(get_contract_service),
    current_user: User = Depends(get_current_user)
):
    deliverable, contract = await service.submit_work(contract_id, current_user, data.description, data.files)
    return {"deliverable": deliverable, "contract": contract}

@router.post(
    "/{contract_id}/deliverables/{deliverable_id}/review",
    response_model=ReviewWorkOut,
    summary="驗收交付物 (雇主)"
)
async def api_review_work(
    contract_id: str,
    deliverable_id: str,
    data: DeliverableReview,
    service: ContractService = Depends(get_contract_service),
    current_user: User = Depends(get_current_user)
):
    """
    - `accept`：交付物通過，合約完成並撥款
    - `request_revision`：退回修改，必須附上 `revision_note`
    """
    deliverable, contract, payout = await service.review_work(
        contract_id, deliverable_id, current_user, data.action, data.revision_note
    )
    return {"deliverable": deliverable, "contract": contract, "released_amount": payout}

@router.post(
    "/{contract_id}/hours",
    response_model=ContractOut,
    summary="更新已工作時數 (時薪制)"
)
async def api_update_hours(
    contract_id: str,
    data: HoursUpdate,
    service: ContractService = Depends(get_contract_service),
    current_user: User = Depends(get_current_user)
):
    return await service.update_hours_worked(contract_id, current_user, data.hours_worked)
