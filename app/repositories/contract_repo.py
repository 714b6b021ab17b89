# app/repositories/contract_repo.py

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.sql.expression import or_, exists
from datetime import datetime
from typing import Iterable, List, Optional

from app.models.contract import Contract, Deliverable, ContractAmountChange


class ContractRepository:
    """
    封裝對 'contracts' 資料表的操作

    (重要) 所有狀態轉換都是條件式 UPDATE：
    只有目前狀態符合預期時才會寫入，回傳 False 代表被其他請求搶先。
    這裡不 commit，交易邊界由 Service 層決定。
    """
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_contract(self, contract: Contract) -> Contract:
        """
        (C) 將新的合約物件加入 Session (flush 以取得預設值)
        """
        self.db.add(contract)
        await self.db.flush()
        return contract

    async def check_contract_exists_by_proposal(self, proposal_id: str) -> bool:
        """
        (R) 檢查是否已有合約關聯到此 proposal_id (proposal_id 是 unique)
        """
        stmt = select(exists().where(Contract.proposal_id == proposal_id))
        result = await self.db.execute(stmt)
        return result.scalar()

    async def get_contract_by_id(self, contract_id: str) -> Optional[Contract]:
        """
        (R) 透過 ID 獲取單一合約 (含交付物與金額變更紀錄)
        """
        stmt = (
            select(Contract)
            .where(Contract.contract_id == contract_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def list_contracts_by_user(self, user_id: str, role: Optional[str] = None) -> List[Contract]:
        """
        (R) 獲取某個使用者 (作為雇主 或 作為工作者) 的所有合約
        """
        if role == "client":
            condition = Contract.client_id == user_id
        elif role == "freelancer":
            condition = Contract.freelancer_id == user_id
        else:
            condition = or_(
                Contract.client_id == user_id,
                Contract.freelancer_id == user_id
            )
        stmt = select(Contract).where(condition).order_by(Contract.created_at.desc())
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def list_contracts(self, status: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[Contract]:
        """
        (R) 管理員檢視所有合約
        """
        stmt = select(Contract)
        if status:
            stmt = stmt.where(Contract.status == status)
        stmt = stmt.order_by(Contract.created_at.desc()).limit(limit).offset(offset)
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def list_active_contracts_with_deadline(self) -> List[Contract]:
        stmt = select(Contract).where(
            Contract.status == 'active',
            Contract.calculated_deadline.is_not(None)
        )
        result = await self.db.execute(stmt)
        return result.scalars().all()

    # --- 條件式更新 (compare-and-swap) ---

    async def transition_status(
        self,
        contract_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        **values
    ) -> bool:
        """
        狀態轉換：只有目前狀態在 from_statuses 之中才會成功
        """
        stmt = (
            update(Contract)
            .where(
                Contract.contract_id == contract_id,
                Contract.status.in_(list(from_statuses))
            )
            .values(status=to_status, version=Contract.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def update_if_active(self, contract_id: str, **values) -> bool:
        """
        只有合約仍為 'active' 時才寫入欄位 (金額、工時、截止日…)
        """
        stmt = (
            update(Contract)
            .where(Contract.contract_id == contract_id, Contract.status == 'active')
            .values(version=Contract.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def claim_pending_deliverable(self, contract_id: str, deliverable_id: str, delivered_at: datetime) -> bool:
        """
        設定「待驗收交付物」指標：合約必須為 active 且目前沒有待驗收的交付物
        """
        stmt = (
            update(Contract)
            .where(
                Contract.contract_id == contract_id,
                Contract.status == 'active',
                Contract.pending_deliverable_id.is_(None)
            )
            .values(pending_deliverable_id=deliverable_id, delivered_at=delivered_at)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def release_pending_deliverable(self, contract_id: str, deliverable_id: str) -> bool:
        stmt = (
            update(Contract)
            .where(
                Contract.contract_id == contract_id,
                Contract.status == 'active',
                Contract.pending_deliverable_id == deliverable_id
            )
            .values(pending_deliverable_id=None)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def set_deadline_warnings(self, contract_id: str, warnings: List[str]) -> None:
        await self.db.execute(
            update(Contract)
            .where(Contract.contract_id == contract_id)
            .values(deadline_warnings_sent=warnings)
            .execution_options(synchronize_session=False)
        )

    # --- 交付物 ---

    async def add_deliverable(self, deliverable: Deliverable) -> Deliverable:
        self.db.add(deliverable)
        await self.db.flush()
        return deliverable

    async def get_deliverable(self, contract_id: str, deliverable_id: str) -> Optional[Deliverable]:
        stmt = (
            select(Deliverable)
            .where(
                Deliverable.contract_id == contract_id,
                Deliverable.deliverable_id == deliverable_id
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def review_deliverable(self, deliverable_id: str, to_status: str, **values) -> bool:
        """
        只有 'pending_review' 的交付物可以被審核
        """
        stmt = (
            update(Deliverable)
            .where(
                Deliverable.deliverable_id == deliverable_id,
                Deliverable.status == 'pending_review'
            )
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    # --- 金額變更紀錄 ---

    async def add_amount_change(self, change: ContractAmountChange) -> ContractAmountChange:
        self.db.add(change)
        await self.db.flush()
        return change
