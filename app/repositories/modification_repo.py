# app/repositories/modification_repo.py

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.sql.expression import or_
from typing import List, Optional

from app.models.modification_request import ContractModificationRequest


class ModificationRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_request(self, request: ContractModificationRequest) -> ContractModificationRequest:
        self.db.add(request)
        await self.db.flush()
        return request

    async def get_request_by_id(self, request_id: str) -> Optional[ContractModificationRequest]:
        stmt = (
            select(ContractModificationRequest)
            .where(ContractModificationRequest.request_id == request_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def get_pending_for_contract(self, contract_id: str) -> Optional[ContractModificationRequest]:
        stmt = select(ContractModificationRequest).where(
            ContractModificationRequest.pending_for_contract_id == contract_id
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def list_by_contract(self, contract_id: str) -> List[ContractModificationRequest]:
        stmt = (
            select(ContractModificationRequest)
            .where(ContractModificationRequest.contract_id == contract_id)
            .order_by(ContractModificationRequest.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def list_by_user(
        self, user_id: str, status: Optional[str] = None, role: Optional[str] = None
    ) -> List[ContractModificationRequest]:
        """
        role = 'requester' 只看自己發出的，'approver' 只看待自己審核的
        """
        if role == "requester":
            condition = ContractModificationRequest.requested_by == user_id
        elif role == "approver":
            condition = ContractModificationRequest.requested_to == user_id
        else:
            condition = or_(
                ContractModificationRequest.requested_by == user_id,
                ContractModificationRequest.requested_to == user_id
            )
        stmt = select(ContractModificationRequest).where(condition)
        if status:
            stmt = stmt.where(ContractModificationRequest.status == status)
        stmt = stmt.order_by(ContractModificationRequest.created_at.desc())
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def resolve(self, request_id: str, to_status: str, **values) -> bool:
        """
        結案 (approved / rejected / cancelled)：只有 'pending' 可以轉換，並釋放 pending 鎖定欄位
        """
        stmt = (
            update(ContractModificationRequest)
            .where(
                ContractModificationRequest.request_id == request_id,
                ContractModificationRequest.status == 'pending'
            )
            .values(status=to_status, pending_for_contract_id=None, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1
