# app/repositories/proposal_repo.py

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from typing import Optional

from app.models.proposal import Proposal

class ProposalRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_proposal_by_id(self, proposal_id: str) -> Optional[Proposal]:
        """
        透過 ID 獲取單一提案
        """
        stmt = select(Proposal).where(Proposal.proposal_id == proposal_id)
        result = await self.db.execute(stmt)
        return result.scalars().first()

