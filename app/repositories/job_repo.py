# app/repositories/job_repo.py
# 案件 (外部協作模組)：合約流程只需要讀取與更新狀態 / 預算

from decimal import Decimal
from datetime import datetime
from typing import Optional
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.models.job import Job

class JobRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_job_by_id(self, job_id: str) -> Optional[Job]:
        stmt = select(Job).where(Job.job_id == job_id).execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def update_status(self, job_id: str, status: str, closed_at: Optional[datetime] = None) -> None:
        values = {"status": status}
        if status in ('completed', 'closed'):
            values["closed_at"] = closed_at
        elif status == 'open':
            values["closed_at"] = None
        await self.db.execute(
            update(Job)
            .where(Job.job_id == job_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def update_budget(self, job_id: str, budget_amount: Decimal) -> None:
        await self.db.execute(
            update(Job)
            .where(Job.job_id == job_id)
            .values(budget_amount=budget_amount)
            .execution_options(synchronize_session=False)
        )
