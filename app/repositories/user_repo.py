# app/repositories/user_repo.py
# 負責與使用者相關的資料庫操作
from decimal import Decimal
from datetime import datetime
from typing import Optional
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from app.models.user import User

class UserRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user_by_email(self, email: str) -> User | None:
        """
        透過 email 查詢使用者
        """
        stmt = select(User).where(User.email == email)
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def create_user(self, user: User) -> User:
        """
        新增使用者到資料庫
        """
        self.db.add(user)
        await self.db.commit()
        await self.db.refresh(user)
        return user

    async def get_user_by_id(self, user_id: str) -> User | None:
        """
        透過 user_id 查詢使用者
        (餘額由條件式 UPDATE 修改，因此每次都從資料庫重新載入)
        """
        stmt = (
            select(User)
            .where(User.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def get_balance(self, user_id: str) -> Optional[Decimal]:
        """
        直接從資料庫讀取最新餘額 (不使用 Session 中的快取物件)
        """
        stmt = select(User.balance).where(User.user_id == user_id)
        result = await self.db.execute(stmt)
        return result.scalar()

    # --- 錢包：只做「相對增減」，不提交 (由 Service 決定交易邊界) ---

    async def increment_balance(self, user_id: str, amount: Decimal, add_to_earnings: bool = False) -> bool:
        values = {"balance": User.balance + amount}
        if add_to_earnings:
            values["total_earnings"] = User.total_earnings + amount
        stmt = (
            update(User)
            .where(User.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def decrement_balance_if_sufficient(self, user_id: str, amount: Decimal) -> bool:
        """
        條件式扣款：只有 balance >= amount 時才會扣，回傳是否成功
        """
        stmt = (
            update(User)
            .where(User.user_id == user_id, User.balance >= amount)
            .values(balance=User.balance - amount)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def increment_completed_jobs(self, freelancer_id: str, client_id: str) -> None:
        await self.db.execute(
            update(User)
            .where(User.user_id == freelancer_id)
            .values(completed_jobs=User.completed_jobs + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(User)
            .where(User.user_id == client_id)
            .values(completed_jobs_as_client=User.completed_jobs_as_client + 1)
            .execution_options(synchronize_session=False)
        )

    async def update_response_time(
        self, user_id: str, old_avg: int, old_count: int, new_avg: int, new_count: int
    ) -> bool:
        """
        以 (舊平均, 舊次數) 作為條件更新，避免兩個請求同時覆寫
        """
        stmt = (
            update(User)
            .where(
                User.user_id == user_id,
                User.response_time == old_avg,
                User.response_time_count == old_count,
            )
            .values(response_time=new_avg, response_time_count=new_count)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def set_presence(self, user_id: str, is_online: bool, last_seen: Optional[datetime] = None) -> None:
        values = {"is_online": is_online}
        if last_seen is not None:
            values["last_seen"] = last_seen
        await self.db.execute(
            update(User)
            .where(User.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
