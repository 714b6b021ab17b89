# app/repositories/notification_repo.py

from datetime import datetime
from sqlalchemy import update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from typing import List, Optional
import logging

from app.models.notification import Notification

logger = logging.getLogger(__name__)

class NotificationRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_notification(self, notification: Notification) -> Notification:
        """
        新增一筆通知
        """
        try:
            # 步驟 1: 加入 Session
            self.db.add(notification)
            # 步驟 2: 執行 INSERT (Flush)
            await self.db.flush()
            # 步驟 3: 獲取 DB 產生的預設值 (例如 created_at)
            await self.db.refresh(notification)
            # 步驟 4: 提交事務 (Commit)
            await self.db.commit()
            return notification

        except Exception as e:
            await self.db.rollback()
            logger.error(f"建立通知失敗: {e}", exc_info=True)
            raise

    async def get_notification_by_id(self, notification_id: str) -> Optional[Notification]:
        """
        依 ID 獲取通知 (主要用於權限檢查)
        """
        stmt = (
            select(Notification)
            .where(Notification.notification_id == notification_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def list_notifications_by_user(
        self, user_id: str, unread_only: bool = False, limit: int = 20, offset: int = 0
    ) -> List[Notification]:
        """
        獲取某位使用者的通知 (依時間降序排列)
        """
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read == False)
        stmt = stmt.order_by(Notification.created_at.desc()).limit(limit).offset(offset)
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def count_unread(self, user_id: str) -> int:
        stmt = select(func.count()).select_from(Notification).where(
            Notification.user_id == user_id,
            Notification.is_read == False
        )
        result = await self.db.execute(stmt)
        return result.scalar() or 0

    async def mark_as_read(self, notification: Notification, read_at: datetime) -> Notification:
        """
        將單一通知設為已讀 (已讀的不再改動 read_at)
        """
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = read_at
            await self.db.commit()
            await self.db.refresh(notification)
        return notification

    async def mark_all_as_read(self, user_id: str, read_at: datetime) -> int:
        stmt = (
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read == False)
            .values(is_read=True, read_at=read_at)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount

    async def delete_notification(self, notification: Notification) -> None:
        await self.db.delete(notification)
        await self.db.commit()

    async def delete_all_by_user(self, user_id: str) -> int:
        stmt = delete(Notification).where(Notification.user_id == user_id).execution_options(
            synchronize_session=False
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount
