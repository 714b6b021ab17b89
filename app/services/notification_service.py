# app/services/notification_service.py

from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from app.core.exceptions import NotFoundError, ForbiddenError
from app.core.websocket_manager import PresenceHub, hub
from app.models.user import User
from app.models.notification import Notification
from app.repositories.notification_repo import NotificationRepository
from app.schemas.notification_schema import NotificationOut
from app.utils.clock import utcnow

import logging

logger = logging.getLogger(__name__)

class NotificationService:
    """
    通知 = 先寫入資料庫，再盡力推播給該使用者所有在線的連線。
    推播失敗不影響已寫入的通知。
    """
    def __init__(self, db: AsyncSession, presence: Optional[PresenceHub] = None):
        self.db = db
        self.repo = NotificationRepository(db)
        self.presence = presence or hub

    async def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        content: Optional[str] = None,
        link_url: Optional[str] = None,
        category: str = "system",
        priority: str = "medium",
        related_job_id: Optional[str] = None,
        related_proposal_id: Optional[str] = None,
        related_contract_id: Optional[str] = None,
        related_user_id: Optional[str] = None,
    ) -> Notification:
        """
        (內部使用) 供其他 Service 呼叫的介面
        """
        new_notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            content=content,
            link_url=link_url,
            category=category,
            priority=priority,
            related_job_id=related_job_id,
            related_proposal_id=related_proposal_id,
            related_contract_id=related_contract_id,
            related_user_id=related_user_id,
            is_read=False
        )
        logger.info(f"建立通知 for User ID: {user_id}, Type: {type}, Title: {title}")
        notification = await self.repo.create_notification(new_notification)

        try:
            payload = NotificationOut.model_validate(notification).model_dump(mode="json")
            await self.presence.emit_to_user(user_id, "notification", payload)
        except Exception as e:
            logger.warning(f"即時推播通知失敗 (通知已儲存): {e}")

        return notification

    async def get_my_notifications(
        self, user: User, unread_only: bool = False, limit: int = 20, offset: int = 0
    ) -> List[Notification]:
        """
        (API 用) 獲取當前登入者的通知列表
        """
        return await self.repo.list_notifications_by_user(
            user.user_id, unread_only=unread_only, limit=limit, offset=offset
        )

    async def get_unread_count(self, user: User) -> int:
        return await self.repo.count_unread(user.user_id)

    async def _get_own_notification(self, notification_id: str, user: User) -> Notification:
        notification = await self.repo.get_notification_by_id(notification_id)

        if not notification:
            raise NotFoundError("通知不存在")

        # (重要) 只能操作自己的通知
        if notification.user_id != user.user_id:
            raise ForbiddenError("無權操作此通知")

        return notification

    async def mark_notification_as_read(self, notification_id: str, user: User) -> Notification:
        """
        (API 用) 將通知設為已讀，已讀的通知再標記一次不會出錯
        """
        notification = await self._get_own_notification(notification_id, user)
        return await self.repo.mark_as_read(notification, read_at=utcnow())

    async def mark_all_as_read(self, user: User) -> int:
        return await self.repo.mark_all_as_read(user.user_id, read_at=utcnow())

    async def delete_notification(self, notification_id: str, user: User) -> None:
        notification = await self._get_own_notification(notification_id, user)
        await self.repo.delete_notification(notification)

    async def delete_all_notifications(self, user: User) -> int:
        return await self.repo.delete_all_by_user(user.user_id)
