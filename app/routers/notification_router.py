# app/routers/notification_router.py

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.models.user import User
from app.core.security import get_current_user
from app.services.notification_service import NotificationService
from app.schemas.notification_schema import (
    NotificationOut, NotificationListOut, UnreadCountOut, BulkResultOut
)

router = APIRouter(
    prefix="/notifications",
    tags=["Notifications"]
)

def get_notification_service(db: AsyncSession = Depends(get_db)) -> NotificationService:
    return NotificationService(db)

@router.get(
    "/my",
    response_model=NotificationListOut,
    summary="獲取我的通知列表"
)
async def get_my_notifications(
    unread_only: bool = Query(False, alias="unreadOnly"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    service: NotificationService = Depends(get_notification_service),
    current_user: User = Depends(get_current_user)
):
    """
    獲取當前登入者的通知列表 (依時間倒序)，並附上未讀數。
    新通知同時會透過 WebSocket 的 'notification' 事件即時推送。
    """
    notifications = await service.get_my_notifications(current_user, unread_only, limit, offset)
    unread = await service.get_unread_count(current_user)
    return {"notifications": notifications, "unread_count": unread}

@router.get("/unread-count", response_model=UnreadCountOut, summary="未讀通知數")
async def get_unread_count(
    service: NotificationService = Depends(get_notification_service),
    current_user: User = Depends(get_current_user)
):
    return {"unread_count": await service.get_unread_count(current_user)}

@router.patch("/read-all", response_model=BulkResultOut, summary="全部設為已讀")
async def mark_all_as_read(
    service: NotificationService = Depends(get_notification_service),
    current_user: User = Depends(get_current_user)
):
    return {"affected": await service.mark_all_as_read(current_user)}

@router.patch(
    "/{notification_id}/read",
    response_model=NotificationOut,
    summary="將通知設為已讀"
)
async def mark_as_read(
    notification_id: str,
    service: NotificationService = Depends(get_notification_service),
    current_user: User = Depends(get_current_user)
):
    """
    當使用者點擊通知時，前端應呼叫此 API 將其標記為已讀。
    """
    return await service.mark_notification_as_read(notification_id, current_user)

@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT, summary="刪除通知")
async def delete_notification(
    notification_id: str,
    service: NotificationService = Depends(get_notification_service),
    current_user: User = Depends(get_current_user)
):
    await service.delete_notification(notification_id, current_user)
    return None # 204 No Content

@router.delete("", response_model=BulkResultOut, summary="刪除我的所有通知")
async def delete_all_notifications(
    service: NotificationService = Depends(get_notification_service),
    current_user: User = Depends(get_current_user)
):
    return {"affected": await service.delete_all_notifications(current_user)}
