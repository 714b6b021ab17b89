# app/schemas/notification_schema.py

from pydantic import BaseModel, ConfigDict
from datetime import datetime
from typing import List, Optional

class NotificationOut(BaseModel):
    """
    用於 API 回傳 (以及即時推播) 的通知格式
    """
    model_config = ConfigDict(from_attributes=True)

    notification_id: str
    user_id: str
    type: str
    title: str
    content: Optional[str] = None
    link_url: Optional[str] = None
    priority: str
    category: str
    related_job_id: Optional[str] = None
    related_proposal_id: Optional[str] = None
    related_contract_id: Optional[str] = None
    related_user_id: Optional[str] = None
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

class NotificationListOut(BaseModel):
    notifications: List[NotificationOut]
    unread_count: int

class UnreadCountOut(BaseModel):
    unread_count: int

class BulkResultOut(BaseModel):
    success: bool = True
    affected: int
