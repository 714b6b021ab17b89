# app/models/notification.py

import uuid
from sqlalchemy import Column, String, TEXT, BOOLEAN, CHAR, ForeignKey, TIMESTAMP, Enum, func
from sqlalchemy.orm import relationship
from app.core.database import Base

NotificationPriorityEnum = Enum('low', 'medium', 'high', 'urgent', name="notification_priority_enum")

NotificationCategoryEnum = Enum(
    'job', 'proposal', 'contract', 'payment', 'message', 'system', 'review',
    name="notification_category_enum"
)

# 通知類型 (type 欄位以字串儲存，新增類型不需改 schema)
NOTIFICATION_TYPES = (
    'contract_created',
    'contract_completed',
    'contract_terminated',
    'contract_updated',
    'deliverable_submitted',
    'deliverable_accepted',
    'revision_requested',
    'payment_released',
    'payment_refunded',
    'funds_added',
    'withdrawal_completed',
    'modification_requested',
    'modification_approved',
    'modification_rejected',
    'deadline_reminder',
    'new_message',
)


class Notification(Base):
    __tablename__ = "notifications"

    notification_id = Column(CHAR(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # (重要) 關聯到接收通知的 user
    user_id = Column(CHAR(36), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, index=True)

    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    content = Column(TEXT)

    # (關鍵) 點擊通知後要導向的前端 URL
    link_url = Column(String(500))

    priority = Column(NotificationPriorityEnum, nullable=False, default='medium')
    category = Column(NotificationCategoryEnum, nullable=False, default='system')

    # 選用的關聯參照
    related_job_id = Column(CHAR(36), nullable=True)
    related_proposal_id = Column(CHAR(36), nullable=True)
    related_contract_id = Column(CHAR(36), nullable=True)
    related_user_id = Column(CHAR(36), nullable=True)

    is_read = Column(BOOLEAN, default=False, nullable=False)
    read_at = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, server_default=func.now())

    # 建立反向關聯
    user = relationship("User")
