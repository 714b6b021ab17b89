# app/models/message.py

import uuid
from sqlalchemy import (
    Column, Integer, String, Text, JSON, ForeignKey, TIMESTAMP, CHAR, Boolean, UniqueConstraint, func
)
from sqlalchemy.orm import relationship
from app.core.database import Base


class Conversation(Base):
    """兩人對話，可選擇性關聯到案件 / 提案"""
    __tablename__ = "conversations"

    conversation_id = Column(CHAR(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    job_id = Column(CHAR(36), ForeignKey("jobs.job_id", ondelete="SET NULL"), nullable=True, index=True)
    proposal_id = Column(CHAR(36), ForeignKey("proposals.proposal_id", ondelete="SET NULL"), nullable=True)

    # 最後一則訊息指標 (列表排序用)
    last_message_id = Column(CHAR(36), nullable=True)
    last_message_at = Column(TIMESTAMP, nullable=True, index=True)

    # 任一則訊息被檢舉後設為 True (管理員檢舉列表用)
    has_flagged_messages = Column(Boolean, nullable=False, default=False, index=True)

    created_at = Column(TIMESTAMP, server_default=func.now())

    participants = relationship(
        "ConversationParticipant",
        back_populates="conversation",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    @property
    def participant_ids(self):
        return [p.user_id for p in self.participants]


class ConversationParticipant(Base):
    __tablename__ = "conversation_participants"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_conversation_user"),
    )

    participant_id = Column(CHAR(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    conversation_id = Column(CHAR(36), ForeignKey("conversations.conversation_id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(CHAR(36), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, index=True)

    # 每位參與者各自的封存 / 靜音設定
    is_archived = Column(Boolean, nullable=False, default=False)
    is_muted = Column(Boolean, nullable=False, default=False)
    joined_at = Column(TIMESTAMP, server_default=func.now())

    conversation = relationship("Conversation", back_populates="participants")
    user = relationship("User", lazy="selectin")


class Message(Base):
    __tablename__ = "messages"

    # 自增 id 作為同一時間戳記下的插入順序
    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(CHAR(36), unique=True, nullable=False, index=True, default=lambda: str(uuid.uuid4()))

    conversation_id = Column(CHAR(36), ForeignKey("conversations.conversation_id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(CHAR(36), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, index=True)

    content = Column(Text, nullable=False)
    attachments = Column(JSON, nullable=False, default=list)

    # --- 狀態旗標 ---
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(TIMESTAMP, nullable=True)
    is_delivered = Column(Boolean, nullable=False, default=False)
    delivered_at = Column(TIMESTAMP, nullable=True)
    is_edited = Column(Boolean, nullable=False, default=False)
    edited_at = Column(TIMESTAMP, nullable=True)
    is_flagged = Column(Boolean, nullable=False, default=False)

    created_at = Column(TIMESTAMP, nullable=False, server_default=func.now())

    sender = relationship("User", lazy="selectin")


class MessageFlag(Base):
    """
    訊息檢舉紀錄：同一使用者對同一訊息、同一理由只記錄一次
    """
    __tablename__ = "message_flags"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", "reason", name="uq_message_flag_reason"),
    )

    flag_id = Column(CHAR(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    message_id = Column(CHAR(36), ForeignKey("messages.message_id", ondelete="CASCADE"), nullable=False, index=True)
    conversation_id = Column(CHAR(36), ForeignKey("conversations.conversation_id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(CHAR(36), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, index=True)

    reason = Column(String(255), nullable=False)
    created_at = Column(TIMESTAMP, nullable=False, server_default=func.now())
