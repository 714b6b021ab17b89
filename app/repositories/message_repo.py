# app/repositories/message_repo.py

from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, update, delete, func
from typing import Optional, List, Tuple
import uuid

from app.models.message import Conversation, ConversationParticipant, Message, MessageFlag

class MessageRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    # --- Conversation 相關操作 ---

    async def get_conversation_by_id(self, conversation_id: str) -> Optional[Conversation]:
        stmt = (
            select(Conversation)
            .where(Conversation.conversation_id == conversation_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def find_conversation(self, job_id: Optional[str], participant_ids: List[str]) -> Optional[Conversation]:
        """
        找出同一案件下、參與者完全相同的對話
        """
        stmt = select(Conversation)
        if job_id:
            stmt = stmt.where(Conversation.job_id == job_id)
        else:
            stmt = stmt.where(Conversation.job_id.is_(None))
        conversations = (await self.db.execute(stmt)).scalars().all()
        participant_set = set(participant_ids)
        for conversation in conversations:
            if set(conversation.participant_ids) == participant_set:
                return conversation
        return None

    async def create_conversation(
        self, job_id: Optional[str], proposal_id: Optional[str], participant_ids: List[str]
    ) -> Conversation:
        new_conversation = Conversation(
            conversation_id=str(uuid.uuid4()),
            job_id=job_id,
            proposal_id=proposal_id
        )
        self.db.add(new_conversation)
        participants = [
            ConversationParticipant(
                participant_id=str(uuid.uuid4()),
                conversation_id=new_conversation.conversation_id,
                user_id=uid
            )
            for uid in participant_ids
        ]
        self.db.add_all(participants)
        await self.db.flush()
        await self.db.commit()

        loaded = await self.get_conversation_by_id(new_conversation.conversation_id)
        if loaded is None:
            raise Exception("Failed to re-fetch newly created conversation")
        return loaded

    async def list_conversations_for_user(self, user_id: str, include_archived: bool = False) -> List[Conversation]:
        stmt = (
            select(Conversation)
            .join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.conversation_id)
            .where(ConversationParticipant.user_id == user_id)
        )
        if not include_archived:
            stmt = stmt.where(ConversationParticipant.is_archived == False)
        stmt = stmt.order_by(Conversation.last_message_at.desc(), Conversation.created_at.desc())
        result = await self.db.execute(stmt)
        return result.scalars().unique().all()

    async def get_participant(self, conversation_id: str, user_id: str) -> Optional[ConversationParticipant]:
        stmt = (
            select(ConversationParticipant)
            .where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id == user_id
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def update_last_message(self, conversation_id: str, message_id: str, at: datetime) -> None:
        await self.db.execute(
            update(Conversation)
            .where(Conversation.conversation_id == conversation_id)
            .values(last_message_id=message_id, last_message_at=at)
            .execution_options(synchronize_session=False)
        )

    # --- Message 相關操作 ---

    async def save_message(
        self, conversation_id: str, sender_id: str, content: str, attachments: List, created_at: datetime
    ) -> Message:
        new_message = Message(
            message_id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            attachments=attachments or [],
            created_at=created_at
        )
        self.db.add(new_message)
        await self.db.flush()
        await self.db.refresh(new_message)
        return new_message

    async def get_message_by_id(self, message_id: str) -> Optional[Message]:
        stmt = (
            select(Message)
            .where(Message.message_id == message_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def get_recent_message_stamps(self, conversation_id: str, limit: int = 2) -> List[Tuple[str, datetime]]:
        """
        最新的幾則訊息 (sender_id, created_at)，由新到舊；同一時間以插入順序排序
        """
        stmt = (
            select(Message.sender_id, Message.created_at)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return [tuple(row) for row in result.all()]

    async def get_messages(self, conversation_id: str, limit: int = 50, offset: int = 0) -> List[Message]:
        """
        分頁讀取，page 1 為最新的一批；回傳時由舊到新排列
        """
        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(stmt)
        return result.scalars().all()[::-1]

    async def count_messages(self, conversation_id: str) -> int:
        stmt = select(func.count()).select_from(Message).where(Message.conversation_id == conversation_id)
        return (await self.db.execute(stmt)).scalar() or 0

    async def mark_delivered(self, message_id: str, delivered_at: datetime) -> None:
        await self.db.execute(
            update(Message)
            .where(Message.message_id == message_id)
            .values(is_delivered=True, delivered_at=delivered_at)
            .execution_options(synchronize_session=False)
        )

    async def mark_messages_as_read(self, conversation_id: str, user_id: str, read_at: datetime) -> int:
        update_stmt = (
            update(Message)
            .where(
                and_(
                    Message.conversation_id == conversation_id,
                    Message.sender_id != user_id,
                    Message.is_read == False
                )
            )
            .values(is_read=True, read_at=read_at)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(update_stmt)
        return result.rowcount

    async def count_unread(self, conversation_id: str, user_id: str) -> int:
        stmt = select(func.count()).select_from(Message).where(
            Message.conversation_id == conversation_id,
            Message.sender_id != user_id,
            Message.is_read == False
        )
        return (await self.db.execute(stmt)).scalar() or 0

    async def count_unread_total(self, user_id: str) -> int:
        """
        使用者所有對話中，別人發送且未讀的訊息數
        """
        my_conversations = select(ConversationParticipant.conversation_id).where(
            ConversationParticipant.user_id == user_id
        )
        stmt = select(func.count()).select_from(Message).where(
            Message.conversation_id.in_(my_conversations),
            Message.sender_id != user_id,
            Message.is_read == False
        )
        return (await self.db.execute(stmt)).scalar() or 0

    async def delete_message(self, message: Message) -> None:
        await self.db.execute(delete(MessageFlag).where(MessageFlag.message_id == message.message_id))
        await self.db.delete(message)
        await self.db.flush()

    # --- 檢舉 (管理用) ---

    async def add_flag_if_absent(self, message: Message, user_id: str, reason: str) -> bool:
        """
        新增檢舉紀錄並標記訊息與對話；同一使用者同一理由已存在時回傳 False
        """
        stmt = select(MessageFlag.flag_id).where(
            MessageFlag.message_id == message.message_id,
            MessageFlag.user_id == user_id,
            MessageFlag.reason == reason
        )
        exists = (await self.db.execute(stmt)).first() is not None
        if not exists:
            self.db.add(MessageFlag(
                flag_id=str(uuid.uuid4()),
                message_id=message.message_id,
                conversation_id=message.conversation_id,
                user_id=user_id,
                reason=reason
            ))
        await self.db.execute(
            update(Message)
            .where(Message.message_id == message.message_id)
            .values(is_flagged=True)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(Conversation)
            .where(Conversation.conversation_id == message.conversation_id)
            .values(has_flagged_messages=True)
            .execution_options(synchronize_session=False)
        )
        await self.db.flush()
        return not exists

    async def list_flags_for_conversation(self, conversation_id: str) -> List[MessageFlag]:
        stmt = (
            select(MessageFlag)
            .where(MessageFlag.conversation_id == conversation_id)
            .order_by(MessageFlag.created_at.asc())
        )
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def list_all_messages(self, conversation_id: str) -> List[Message]:
        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.asc(), Message.id.asc())
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def list_conversations(self, flagged_only: bool = False) -> List[Conversation]:
        """
        (管理員) 所有對話，依最後訊息時間由新到舊
        """
        stmt = select(Conversation).execution_options(populate_existing=True)
        if flagged_only:
            stmt = stmt.where(Conversation.has_flagged_messages == True)
        stmt = stmt.order_by(Conversation.last_message_at.desc(), Conversation.created_at.desc())
        result = await self.db.execute(stmt)
        return result.scalars().all()
