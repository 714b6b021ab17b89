# app/services/message_service.py
# 對話 / 訊息 / 即時事件 (PresenceHub)

from datetime import timedelta
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict, List, Optional, Tuple
import logging

from app.core.config import settings
from app.core.exceptions import (
    AppError, NotFoundError, ForbiddenError, InvalidStateError, InvalidArgumentError
)
from app.core.security import is_admin
from app.core.websocket_manager import PresenceHub, hub, conversation_room
from app.models.message import Conversation, Message
from app.models.user import User
from app.repositories.job_repo import JobRepository
from app.repositories.message_repo import MessageRepository
from app.repositories.proposal_repo import ProposalRepository
from app.repositories.user_repo import UserRepository
from app.schemas.message_schema import ConversationCreate, MessageOut, SocketMessageIn
from app.services.notification_service import NotificationService
from app.services.side_effects import SideEffectQueue
from app.utils.clock import utcnow
from app.utils.response_time import calculate_reply_delta, update_rolling_average

logger = logging.getLogger(__name__)

# 樂觀鎖衝突時重試更新回覆時間的次數
RESPONSE_TIME_RETRIES = 3

# 對應 message_flags.reason 欄位長度
FLAG_REASON_MAX_LENGTH = 255


def _role_value(role) -> str:
    return role.value if hasattr(role, "value") else role


class MessageService:
    def __init__(self, db: AsyncSession, presence: Optional[PresenceHub] = None):
        self.db = db
        self.presence = presence or hub
        self.message_repo = MessageRepository(db)
        self.job_repo = JobRepository(db)
        self.proposal_repo = ProposalRepository(db)
        self.user_repo = UserRepository(db)
        self.notification_service = NotificationService(db, presence=self.presence)

    # --- 對話 ---

    async def create_or_get_conversation(self, data: ConversationCreate, creator: User) -> Conversation:
        """
        建立 (或回傳已存在的) 兩人對話
        """
        job = await self.job_repo.get_job_by_id(data.job_id)
        if not job:
            raise NotFoundError("案件不存在")
        if data.participant_id == creator.user_id:
            raise InvalidArgumentError("不能和自己建立對話", fields=["participant_id"])
        other = await self.user_repo.get_user_by_id(data.participant_id)
        if not other:
            raise NotFoundError("對方使用者不存在")
        if data.proposal_id:
            proposal = await self.proposal_repo.get_proposal_by_id(data.proposal_id)
            if not proposal:
                raise NotFoundError("提案不存在")
            if proposal.job_id != job.job_id:
                raise InvalidArgumentError("提案不屬於此案件", fields=["proposal_id"])

        participant_ids = [creator.user_id, data.participant_id]
        existing = await self.message_repo.find_conversation(job.job_id, participant_ids)
        if existing:
            return existing

        try:
            return await self.message_repo.create_conversation(
                job_id=job.job_id, proposal_id=data.proposal_id, participant_ids=participant_ids
            )
        except Exception as e:
            await self.db.rollback()
            logger.error(f"對話建立失敗: {str(e)}", exc_info=True)
            raise

    async def _get_conversation_for(self, conversation_id: str, user: User, allow_admin: bool = False) -> Conversation:
        conversation = await self.message_repo.get_conversation_by_id(conversation_id)
        if not conversation:
            raise NotFoundError("對話不存在")
        if user.user_id not in conversation.participant_ids and not (allow_admin and is_admin(user)):
            raise ForbiddenError("你不是此對話的參與者")
        return conversation

    async def list_my_conversations(self, user: User, include_archived: bool = False) -> List[Tuple[Conversation, int]]:
        """
        回傳 (對話, 未讀數) 清單，預設不含自己封存的對話
        """
        conversations = await self.message_repo.list_conversations_for_user(user.user_id, include_archived)
        result = []
        for conversation in conversations:
            unread = await self.message_repo.count_unread(conversation.conversation_id, user.user_id)
            result.append((conversation, unread))
        return result

    async def get_unread_total(self, user: User) -> int:
        return await self.message_repo.count_unread_total(user.user_id)

    async def get_messages(
        self, conversation_id: str, user: User, page: int = 1, limit: int = 50
    ) -> Tuple[List[Message], int]:
        """
        分頁讀取歷史訊息 (由舊到新)
        """
        await self._get_conversation_for(conversation_id, user, allow_admin=True)
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        messages = await self.message_repo.get_messages(conversation_id, limit=limit, offset=(page - 1) * limit)
        total = await self.message_repo.count_messages(conversation_id)
        return messages, total

    async def _toggle_flag(self, conversation_id: str, user: User, field: str) -> Dict[str, Any]:
        await self._get_conversation_for(conversation_id, user)
        participant = await self.message_repo.get_participant(conversation_id, user.user_id)
        setattr(participant, field, not getattr(participant, field))
        await self.db.commit()
        return {
            "conversation_id": conversation_id,
            "is_archived": participant.is_archived,
            "is_muted": participant.is_muted,
        }

    async def toggle_archive(self, conversation_id: str, user: User) -> Dict[str, Any]:
        return await self._toggle_flag(conversation_id, user, "is_archived")

    async def toggle_mute(self, conversation_id: str, user: User) -> Dict[str, Any]:
        return await self._toggle_flag(conversation_id, user, "is_muted")

    # --- 發送訊息 ---

    async def send_message(
        self,
        conversation_id: str,
        sender: User,
        content: str,
        attachments: Optional[List[str]] = None,
    ) -> Message:
        """
        儲存訊息並即時廣播。
        送達判斷：發送當下只要有任何一位其他參與者在線，就標記為 delivered。
        """
        conversation = await self._get_conversation_for(conversation_id, sender)
        content = (content or "").strip()
        attachments = list(attachments or [])
        if not content and not attachments:
            raise InvalidArgumentError("訊息內容不可為空", fields=["content"])

        # rollback 之後物件會過期，後續只用這些區域變數
        sender_id = sender.user_id
        sender_name = sender.display_name
        job_id = conversation.job_id
        other_ids = [uid for uid in conversation.participant_ids if uid != sender_id]
        delivered = any(self.presence.is_online(uid) for uid in other_ids)
        now = utcnow()

        try:
            # 步驟 1: 儲存訊息並更新對話的最後訊息
            new_message = await self.message_repo.save_message(
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=content,
                attachments=attachments,
                created_at=now,
            )
            message_id = new_message.message_id
            if delivered:
                await self.message_repo.mark_delivered(message_id, now)
            await self.message_repo.update_last_message(conversation_id, message_id, now)
            # 步驟 2: 提交事務 (Commit)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        message = await self.message_repo.get_message_by_id(message_id)
        payload = MessageOut.model_validate(message).model_dump(mode="json")

        # 步驟 3: 回覆時間統計 (失敗不影響訊息本身)
        try:
            await self._update_response_time(conversation_id, sender_id)
        except Exception as e:
            await self.db.rollback()
            logger.warning(f"回覆時間更新失敗: {e}")
            await self._reload(sender)
            message = await self.message_repo.get_message_by_id(message_id)

        # 步驟 4: 推播與通知
        queue = SideEffectQueue(f"send_message:{message_id}")
        queue.add("broadcast_new_message", lambda: self.presence.emit_to_room(
            conversation_room(conversation_id), "new_message", payload
        ))
        if delivered:
            queue.add("emit_delivered", lambda: self.presence.emit_to_user(sender_id, "messageDelivered", {
                "message_id": message_id,
                "conversation_id": conversation_id,
                "delivered_at": payload["delivered_at"],
            }))
        for uid in other_ids:
            queue.add(f"emit_notification_{uid}", lambda u=uid: self.presence.emit_to_user(
                u, "new_message_notification", {"conversation_id": conversation_id, "message": payload}
            ))
            queue.add(f"persist_notification_{uid}", lambda u=uid: self._notify_new_message(
                conversation_id, job_id, u, sender_id, sender_name, content
            ))
        await queue.run()

        return message

    async def _reload(self, user: User) -> None:
        """rollback 後重新載入仍會被呼叫端使用的使用者物件"""
        if user in self.db:
            await self.db.refresh(user)

    async def _notify_new_message(
        self, conversation_id: str, job_id: Optional[str], user_id: str,
        sender_id: str, sender_name: str, content: str
    ) -> None:
        participant = await self.message_repo.get_participant(conversation_id, user_id)
        if participant is None or participant.is_muted:
            return
        preview = content[:50] if content else "[附件]"
        await self.notification_service.notify(
            user_id=user_id, type="new_message",
            title=f"{sender_name} 傳送了新訊息",
            content=preview,
            link_url=f"/messages/{conversation_id}",
            category="message", priority="low",
            related_job_id=job_id,
            related_user_id=sender_id,
        )

    async def _update_response_time(self, conversation_id: str, sender_id: str) -> Optional[int]:
        """
        取此對話最新的兩則訊息：若本次是在回覆對方，且間隔落在過濾區間內，
        以累積移動平均更新發送者的回覆時間
        """
        stamps = await self.message_repo.get_recent_message_stamps(conversation_id, limit=2)
        delta = calculate_reply_delta(
            stamps, sender_id,
            min_minutes=settings.RESPONSE_TIME_MIN_MINUTES,
            max_minutes=settings.RESPONSE_TIME_MAX_MINUTES,
        )
        if delta is None:
            return None

        for _ in range(RESPONSE_TIME_RETRIES):
            user = await self.user_repo.get_user_by_id(sender_id)
            if user is None:
                return None
            new_avg, new_count = update_rolling_average(user.response_time, user.response_time_count, delta)
            updated = await self.user_repo.update_response_time(
                sender_id, user.response_time, user.response_time_count, new_avg, new_count
            )
            await self.db.commit()
            if updated:
                logger.info(f"⏱️ Response time updated: user={sender_id} delta={delta:.2f} avg={new_avg} n={new_count}")
                return new_avg
        logger.warning(f"回覆時間更新衝突過多，略過: user={sender_id}")
        return None

    # --- 單則訊息操作 ---

    async def _get_message_or_404(self, message_id: str) -> Message:
        message = await self.message_repo.get_message_by_id(message_id)
        if not message:
            raise NotFoundError("訊息不存在")
        return message

    async def edit_message(self, message_id: str, user: User, content: str) -> Message:
        """
        只有發送者可以編輯，且必須在建立後的編輯時間窗內
        """
        message = await self._get_message_or_404(message_id)
        if message.sender_id != user.user_id:
            raise ForbiddenError("只能編輯自己的訊息")
        now = utcnow()
        window = timedelta(minutes=settings.MESSAGE_EDIT_WINDOW_MINUTES)
        if now - message.created_at >= window:
            raise InvalidStateError(f"訊息只能在傳送後 {settings.MESSAGE_EDIT_WINDOW_MINUTES} 分鐘內編輯")
        if not content or not content.strip():
            raise InvalidArgumentError("訊息內容不可為空", fields=["content"])

        message.content = content.strip()
        message.is_edited = True
        message.edited_at = now
        await self.db.commit()

        payload = MessageOut.model_validate(message).model_dump(mode="json")
        try:
            await self.presence.emit_to_room(conversation_room(message.conversation_id), "message_edited", payload)
        except Exception as e:
            logger.warning(f"推播編輯事件失敗: {e}")
        return message

    async def mark_message_read(self, message_id: str, user: User) -> Message:
        """
        收件者 (非發送者的參與者) 才能標記已讀；重複標記不會出錯
        """
        message = await self._get_message_or_404(message_id)
        conversation = await self._get_conversation_for(message.conversation_id, user)
        if message.sender_id == user.user_id:
            raise ForbiddenError("不能將自己發送的訊息標記為已讀")
        if not message.is_read:
            message.is_read = True
            message.read_at = utcnow()
            await self.db.commit()
            try:
                await self.presence.emit_to_user(message.sender_id, "messageRead", {
                    "conversation_id": conversation.conversation_id,
                    "message_ids": [message.message_id],
                    "reader_id": user.user_id,
                    "read_at": message.read_at,
                })
            except Exception as e:
                logger.warning(f"推播已讀事件失敗: {e}")
        return message

    async def mark_conversation_read(self, conversation_id: str, user: User) -> int:
        conversation = await self._get_conversation_for(conversation_id, user)
        now = utcnow()
        try:
            marked = await self.message_repo.mark_messages_as_read(conversation_id, user.user_id, now)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if marked:
            queue = SideEffectQueue(f"read_all:{conversation_id}")
            for uid in conversation.participant_ids:
                if uid == user.user_id:
                    continue
                queue.add(f"emit_read_{uid}", lambda u=uid: self.presence.emit_to_user(u, "messageRead", {
                    "conversation_id": conversation_id,
                    "reader_id": user.user_id,
                    "read_at": now,
                }))
            await queue.run()
        return marked

    async def delete_message(self, message_id: str, user: User) -> None:
        message = await self._get_message_or_404(message_id)
        if message.sender_id != user.user_id:
            raise ForbiddenError("只能刪除自己的訊息")
        conversation_id = message.conversation_id
        await self.message_repo.delete_message(message)
        await self.db.commit()
        try:
            await self.presence.emit_to_room(conversation_room(conversation_id), "message_deleted", {
                "conversation_id": conversation_id, "message_id": message_id
            })
        except Exception as e:
            logger.warning(f"推播刪除事件失敗: {e}")

    # --- 檢舉與管理員檢視 ---

    async def flag_message(self, message_id: str, user: User, reason: str) -> Dict[str, Any]:
        """
        對話參與者 (或管理員) 檢舉訊息。
        同一人同一理由重複檢舉不會新增紀錄，但仍回傳成功。
        """
        message = await self._get_message_or_404(message_id)
        conversation_id = message.conversation_id
        await self._get_conversation_for(conversation_id, user, allow_admin=True)
        reason = (reason or "").strip()
        if not reason:
            raise InvalidArgumentError("請填寫檢舉理由", fields=["reason"])
        if len(reason) > FLAG_REASON_MAX_LENGTH:
            raise InvalidArgumentError(f"檢舉理由不可超過 {FLAG_REASON_MAX_LENGTH} 字", fields=["reason"])

        user_id = user.user_id
        try:
            created = await self.message_repo.add_flag_if_absent(message, user_id, reason)
            await self.db.commit()
        except IntegrityError:
            # 同一筆檢舉同時送出兩次
            await self.db.rollback()
            created = False

        if created:
            logger.info(f"🚩 Message flagged: message={message_id} by={user_id} reason={reason}")
        return {
            "message_id": message_id,
            "conversation_id": conversation_id,
            "is_flagged": True,
            "newly_flagged": created,
        }

    async def list_reported_conversations(self, admin: User) -> List[Dict[str, Any]]:
        """
        (管理員) 有被檢舉訊息的對話，依參與者分組列出所有訊息；
        每則訊息的檢舉依檢舉人合併成理由清單
        """
        if not is_admin(admin):
            raise ForbiddenError("需要管理員權限")

        conversations = await self.message_repo.list_conversations(flagged_only=True)
        reporters: Dict[str, Optional[User]] = {}
        result = []
        for conversation in conversations:
            messages = await self.message_repo.list_all_messages(conversation.conversation_id)
            flags = await self.message_repo.list_flags_for_conversation(conversation.conversation_id)

            grouped: Dict[str, Dict[str, Dict[str, Any]]] = {}
            for flag in flags:
                if flag.user_id not in reporters:
                    reporters[flag.user_id] = await self.user_repo.get_user_by_id(flag.user_id)
                reporter = reporters[flag.user_id]
                by_user = grouped.setdefault(flag.message_id, {})
                entry = by_user.setdefault(flag.user_id, {
                    "user_id": flag.user_id,
                    "email": reporter.email if reporter else None,
                    "reasons": [],
                })
                if flag.reason not in entry["reasons"]:
                    entry["reasons"].append(flag.reason)

            participants = []
            for participant in conversation.participants:
                member = participant.user
                participants.append({
                    "user_id": participant.user_id,
                    "display_name": member.display_name if member else None,
                    "email": member.email if member else None,
                    "role": _role_value(member.role) if member else None,
                    "messages": [
                        {
                            "message_id": m.message_id,
                            "content": m.content,
                            "created_at": m.created_at,
                            "is_flagged": bool(m.is_flagged),
                            "flagged_by": list(grouped.get(m.message_id, {}).values()),
                        }
                        for m in messages if m.sender_id == participant.user_id
                    ],
                })

            result.append({
                "conversation_id": conversation.conversation_id,
                "job_id": conversation.job_id,
                "last_message_at": conversation.last_message_at,
                "message_count": len(messages),
                "participants": participants,
            })
        return result

    async def list_all_conversations(self, admin: User) -> List[Conversation]:
        if not is_admin(admin):
            raise ForbiddenError("需要管理員權限")
        return await self.message_repo.list_conversations()

    # --- WebSocket 連線與事件 ---

    async def handle_connect(self, user: User, session_id: str) -> None:
        """
        連線已登記在 hub 之後呼叫：第一個連線才廣播上線
        """
        if self.presence.is_first_session(user.user_id):
            await self.user_repo.set_presence(user.user_id, True, last_seen=utcnow())
            await self.db.commit()
            await self.presence.broadcast("user_online", {"user_id": user.user_id}, exclude_user=user.user_id)
        await self.presence.emit_to_session(session_id, "online_users", self.presence.online_user_ids())

    async def handle_disconnect(self, session_id: str) -> None:
        offline_user_id = self.presence.disconnect(session_id)
        if offline_user_id is None:
            return
        now = utcnow()
        try:
            await self.user_repo.set_presence(offline_user_id, False, last_seen=now)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"更新離線狀態失敗: {e}", exc_info=True)
        await self.presence.broadcast("user_offline", {"user_id": offline_user_id, "last_seen": now})

    async def handle_socket_event(self, session_id: str, user: User, event: str, data: Any) -> None:
        """
        處理 WebSocket 收到的事件，錯誤以 'error' 事件回給該連線
        """
        data = data if isinstance(data, dict) else {}
        user_id = user.user_id
        try:
            if event == "join_conversation":
                conversation_id = data.get("conversation_id")
                await self._get_conversation_for(conversation_id, user)
                self.presence.join(session_id, conversation_room(conversation_id))
                await self.presence.emit_to_session(session_id, "joined_conversation",
                                                    {"conversation_id": conversation_id})

            elif event == "leave_conversation":
                self.presence.leave(session_id, conversation_room(data.get("conversation_id")))

            elif event == "send_message":
                try:
                    message_in = SocketMessageIn(**data)
                except ValidationError as e:
                    fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
                    raise InvalidArgumentError("訊息格式錯誤", fields=fields)
                await self.send_message(
                    message_in.conversation_id, user, message_in.content, message_in.attachments
                )

            elif event == "typing":
                room = conversation_room(data.get("conversation_id"))
                if session_id in self.presence.room_members(room):
                    await self.presence.emit_to_room(room, "user_typing", {
                        "conversation_id": data.get("conversation_id"),
                        "user_id": user_id,
                        "is_typing": bool(data.get("is_typing", True)),
                    }, exclude_session=session_id)

            elif event == "update_status":
                is_online = bool(data.get("is_online", True))
                now = utcnow()
                await self.user_repo.set_presence(user_id, is_online, last_seen=now)
                await self.db.commit()
                await self.presence.broadcast("user_status_changed", {
                    "user_id": user_id, "is_online": is_online, "last_seen": now
                }, exclude_user=user_id)

            else:
                await self.presence.emit_to_session(session_id, "error", {"message": f"未知的事件: {event}"})

        except AppError as e:
            await self.presence.emit_to_session(session_id, "error", {"event": event, **e.to_dict()})
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error handling socket event '{event}' for user {user_id}: {e}", exc_info=True)
            await self.presence.emit_to_session(session_id, "error", {"event": event, "message": str(e)})
            # 同一條連線之後的事件仍會使用這個 user 物件
            await self._reload(user)
