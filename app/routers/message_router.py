# app/routers/message_router.py

from fastapi import APIRouter, Depends, Query, status, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
import json
import logging

from app.core.database import get_db
from app.core.security import get_current_user, authenticate_websocket_token
from app.core.websocket_manager import hub
from app.services.message_service import MessageService
from app.schemas.message_schema import (
    ConversationCreate, ConversationOut, ConversationFlagOut, ConversationListOut,
    MessageIn, MessageEdit, MessageOut, MessagePageOut, MessageFlagIn, MessageFlagOut,
    ReadAllOut, ReportedConversationOut, UnreadCountOut
)
from app.models.user import User

logger = logging.getLogger(__name__)

# 這個檔案有三個 router：對話、單則訊息、WebSocket
router = APIRouter(prefix="/conversations", tags=["Messaging"])
message_router = APIRouter(prefix="/messages", tags=["Messaging"])
socket_router = APIRouter(tags=["Realtime"])

def get_message_service(db: AsyncSession = Depends(get_db)) -> MessageService:
    return MessageService(db)

def _conversation_out(conversation, unread: int = 0) -> dict:
    data = ConversationOut.model_validate(conversation).model_dump()
    data["unread_count"] = unread
    return data

# --- 對話 ---

@router.post("", response_model=ConversationOut, status_code=status.HTTP_201_CREATED, summary="建立或取得對話")
async def create_conversation(
    data: ConversationCreate,
    user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    """
    同一個案件的兩位使用者只會有一個對話，已存在時直接回傳
    """
    conversation = await service.create_or_get_conversation(data, user)
    return _conversation_out(conversation)

@router.get("/my", response_model=List[ConversationOut], summary="我的對話列表")
async def list_my_conversations(
    include_archived: bool = Query(False, alias="includeArchived"),
    user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    rows = await service.list_my_conversations(user, include_archived)
    return [_conversation_out(conversation, unread) for conversation, unread in rows]

@router.get("/unread-count", response_model=UnreadCountOut, summary="所有對話的未讀訊息數")
async def get_unread_count(
    user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    return {"unread_count": await service.get_unread_total(user)}

@router.get("/admin/reported", response_model=List[ReportedConversationOut], summary="(管理員) 被檢舉的對話")
async def list_reported_conversations(
    user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    """
    依最後訊息時間排序；每位參與者底下列出自己的訊息與檢舉紀錄
    """
    return await service.list_reported_conversations(user)

@router.get("/admin/all", response_model=ConversationListOut, summary="(管理員) 所有對話")
async def list_all_conversations(
    user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    conversations = await service.list_all_conversations(user)
    return {"count": len(conversations), "conversations": [_conversation_out(c) for c in conversations]}

@router.get("/{conversation_id}/messages", response_model=MessagePageOut, summary="獲取對話的歷史訊息")
async def get_history_messages(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    """
    依時間 (舊 -> 新) 排序的分頁訊息
    """
    messages, total = await service.get_messages(conversation_id, user, page, limit)
    return {"messages": messages, "page": page, "limit": limit, "total": total}

@router.post(
    "/{conversation_id}/messages",
    response_model=MessageOut,
    status_code=status.HTTP_201_CREATED,
    summary="傳送訊息"
)
async def send_message(
    conversation_id: str,
    data: MessageIn,
    user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    """
    與 WebSocket 的 'send_message' 事件走同一個流程 (儲存、送達判斷、廣播、通知)
    """
    return await service.send_message(conversation_id, user, data.content, data.attachments)

@router.patch("/{conversation_id}/read-all", response_model=ReadAllOut, summary="將對話標記為已讀")
async def mark_conversation_read(
    conversation_id: str,
    user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    marked = await service.mark_conversation_read(conversation_id, user)
    return {"conversation_id": conversation_id, "marked": marked}

@router.patch("/{conversation_id}/archive", response_model=ConversationFlagOut, summary="封存 / 取消封存")
async def toggle_archive(
    conversation_id: str,
    user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    return await service.toggle_archive(conversation_id, user)

@router.patch("/{conversation_id}/mute", response_model=ConversationFlagOut, summary="靜音 / 取消靜音")
async def toggle_mute(
    conversation_id: str,
    user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    return await service.toggle_mute(conversation_id, user)

# --- 單則訊息 ---

@message_router.patch("/{message_id}", response_model=MessageOut, summary="編輯訊息")
async def edit_message(
    message_id: str,
    data: MessageEdit,
    user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    """
    只能編輯自己的訊息，且必須在傳送後 5 分鐘內
    """
    return await service.edit_message(message_id, user, data.content)

@message_router.patch("/{message_id}/read", response_model=MessageOut, summary="將訊息標記為已讀")
async def mark_message_read(
    message_id: str,
    user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    return await service.mark_message_read(message_id, user)

@message_router.post("/{message_id}/flag", response_model=MessageFlagOut, summary="檢舉訊息")
async def flag_message(
    message_id: str,
    data: MessageFlagIn,
    user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    return await service.flag_message(message_id, user, data.reason)

@message_router.delete("/{message_id}", status_code=status.HTTP_204_NO_CONTENT, summary="刪除訊息")
async def delete_message(
    message_id: str,
    user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    await service.delete_message(message_id, user)
    return None

# --- WebSocket Endpoint ---

@socket_router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db)
):
    """
    即時通訊端點。
    - 連線 URL: /ws?token=<JWT_TOKEN>
    - 收送的訊框格式: {"event": "...", "data": {...}}
    """
    user = await authenticate_websocket_token(token, db)
    if user is None:
        # 握手階段直接拒絕
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Not authorized")
        return

    user_id = user.user_id
    service = MessageService(db, presence=hub)
    session_id = await hub.connect(user_id, websocket)

    try:
        await service.handle_connect(user, session_id)
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                await hub.emit_to_session(session_id, "error", {"message": "訊框必須是 JSON"})
                continue
            if not isinstance(frame, dict) or "event" not in frame:
                await hub.emit_to_session(session_id, "error", {"message": "訊框缺少 'event'"})
                continue
            await service.handle_socket_event(session_id, user, frame["event"], frame.get("data"))

    except WebSocketDisconnect:
        pass
    except Exception as e:
        # 處理意外錯誤
        logger.error(f"Unexpected error in WS session {session_id} for user {user_id}: {e}", exc_info=True)
    finally:
        await service.handle_disconnect(session_id)
