# app/core/websocket_manager.py

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder
from typing import Any, Dict, List, Optional, Set
import logging
import uuid

logger = logging.getLogger(__name__)


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def conversation_room(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class PresenceHub:
    """
    管理 WebSocket 連線與線上狀態。

    - 每位使用者可同時有多個連線 (session)
    - 每個連線一建立就加入自己的個人房間 'user:{id}'
    - 對話房間 'conversation:{id}' 由 join_conversation 加入
    所有送出的訊框格式為 {"event": <名稱>, "data": <內容>}
    """

    def __init__(self):
        # 結構: {session_id: WebSocket}
        self.connections: Dict[str, WebSocket] = {}
        # 結構: {session_id: user_id}
        self.session_users: Dict[str, str] = {}
        # 結構: {user_id: {session_id}}
        self.user_sessions: Dict[str, Set[str]] = {}
        # 結構: {room: {session_id}}
        self.rooms: Dict[str, Set[str]] = {}

    # --- 連線生命週期 ---

    async def connect(self, user_id: str, websocket: WebSocket) -> str:
        """接受連線並登記，回傳 session_id"""
        await websocket.accept()
        return self.register(user_id, websocket)

    def register(self, user_id: str, websocket: WebSocket) -> str:
        session_id = str(uuid.uuid4())
        self.connections[session_id] = websocket
        self.session_users[session_id] = user_id
        self.user_sessions.setdefault(user_id, set()).add(session_id)
        self.join(session_id, user_room(user_id))
        logger.info(f"User {user_id} connected (session {session_id}). Sessions: {len(self.user_sessions[user_id])}")
        return session_id

    def disconnect(self, session_id: str) -> Optional[str]:
        """
        移除連線。回傳 user_id 代表這是該使用者最後一個連線 (已離線)，否則回傳 None
        """
        user_id = self.session_users.pop(session_id, None)
        self.connections.pop(session_id, None)
        if user_id is None:
            return None  # 可能是重複斷開

        for room in list(self.rooms):
            self.rooms[room].discard(session_id)
            if not self.rooms[room]:
                del self.rooms[room]

        sessions = self.user_sessions.get(user_id, set())
        sessions.discard(session_id)
        logger.info(f"User {user_id} disconnected (session {session_id}). Remaining: {len(sessions)}")
        if sessions:
            return None
        self.user_sessions.pop(user_id, None)
        return user_id

    def is_first_session(self, user_id: str) -> bool:
        return len(self.user_sessions.get(user_id, ())) == 1

    # --- 房間 ---

    def join(self, session_id: str, room: str) -> None:
        self.rooms.setdefault(room, set()).add(session_id)

    def leave(self, session_id: str, room: str) -> None:
        members = self.rooms.get(room)
        if members is None:
            return
        members.discard(session_id)
        if not members:
            del self.rooms[room]

    def room_members(self, room: str) -> Set[str]:
        return set(self.rooms.get(room, ()))

    # --- 線上狀態 ---

    def is_online(self, user_id: str) -> bool:
        return bool(self.rooms.get(user_room(user_id)))

    def online_user_ids(self) -> List[str]:
        return list(self.user_sessions)

    def user_of(self, session_id: str) -> Optional[str]:
        return self.session_users.get(session_id)

    # --- 發送 ---

    async def _send(self, session_id: str, event: str, data: Any) -> bool:
        websocket = self.connections.get(session_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json({"event": event, "data": jsonable_encoder(data)})
            return True
        except Exception as e:
            # 推播是盡力而為，單一連線失敗不影響其他連線
            logger.warning(f"Failed to emit '{event}' to session {session_id}: {e}")
            return False

    async def emit_to_session(self, session_id: str, event: str, data: Any) -> bool:
        return await self._send(session_id, event, data)

    async def emit_to_room(self, room: str, event: str, data: Any, exclude_session: Optional[str] = None) -> int:
        """廣播給房間內所有連線，回傳成功送出的數量"""
        sent = 0
        for session_id in self.room_members(room):
            if session_id == exclude_session:
                continue
            if await self._send(session_id, event, data):
                sent += 1
        return sent

    async def emit_to_user(self, user_id: str, event: str, data: Any) -> int:
        return await self.emit_to_room(user_room(user_id), event, data)

    async def broadcast(self, event: str, data: Any, exclude_user: Optional[str] = None) -> int:
        sent = 0
        for session_id, user_id in list(self.session_users.items()):
            if user_id == exclude_user:
                continue
            if await self._send(session_id, event, data):
                sent += 1
        return sent


# 實例化管理器
hub = PresenceHub()
