# app/schemas/message_schema.py

from pydantic import BaseModel, Field, ConfigDict
from typing import List, Optional
from datetime import datetime

class ParticipantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    user_id: str
    is_archived: bool
    is_muted: bool
    joined_at: Optional[datetime] = None

class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    message_id: str
    conversation_id: str
    sender_id: str
    content: str
    attachments: List[str] = []
    is_read: bool
    read_at: Optional[datetime] = None
    is_delivered: bool
    delivered_at: Optional[datetime] = None
    is_edited: bool
    edited_at: Optional[datetime] = None
    is_flagged: bool = False
    created_at: datetime

class MessageIn(BaseModel):
    """
    REST 與 WebSocket 'send_message' 共用的訊息格式
    """
    content: str = Field("", description="訊息內容")
    attachments: List[str] = []

class SocketMessageIn(MessageIn):
    conversation_id: str

class MessageEdit(BaseModel):
    content: str

class ConversationCreate(BaseModel):
    """
    建立 (或取得既有的) 兩人對話
    """
    job_id: str = Field(..., description="關聯的案件 ID")
    participant_id: str = Field(..., description="對方的 user_id")
    proposal_id: Optional[str] = None

class ConversationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    conversation_id: str
    job_id: Optional[str] = None
    proposal_id: Optional[str] = None
    last_message_id: Optional[str] = None
    last_message_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    participants: List[ParticipantOut]
    unread_count: int = 0
    has_flagged_messages: bool = False

class MessagePageOut(BaseModel):
    messages: List[MessageOut]
    page: int
    limit: int
    total: int

class ConversationFlagOut(BaseModel):
    conversation_id: str
    is_archived: bool
    is_muted: bool

class ReadAllOut(BaseModel):
    conversation_id: str
    marked: int

class UnreadCountOut(BaseModel):
    unread_count: int

# --- 檢舉 / 管理員檢視 ---

class MessageFlagIn(BaseModel):
    reason: str = Field(..., description="檢舉理由")

class MessageFlagOut(BaseModel):
    message_id: str
    conversation_id: str
    is_flagged: bool
    newly_flagged: bool

class FlaggedByOut(BaseModel):
    user_id: str
    email: Optional[str] = None
    reasons: List[str]

class ReportedMessageOut(BaseModel):
    message_id: str
    content: str
    created_at: datetime
    is_flagged: bool
    flagged_by: List[FlaggedByOut] = []

class ReportedParticipantOut(BaseModel):
    user_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    messages: List[ReportedMessageOut] = []

class ReportedConversationOut(BaseModel):
    """
    被檢舉的對話：依參與者分組列出訊息，檢舉紀錄依檢舉人合併理由
    """
    conversation_id: str
    job_id: Optional[str] = None
    last_message_at: Optional[datetime] = None
    message_count: int
    participants: List[ReportedParticipantOut]

class ConversationListOut(BaseModel):
    count: int
    conversations: List[ConversationOut]
