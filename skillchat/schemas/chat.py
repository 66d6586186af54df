from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class EnsureConversationRequest(BaseModel):

    other_user_id: str
    conversation_id: Optional[str] = None
    my_name: Optional[str] = None
    other_user_name: Optional[str] = None


class SendMessageRequest(BaseModel):

    body: str = Field(min_length=1)
    client_message_id: Optional[str] = None


class ConversationIdResponse(BaseModel):

    conversation_id: str


class ConversationOut(BaseModel):

    id: str
    participants: List[str]
    participant_names: Dict[str, str]
    last_message: str
    last_message_at: Optional[datetime] = None
    last_message_sender: Optional[str] = None
    last_message_seq: int = 0
    unread_counts: Dict[str, int]
    revision: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MessageOut(BaseModel):

    id: str
    conversation_id: str
    seq: int
    sender_id: str
    sender_name: str
    body: str
    timestamp: datetime
    read: bool
    client_message_id: Optional[str] = None


class InboxItem(BaseModel):

    conversation_id: str
    other_user_id: str
    other_user_name: str
    other_user_initial: str
    last_message: str
    last_message_at: Optional[datetime] = None
    unread_count: int
    is_last_message_mine: bool


class InboxPage(BaseModel):

    items: List[InboxItem]
    next_cursor: Optional[str] = None


class MessagePage(BaseModel):

    items: List[MessageOut]
    next_cursor: Optional[int] = None


class SendAck(BaseModel):

    message_id: str
    conversation_id: str
    seq: int
    client_message_id: Optional[str] = None


class SendMessageResponse(BaseModel):

    message: MessageOut
    ack: SendAck


class ReadResponse(BaseModel):

    conversation: ConversationOut
    marked: List[int]
    unread: int


class ErrorResponse(BaseModel):

    error: str
    detail: str
