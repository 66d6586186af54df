from typing import Optional

from fastapi import APIRouter, Depends, Query

from skillchat.schemas.chat import (
    ConversationIdResponse,
    ConversationOut,
    EnsureConversationRequest,
    ErrorResponse,
    InboxPage,
    MessagePage,
    ReadResponse,
    SendMessageRequest,
    SendMessageResponse,
)
from skillchat.models.conversation import public_conversation
from skillchat.services.chat_service import ChatService
from skillchat.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(
    prefix="/conversations",
    tags=["chat"],
    responses={code: {"model": ErrorResponse} for code in (400, 403, 404, 422, 503, 504)},
)


@router.get("", response_model=InboxPage)
async def list_conversations(limit: int = Query(20, ge=1, le=100), cursor: Optional[str] = None, current_user: str = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    items, next_cursor = await service.list_conversations(current_user, limit=limit, cursor=cursor)
    return {"items": items, "next_cursor": next_cursor}


@router.get("/id/{other_user_id}", response_model=ConversationIdResponse)
async def conversation_id_for(other_user_id: str, current_user: str = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return {"conversation_id": service.derive_id(current_user, other_user_id)}


@router.post("/ensure", response_model=ConversationOut)
async def ensure_conversation(body: EnsureConversationRequest, current_user: str = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    conversation_id = body.conversation_id or service.derive_id(current_user, body.other_user_id)
    return await service.ensure_conversation(
        conversation_id,
        current_user,
        body.other_user_id,
        name_a=body.my_name,
        name_b=body.other_user_name,
    )


@router.get("/{conversation_id}", response_model=ConversationOut)
async def get_conversation(conversation_id: str, current_user: str = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return public_conversation(await service.get_conversation(conversation_id, current_user))


@router.get("/{conversation_id}/messages", response_model=MessagePage)
async def list_messages(conversation_id: str, limit: int = Query(50, ge=1, le=200), cursor: Optional[int] = None, current_user: str = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    messages, next_cursor = await service.get_history(conversation_id, current_user, limit=limit, cursor=cursor)
    return {"items": messages, "next_cursor": next_cursor}


@router.post("/{conversation_id}/messages", response_model=SendMessageResponse, status_code=201)
async def send_message(conversation_id: str, body: SendMessageRequest, current_user: str = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    result = await service.send_message(conversation_id, current_user, body.body, body.client_message_id)
    return {"message": result["message"], "ack": result["ack"]}


@router.post("/{conversation_id}/read", response_model=ReadResponse)
async def mark_read(conversation_id: str, current_user: str = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.mark_conversation_read(conversation_id, current_user)


@router.post("/{conversation_id}/reconcile", response_model=ConversationOut)
async def reconcile(conversation_id: str, current_user: str = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.reconcile_unread(conversation_id, current_user)
