from fastapi import Depends, Header

from skillchat.database.connection import mongo_db_dependency
from skillchat.services.chat_service import ChatService, build_chat_service
from skillchat.services.identity import validate_user_id


async def get_current_user(x_user_id: str = Header(..., alias="X-User-Id")) -> str:
    """Caller id, stamped by the auth gateway in front of this service."""
    return validate_user_id(x_user_id)


async def get_chat_service(db=Depends(mongo_db_dependency)) -> ChatService:
    return await build_chat_service(db)
