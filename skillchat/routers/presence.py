from fastapi import APIRouter

from skillchat.services.identity import validate_user_id
from skillchat.utils.realtime_bus import get_bus


router = APIRouter(prefix="/presence", tags=["chat"])


@router.get("/{user_id}")
async def presence(user_id: str):
    """Online while an inbox socket keeps the user's presence key fresh."""
    validate_user_id(user_id)
    bus = await get_bus()
    return {"user_id": user_id, "online": await bus.is_online(user_id)}
