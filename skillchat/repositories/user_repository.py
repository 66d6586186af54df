from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from skillchat.exceptions import ProfileNotFound
from skillchat.models.user import UserDocument
from skillchat.utils.timeouts import bounded


class UserRepository:
    """Read-only view of the profile store owned by the account service."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_user_by_id(self, user_id: str) -> Optional[UserDocument]:
        return await bounded(self._collection.find_one({"_id": user_id}), "profile read")

    async def get_display_name(self, user_id: str) -> str:
        user = await self.get_user_by_id(user_id)
        if not user:
            raise ProfileNotFound(f"no profile for {user_id}")
        name = (user.get("display_name") or user.get("email") or "").strip()
        if not name:
            raise ProfileNotFound(f"profile {user_id} has no display name")
        return name
