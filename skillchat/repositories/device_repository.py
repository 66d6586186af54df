from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from skillchat.models.device import PushTarget, PushPlatform
from skillchat.utils.timeouts import bounded, collect


class DeviceRepository:
    """Push tokens registered by the device service; this engine only reads them."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["devices"]

    async def get_tokens(self, user_id: str, platform: Optional[PushPlatform] = None) -> List[str]:
        query = {"user_id": user_id}
        if platform:
            query["platform"] = platform
        items: List[PushTarget] = await bounded(collect(self.collection.find(query), length=100), "device token read")
        return [item["token"] for item in items if item.get("token")]
