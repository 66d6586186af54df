from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from skillchat.utils.timeouts import bounded, collect


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("seq", ASCENDING)], unique=True)
        await self.collection.create_index([("conversation_id", ASCENDING), ("read", ASCENDING), ("sender_id", ASCENDING)])
        await self.collection.create_index([("conversation_id", ASCENDING), ("client_message_id", ASCENDING)])

    async def save_message(
        self,
        conversation_id: str,
        seq: int,
        sender_id: str,
        sender_name: str,
        body: str,
        timestamp: datetime,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "conversation_id": conversation_id,
            "seq": seq,
            "sender_id": sender_id,
            "sender_name": sender_name,
            "body": body,
            "timestamp": timestamp,
            "read": False,
            "counted": False,
            "client_message_id": client_message_id,
        }
        result = await bounded(self.collection.insert_one(doc), "message insert")
        doc["_id"] = result.inserted_id
        return doc

    async def find_by_client_id(self, conversation_id: str, sender_id: str, client_message_id: str) -> Optional[Dict[str, Any]]:
        return await bounded(
            self.collection.find_one(
                {"conversation_id": conversation_id, "sender_id": sender_id, "client_message_id": client_message_id}
            ),
            "message lookup",
        )

    async def list_after(self, conversation_id: str, after_seq: int = 0) -> List[Dict[str, Any]]:
        cur = self.collection.find({"conversation_id": conversation_id, "seq": {"$gt": after_seq}}).sort("seq", ASCENDING)
        return await bounded(collect(cur), "message backlog read")

    async def get_messages_by_conversation(
        self,
        conversation_id: str,
        limit: int = 50,
        cursor: Optional[int] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        """Page backwards from ``cursor`` (exclusive); each page is returned oldest first."""
        query: Dict[str, Any] = {"conversation_id": conversation_id}
        if cursor is not None:
            query["seq"] = {"$lt": cursor}
        cur = self.collection.find(query).sort("seq", DESCENDING).limit(limit)
        items = await bounded(collect(cur, length=limit), "message history read")
        next_cursor = None
        if len(items) == limit:
            next_cursor = int(items[-1]["seq"])
        return list(reversed(items)), next_cursor

    def _unread_query(self, conversation_id: str, reader_id: str) -> Dict[str, Any]:
        return {"conversation_id": conversation_id, "sender_id": {"$ne": reader_id}, "read": False}

    async def mark_read(self, conversation_id: str, reader_id: str, up_to_seq: int) -> List[int]:
        """Flip read flags up to ``up_to_seq`` and return the positions that changed."""
        query = self._unread_query(conversation_id, reader_id)
        query["seq"] = {"$lte": up_to_seq}
        cur = self.collection.find(query, projection={"seq": 1}).sort("seq", ASCENDING)
        pending = [int(doc["seq"]) for doc in await bounded(collect(cur), "unread scan")]
        if not pending:
            return []
        await bounded(
            self.collection.update_many(
                {**self._unread_query(conversation_id, reader_id), "seq": {"$in": pending}},
                {"$set": {"read": True}},
            ),
            "read flag update",
        )
        return pending

    async def count_unread(self, conversation_id: str, reader_id: str) -> int:
        return await bounded(
            self.collection.count_documents(self._unread_query(conversation_id, reader_id)),
            "unread count",
        )

    async def read_positions(self, conversation_id: str, seqs: Iterable[int]) -> List[int]:
        seqs = list(seqs)
        if not seqs:
            return []
        cur = self.collection.find(
            {"conversation_id": conversation_id, "seq": {"$in": seqs}, "read": True},
            projection={"seq": 1},
        ).sort("seq", ASCENDING)
        return [int(doc["seq"]) for doc in await bounded(collect(cur), "read flag scan")]

    async def claim_for_count(self, conversation_id: str, seq: int) -> bool:
        """True once per message: the caller owns the counter increment."""
        result = await bounded(
            self.collection.update_one(
                {"conversation_id": conversation_id, "seq": seq, "counted": {"$ne": True}},
                {"$set": {"counted": True}},
            ),
            "message count claim",
        )
        return bool(result.modified_count)
