from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from skillchat.utils.timeouts import bounded, collect


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participants", ASCENDING)])
        await self.collection.create_index([("last_message_at", DESCENDING)])

    async def get(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        return await bounded(self.collection.find_one({"_id": conversation_id}), "conversation read")

    async def create_if_absent(
        self,
        conversation_id: str,
        participants: List[str],
        names: Dict[str, str],
    ) -> Tuple[Dict[str, Any], bool]:
        """Insert keyed by the derived id; the loser of a race gets the winner's record."""
        now = datetime.now(timezone.utc)
        doc: Dict[str, Any] = {
            "_id": conversation_id,
            "participants": list(participants),
            "participant_names": dict(names),
            "last_message": "",
            "last_message_at": now,
            "last_message_sender": None,
            "last_message_seq": 0,
            "unread_counts": {p: 0 for p in participants},
            "message_seq": 0,
            "message_clock_ms": 0,
            "revision": 1,
            "created_at": now,
            "updated_at": now,
        }
        try:
            await bounded(self.collection.insert_one(doc), "conversation create")
        except DuplicateKeyError:
            existing = await self.get(conversation_id)
            if existing is not None:
                return existing, False
            raise
        return doc, True

    async def repair(
        self,
        existing: Dict[str, Any],
        participants: List[str],
        names: Dict[str, str],
    ) -> Optional[Dict[str, Any]]:
        conversation_id = existing["_id"]
        update: Dict[str, Any] = {
            "participants": list(participants),
            "updated_at": datetime.now(timezone.utc),
        }
        for user_id, name in names.items():
            update[f"participant_names.{user_id}"] = name
        # legacy records may predate the counters
        counters = existing.get("unread_counts") or {}
        for user_id in participants:
            if user_id not in counters:
                update[f"unread_counts.{user_id}"] = 0
        return await bounded(
            self.collection.find_one_and_update(
                {"_id": conversation_id},
                {"$set": update, "$inc": {"revision": 1}},
                return_document=ReturnDocument.AFTER,
            ),
            "conversation repair",
        )

    async def allocate_sequence(self, conversation_id: str, now_ms: int) -> Optional[Tuple[int, int]]:
        """Reserve the next message position and a timestamp no older than the previous one."""
        doc = await bounded(
            self.collection.find_one_and_update(
                {"_id": conversation_id},
                {"$inc": {"message_seq": 1}, "$max": {"message_clock_ms": now_ms}},
                projection={"message_seq": 1, "message_clock_ms": 1},
                return_document=ReturnDocument.AFTER,
            ),
            "sequence allocation",
        )
        if doc is None:
            return None
        return int(doc["message_seq"]), int(doc["message_clock_ms"])

    async def apply_new_message(
        self,
        conversation_id: str,
        recipient_id: str,
        seq: int,
        summary: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Increment the recipient's counter and advance the summary in one write.

        The summary is only replaced when ``seq`` is newer than the one it
        describes, so out-of-order completions never roll it back.
        """
        now = datetime.now(timezone.utc)
        inc = {f"unread_counts.{recipient_id}": 1, "revision": 1}
        newer = {
            "_id": conversation_id,
            "$or": [
                {"last_message_seq": {"$lt": seq}},
                {"last_message_seq": {"$exists": False}},
            ],
        }
        doc = await bounded(
            self.collection.find_one_and_update(
                newer,
                {"$set": {**summary, "last_message_seq": seq, "updated_at": now}, "$inc": inc},
                return_document=ReturnDocument.AFTER,
            ),
            "conversation summary update",
        )
        if doc is not None:
            return doc
        return await bounded(
            self.collection.find_one_and_update(
                {"_id": conversation_id},
                {"$set": {"updated_at": now}, "$inc": inc},
                return_document=ReturnDocument.AFTER,
            ),
            "conversation counter update",
        )

    async def set_unread(self, conversation_id: str, user_id: str, count: int) -> Optional[Dict[str, Any]]:
        """Set a counter; returns None when it already holds ``count``."""
        count = max(0, int(count))
        field = f"unread_counts.{user_id}"
        return await bounded(
            self.collection.find_one_and_update(
                {"_id": conversation_id, field: {"$ne": count}},
                {"$set": {field: count, "updated_at": datetime.now(timezone.utc)}, "$inc": {"revision": 1}},
                return_document=ReturnDocument.AFTER,
            ),
            "unread counter update",
        )

    async def list_all_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        cur = self.collection.find({"participants": user_id}).sort([("last_message_at", DESCENDING), ("_id", DESCENDING)])
        return await bounded(collect(cur), "inbox read")

    async def list_for_user(self, user_id: str, limit: int = 20, cursor: Optional[str] = None) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        query: Dict[str, Any] = {"participants": user_id}
        sort = [("last_message_at", DESCENDING), ("_id", DESCENDING)]
        if cursor:
            # Cursor format: timestamp_ms:conversation_id
            try:
                ts_str, last_id = cursor.split(":", 1)
                ts = datetime.fromtimestamp(int(ts_str) / 1000.0, tz=timezone.utc)
            except ValueError:
                ts = None
            if ts is not None:
                query["$or"] = [
                    {"last_message_at": {"$lt": ts}},
                    {"last_message_at": ts, "_id": {"$lt": last_id}},
                ]

        cursor_db = self.collection.find(query).sort(sort).limit(limit)
        items = await bounded(collect(cursor_db, length=limit), "inbox page read")
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            last_at = last["last_message_at"]
            if last_at.tzinfo is None:
                last_at = last_at.replace(tzinfo=timezone.utc)
            next_cursor = f"{int(last_at.timestamp() * 1000)}:{last['_id']}"
        return items, next_cursor
