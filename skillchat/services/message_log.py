import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import PyMongoError

from skillchat.exceptions import ConversationNotFound, SendFailed
from skillchat.models.message import public_message
from skillchat.repositories.conversation_repository import ConversationRepository
from skillchat.repositories.message_repository import MessageRepository
from skillchat.services.subscriptions import MessageSubscription, SubscriptionHub, EventHandler

logger = logging.getLogger(__name__)


class MessageLog:
    """Append-only, per-conversation ordered message sequence.

    Positions and timestamps come from one atomic update on the conversation
    record, so the order never depends on client clocks.
    """

    def __init__(self, message_repo: MessageRepository, conversation_repo: ConversationRepository, hub: SubscriptionHub) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._hub = hub

    async def append(
        self,
        conversation_id: str,
        sender_id: str,
        sender_name: str,
        body: str,
        client_message_id: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """Returns ``(message, created)``; ``created`` is False for a retried client id."""
        try:
            if client_message_id:
                existing = await self._message_repo.find_by_client_id(conversation_id, sender_id, client_message_id)
                if existing is not None:
                    logger.info("Duplicate send %s resolved to seq=%s", client_message_id, existing["seq"])
                    return public_message(existing), False

            allocated = await self._conversation_repo.allocate_sequence(conversation_id, int(time.time() * 1000))
            if allocated is None:
                raise ConversationNotFound(f"conversation {conversation_id} is not initialised")
            seq, clock_ms = allocated
            doc = await self._message_repo.save_message(
                conversation_id=conversation_id,
                seq=seq,
                sender_id=sender_id,
                sender_name=sender_name,
                body=body,
                timestamp=datetime.fromtimestamp(clock_ms / 1000.0, tz=timezone.utc),
                client_message_id=client_message_id,
            )
        except PyMongoError as exc:
            logger.error("Append to %s failed: %s", conversation_id, exc)
            raise SendFailed(f"message could not be stored: {exc}") from exc

        message = public_message(doc)
        logger.debug("Appended seq=%d to %s", seq, conversation_id)
        await self._hub.publisher.message_created(message)
        return message, True

    async def mark_read(self, conversation_id: str, reader_id: str, up_to_seq: int) -> List[int]:
        seqs = await self._message_repo.mark_read(conversation_id, reader_id, up_to_seq)
        if seqs:
            await self._hub.publisher.messages_read(conversation_id, reader_id, seqs)
        return seqs

    async def claim_for_count(self, conversation_id: str, seq: int) -> bool:
        return await self._message_repo.claim_for_count(conversation_id, seq)

    async def count_unread(self, conversation_id: str, reader_id: str) -> int:
        return await self._message_repo.count_unread(conversation_id, reader_id)

    async def history(self, conversation_id: str, limit: int = 50, cursor: Optional[int] = None):
        items, next_cursor = await self._message_repo.get_messages_by_conversation(conversation_id, limit=limit, cursor=cursor)
        return [public_message(doc) for doc in items], next_cursor

    async def stream(
        self,
        conversation_id: str,
        handler: Optional[EventHandler] = None,
        after_seq: int = 0,
    ) -> MessageSubscription:
        return await self._hub.subscribe_messages(conversation_id, handler, after_seq=after_seq)
