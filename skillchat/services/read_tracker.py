import logging
from datetime import datetime
from typing import Any, Dict, Optional

from skillchat.config import settings
from skillchat.exceptions import ConversationNotFound, NotParticipant
from skillchat.models.conversation import public_conversation
from skillchat.repositories.conversation_repository import ConversationRepository
from skillchat.services.message_log import MessageLog
from skillchat.services.subscriptions import EventPublisher

logger = logging.getLogger(__name__)


class ReadTracker:
    """Keeps the denormalized unread counters in step with message read flags.

    Counters only move through atomic ``$inc`` or a conditional ``$set`` to a
    value counted from the read flags, so duplicate calls cannot push them
    below zero.
    """

    def __init__(self, conversation_repo: ConversationRepository, message_log: MessageLog, publisher: EventPublisher) -> None:
        self._conversation_repo = conversation_repo
        self._message_log = message_log
        self._publisher = publisher

    async def _participant_conversation(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        conversation = await self._conversation_repo.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(f"conversation {conversation_id} does not exist")
        if user_id not in (conversation.get("participants") or []):
            raise NotParticipant(f"{user_id} is not part of {conversation_id}")
        return conversation

    async def mark_conversation_read(self, conversation_id: str, reader_id: str) -> Dict[str, Any]:
        conversation = await self._participant_conversation(conversation_id, reader_id)
        # messages appended after this point stay unread
        up_to_seq = int(conversation.get("message_seq") or 0)
        marked = await self._message_log.mark_read(conversation_id, reader_id, up_to_seq)

        remaining = await self._message_log.count_unread(conversation_id, reader_id)
        updated = await self._conversation_repo.set_unread(conversation_id, reader_id, remaining)
        if updated is not None:
            conversation = updated
            await self._publisher.conversation_updated(public_conversation(updated))
        elif marked:
            conversation = await self._conversation_repo.get(conversation_id) or conversation

        logger.info("%s read %d message(s) in %s, %d left", reader_id, len(marked), conversation_id, remaining)
        return {"conversation": public_conversation(conversation), "marked": marked, "unread": remaining}

    async def on_message_sent(
        self,
        conversation_id: str,
        sender_id: str,
        recipient_id: str,
        message: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Count a confirmed message against the recipient and advance the summary.

        Returns the updated conversation, or None if this message was already counted.
        """
        if not await self._message_log.claim_for_count(conversation_id, message["seq"]):
            logger.debug("seq=%s in %s already counted", message["seq"], conversation_id)
            return None
        summary = {
            "last_message": message["body"][: settings.MESSAGE_PREVIEW_LENGTH],
            "last_message_at": datetime.fromisoformat(message["timestamp"]),
            "last_message_sender": sender_id,
        }
        updated = await self._conversation_repo.apply_new_message(conversation_id, recipient_id, int(message["seq"]), summary)
        if updated is None:
            raise ConversationNotFound(f"conversation {conversation_id} does not exist")
        conversation = public_conversation(updated)
        await self._publisher.conversation_updated(conversation)
        return conversation

    async def reconcile_unread(self, conversation_id: str) -> Dict[str, Any]:
        """Recount both counters from read flags; closes any drift left by races."""
        conversation = await self._conversation_repo.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(f"conversation {conversation_id} does not exist")
        for participant_id in conversation.get("participants") or []:
            count = await self._message_log.count_unread(conversation_id, participant_id)
            updated = await self._conversation_repo.set_unread(conversation_id, participant_id, count)
            if updated is not None:
                logger.info("Reconciled unread[%s]=%d in %s", participant_id, count, conversation_id)
                conversation = updated
                await self._publisher.conversation_updated(public_conversation(updated))
        return public_conversation(conversation)
