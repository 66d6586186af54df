import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pymongo.errors import PyMongoError

from skillchat.config import settings
from skillchat.exceptions import ChatError, ConversationNotFound, InvalidMessage, InvalidParticipants, NotParticipant, ProfileNotFound
from skillchat.logging_config import conversation_id_var
from skillchat.models.conversation import public_conversation
from skillchat.repositories.conversation_repository import ConversationRepository
from skillchat.repositories.device_repository import DeviceRepository
from skillchat.repositories.message_repository import MessageRepository
from skillchat.repositories.user_repository import UserRepository
from skillchat.services.conversation_initializer import ConversationInitializer
from skillchat.services.identity import derive_conversation_id, other_participant, parse_conversation_id, validate_user_id
from skillchat.services.message_log import MessageLog
from skillchat.services.read_tracker import ReadTracker
from skillchat.services.subscriptions import EventHandler, InboxSubscription, MessageSubscription, SubscriptionHub, get_hub
from skillchat.utils.notifications import Notifier, get_push
from skillchat.utils.realtime_bus import get_bus
from skillchat.utils.timeouts import retry_read

logger = logging.getLogger(__name__)


def counterpart(conversation: Dict[str, Any], viewer_id: str) -> str:
    """The other participant. Partial records not yet repaired fall back to the id."""
    participants = conversation.get("participants") or []
    if len(participants) >= 2:
        return other_participant(participants, viewer_id)
    conversation_id = conversation.get("id") or conversation.get("_id")
    return other_participant(parse_conversation_id(str(conversation_id)), viewer_id)


def inbox_item(conversation: Dict[str, Any], viewer_id: str) -> Dict[str, Any]:
    """Read-only projection of a conversation for one participant's inbox."""
    other_id = counterpart(conversation, viewer_id)
    other_name = conversation["participant_names"].get(other_id) or settings.PLACEHOLDER_DISPLAY_NAME
    return {
        "conversation_id": conversation["id"],
        "other_user_id": other_id,
        "other_user_name": other_name,
        "other_user_initial": other_name[:1].upper(),
        "last_message": conversation["last_message"],
        "last_message_at": conversation["last_message_at"],
        "unread_count": conversation["unread_counts"].get(viewer_id, 0),
        "is_last_message_mine": conversation["last_message_sender"] == viewer_id,
    }


def inbox_items(conversations: Iterable[Dict[str, Any]], viewer_id: str) -> List[Dict[str, Any]]:
    items = []
    for conversation in conversations:
        try:
            items.append(inbox_item(conversation, viewer_id))
        except InvalidParticipants as exc:
            logger.warning("Skipping inbox row %s for %s: %s", conversation.get("id"), viewer_id, exc)
    return items


class ChatService:

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        user_repo: UserRepository,
        hub: SubscriptionHub,
        notifier: Notifier,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._user_repo = user_repo
        self._hub = hub
        self._notifier = notifier
        self.message_log = MessageLog(message_repo, conversation_repo, hub)
        self.read_tracker = ReadTracker(conversation_repo, self.message_log, hub.publisher)
        self.initializer = ConversationInitializer(conversation_repo, user_repo, hub.publisher)

    def derive_id(self, user_a: str, user_b: str) -> str:
        return derive_conversation_id(user_a, user_b)

    async def ensure_conversation(
        self,
        conversation_id: str,
        participant_a: str,
        participant_b: str,
        name_a: Optional[str] = None,
        name_b: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.initializer.ensure_conversation(conversation_id, participant_a, participant_b, name_a, name_b)

    async def get_conversation(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        conversation = await retry_read(lambda: self._conversation_repo.get(conversation_id), "conversation read")
        if conversation is None:
            raise ConversationNotFound(f"conversation {conversation_id} does not exist")
        if user_id not in (conversation.get("participants") or []):
            raise NotParticipant(f"{user_id} is not part of {conversation_id}")
        return conversation

    async def _sender_name(self, sender_id: str, conversation: Dict[str, Any]) -> str:
        try:
            return await self._user_repo.get_display_name(sender_id)
        except ProfileNotFound:
            pass
        except (ChatError, PyMongoError) as exc:
            logger.warning("Profile lookup for %s failed: %s", sender_id, exc)
        return (conversation.get("participant_names") or {}).get(sender_id) or settings.PLACEHOLDER_DISPLAY_NAME

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        body: str,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        body = (body or "").strip()
        if not body:
            raise InvalidMessage("Message content cannot be empty")
        if len(body) > settings.MAX_MESSAGE_LENGTH:
            raise InvalidMessage(f"Message content exceeds {settings.MAX_MESSAGE_LENGTH} characters")
        conversation_id_var.set(conversation_id)

        conversation = await self.get_conversation(conversation_id, sender_id)
        recipient_id = counterpart(conversation, sender_id)
        sender_name = await self._sender_name(sender_id, conversation)

        # a failure here leaves the message unsent and no counter touched
        message, created = await self.message_log.append(conversation_id, sender_id, sender_name, body, client_message_id)

        summary = None
        try:
            summary = await self.read_tracker.on_message_sent(conversation_id, sender_id, recipient_id, message)
        except (ChatError, PyMongoError) as exc:
            # message is durable; the counter is recovered by the next read pass or reconcile
            logger.error("Counter update for seq=%s in %s failed: %s", message["seq"], conversation_id, exc)

        if created:
            self._notifier.message_sent(conversation_id, sender_id, recipient_id, body, sender_name)
        return {
            "message": message,
            "conversation": summary,
            "ack": {
                "message_id": message["id"],
                "conversation_id": conversation_id,
                "seq": message["seq"],
                "client_message_id": client_message_id,
            },
        }

    async def mark_conversation_read(self, conversation_id: str, reader_id: str) -> Dict[str, Any]:
        conversation_id_var.set(conversation_id)
        return await self.read_tracker.mark_conversation_read(conversation_id, reader_id)

    async def reconcile_unread(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        await self.get_conversation(conversation_id, user_id)
        return await self.read_tracker.reconcile_unread(conversation_id)

    async def get_history(self, conversation_id: str, user_id: str, limit: int = 50, cursor: Optional[int] = None):
        await self.get_conversation(conversation_id, user_id)
        return await retry_read(lambda: self.message_log.history(conversation_id, limit=limit, cursor=cursor), "message history read")

    async def list_conversations(self, user_id: str, limit: int = 20, cursor: Optional[str] = None) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        validate_user_id(user_id)
        docs, next_cursor = await retry_read(
            lambda: self._conversation_repo.list_for_user(user_id, limit=limit, cursor=cursor), "inbox read"
        )
        return inbox_items((public_conversation(doc) for doc in docs), user_id), next_cursor

    async def subscribe_messages(
        self,
        conversation_id: str,
        user_id: str,
        handler: Optional[EventHandler] = None,
        after_seq: int = 0,
    ) -> MessageSubscription:
        await self.get_conversation(conversation_id, user_id)
        return await self.message_log.stream(conversation_id, handler, after_seq=after_seq)

    async def subscribe_conversations_for(self, participant_id: str, handler: Optional[EventHandler] = None) -> InboxSubscription:
        validate_user_id(participant_id)
        return await self._hub.subscribe_conversations_for(participant_id, handler)


async def build_chat_service(db) -> ChatService:
    bus = await get_bus()
    return ChatService(
        ConversationRepository(db),
        MessageRepository(db),
        UserRepository(db),
        await get_hub(),
        Notifier(bus, await get_push(), DeviceRepository(db)),
    )
