import logging
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from skillchat.config import settings
from skillchat.exceptions import ChatError, InitializationFailed, InvalidParticipants, ProfileNotFound
from skillchat.logging_config import conversation_id_var
from skillchat.models.conversation import public_conversation
from skillchat.repositories.conversation_repository import ConversationRepository
from skillchat.repositories.user_repository import UserRepository
from skillchat.services.identity import derive_conversation_id
from skillchat.services.subscriptions import EventPublisher

logger = logging.getLogger(__name__)


class ConversationInitializer:
    """Create-or-repair for the conversation record, run when a chat is opened.

    Creation relies on the store's unique ``_id``: concurrent first contacts
    both attempt the insert, one wins, the other reads the winner's record.
    """

    def __init__(self, conversation_repo: ConversationRepository, user_repo: UserRepository, publisher: EventPublisher) -> None:
        self._conversation_repo = conversation_repo
        self._user_repo = user_repo
        self._publisher = publisher

    async def resolve_name(self, user_id: str, provided: Optional[str] = None) -> str:
        """Provided name, then profile lookup, then the placeholder. Never raises."""
        if provided and provided.strip():
            return provided.strip()
        try:
            return await self._user_repo.get_display_name(user_id)
        except ProfileNotFound:
            logger.debug("No profile name for %s, using placeholder", user_id)
        except (ChatError, PyMongoError) as exc:
            logger.warning("Profile lookup for %s failed: %s", user_id, exc)
        return settings.PLACEHOLDER_DISPLAY_NAME

    async def ensure_conversation(
        self,
        conversation_id: str,
        participant_a: str,
        participant_b: str,
        name_a: Optional[str] = None,
        name_b: Optional[str] = None,
    ) -> Dict[str, Any]:
        if derive_conversation_id(participant_a, participant_b) != conversation_id:
            raise InvalidParticipants(f"{conversation_id!r} does not belong to {participant_a} and {participant_b}")
        conversation_id_var.set(conversation_id)
        participants = sorted((participant_a, participant_b))
        provided = {participant_a: name_a, participant_b: name_b}

        try:
            existing = await self._conversation_repo.get(conversation_id)
            if existing is None:
                names = {uid: await self.resolve_name(uid, provided[uid]) for uid in participants}
                existing, created = await self._conversation_repo.create_if_absent(conversation_id, participants, names)
                if created:
                    logger.info("Created conversation %s", conversation_id)
                    conversation = public_conversation(existing)
                    await self._publisher.conversation_updated(conversation)
                    return conversation
                logger.info("Conversation %s was created concurrently, using stored record", conversation_id)
        except PyMongoError as exc:
            logger.error("Initialising %s failed: %s", conversation_id, exc)
            raise InitializationFailed(f"conversation {conversation_id} could not be initialised") from exc

        return public_conversation(await self._repair_if_needed(existing, participants, provided))

    async def _repair_if_needed(
        self,
        existing: Dict[str, Any],
        participants: List[str],
        provided: Dict[str, Optional[str]],
    ) -> Dict[str, Any]:
        stored_participants = existing.get("participants") or []
        stored_names = existing.get("participant_names") or {}
        missing = [uid for uid in participants if uid not in stored_participants]

        names: Dict[str, str] = {}
        for uid in participants:
            wanted = (provided.get(uid) or "").strip()
            if wanted and stored_names.get(uid) != wanted:
                names[uid] = wanted
            elif uid not in stored_names:
                names[uid] = await self.resolve_name(uid)
        if not missing and not names and len(stored_participants) == 2:
            return existing

        try:
            repaired = await self._conversation_repo.repair(existing, participants, names)
        except (ChatError, PyMongoError) as exc:
            logger.warning("Repair of %s skipped: %s", existing["_id"], exc)
            return existing
        if repaired is None:
            return existing
        logger.info("Repaired conversation %s (missing=%s, names=%s)", existing["_id"], missing, sorted(names))
        await self._publisher.conversation_updated(public_conversation(repaired))
        return repaired
