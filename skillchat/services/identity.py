"""Canonical ids for two-party conversations.

Either participant computes the same id offline: the two user ids are sorted
and joined with ``_``. User ids may not contain the separator, so distinct
pairs never collide.
"""

import re
from typing import Iterable, Tuple

from skillchat.exceptions import InvalidParticipants

SEPARATOR = "_"
_VALID_USER_ID = re.compile(r"^[A-Za-z0-9.@:-]{1,128}$")


def validate_user_id(user_id: str) -> str:
    if not isinstance(user_id, str) or not _VALID_USER_ID.match(user_id):
        raise InvalidParticipants(f"malformed participant id: {user_id!r}")
    return user_id


def derive_conversation_id(a: str, b: str) -> str:
    validate_user_id(a)
    validate_user_id(b)
    if a == b:
        raise InvalidParticipants("a conversation needs two distinct participants")
    lo, hi = sorted((a, b))
    return f"{lo}{SEPARATOR}{hi}"


def parse_conversation_id(conversation_id: str) -> Tuple[str, str]:
    if not isinstance(conversation_id, str):
        raise InvalidParticipants(f"malformed conversation id: {conversation_id!r}")
    parts = conversation_id.split(SEPARATOR)
    if len(parts) != 2:
        raise InvalidParticipants(f"malformed conversation id: {conversation_id!r}")
    lo, hi = parts
    if derive_conversation_id(lo, hi) != conversation_id:
        raise InvalidParticipants(f"conversation id is not canonical: {conversation_id!r}")
    return lo, hi


def other_participant(participants: Iterable[str], me: str) -> str:
    participants = list(participants)
    for user_id in participants:
        if user_id != me:
            return user_id
    raise InvalidParticipants(f"{me} has no counterpart in {participants!r}")
