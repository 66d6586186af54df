from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    participants: List[str]
    # participant id -> display name snapshot, may lag the profile store
    participant_names: Dict[str, str]
    last_message: str
    last_message_at: datetime
    last_message_sender: Optional[str]
    last_message_seq: int
    # per-user unread counters (user_id -> count)
    unread_counts: Dict[str, int]
    message_seq: int
    message_clock_ms: int
    revision: int
    created_at: datetime
    updated_at: datetime


def iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return str(value)


def public_conversation(doc: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-ready form shared by REST responses, snapshots and bus events."""
    return {
        "id": str(doc["_id"]),
        "participants": list(doc.get("participants") or []),
        "participant_names": dict(doc.get("participant_names") or {}),
        "last_message": doc.get("last_message") or "",
        "last_message_at": iso(doc.get("last_message_at")),
        "last_message_sender": doc.get("last_message_sender"),
        "last_message_seq": int(doc.get("last_message_seq") or 0),
        "unread_counts": {k: max(0, int(v)) for k, v in (doc.get("unread_counts") or {}).items()},
        "revision": int(doc.get("revision") or 0),
        "created_at": iso(doc.get("created_at")),
        "updated_at": iso(doc.get("updated_at")),
    }
