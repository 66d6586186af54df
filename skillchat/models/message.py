from datetime import datetime
from typing import Any, Dict, Optional, TypedDict

from skillchat.models.conversation import iso


class MessageDocument(TypedDict, total=False):
    _id: Any
    conversation_id: str
    seq: int
    sender_id: str
    sender_name: str
    body: str
    timestamp: datetime
    read: bool
    # recipient's unread counter already incremented for this message
    counted: bool
    # client ack
    client_message_id: Optional[str]


def public_message(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(doc.get("_id")),
        "conversation_id": doc["conversation_id"],
        "seq": int(doc["seq"]),
        "sender_id": doc["sender_id"],
        "sender_name": doc.get("sender_name") or "",
        "body": doc.get("body") or "",
        "timestamp": iso(doc.get("timestamp")),
        "read": bool(doc.get("read")),
        "client_message_id": doc.get("client_message_id"),
    }
