"""Live subscriptions to a conversation's messages or a participant's inbox.

Every subscription follows the same handshake: attach to the bus channel
(buffering deltas), read a snapshot from the store, deliver the snapshot,
then deliver buffered and live deltas that the snapshot does not already
reflect. Reconnects, queue overflow and idle refreshes re-run the store read
and emit only what this subscriber has not seen yet.

Usage:
    hub = await get_hub()
    async with await hub.subscribe_messages("alice_bob") as sub:
        async for event in sub:
            ...

or with a handler, which runs in a background task until ``close()``:
    sub = await hub.subscribe_conversations_for("alice", handler)
"""

import asyncio
import json
import logging
import time
from collections import deque
from contextlib import suppress
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from pymongo.errors import PyMongoError
from redis.exceptions import RedisError

from skillchat.config import settings
from skillchat.database.connection import get_database
from skillchat.exceptions import ChatError
from skillchat.models.conversation import public_conversation
from skillchat.models.message import public_message
from skillchat.repositories.conversation_repository import ConversationRepository
from skillchat.repositories.message_repository import MessageRepository
from skillchat.services.identity import other_participant, parse_conversation_id
from skillchat.utils.realtime_bus import get_bus
from skillchat.utils.timeouts import retry_read

logger = logging.getLogger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]

_RESYNC = object()
_CLOSED = object()


def message_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def inbox_channel(participant_id: str) -> str:
    return f"inbox:{participant_id}"


class EventPublisher:
    """Publishes committed store changes. A failed publish is recovered by subscriber refresh."""

    def __init__(self, bus) -> None:
        self._bus = bus

    async def _publish(self, channel: str, payload: Dict[str, Any]) -> None:
        try:
            await self._bus.publish(channel, json.dumps(payload))
        except (RedisError, OSError) as exc:
            logger.warning("Publish to %s failed: %s", channel, exc)

    async def message_created(self, message: Dict[str, Any]) -> None:
        await self._publish(
            message_channel(message["conversation_id"]),
            {"type": "message.created", "conversation_id": message["conversation_id"], "message": message},
        )

    async def messages_read(self, conversation_id: str, reader_id: str, seqs: List[int]) -> None:
        if not seqs:
            return
        await self._publish(
            message_channel(conversation_id),
            {"type": "message.read", "conversation_id": conversation_id, "reader_id": reader_id, "seqs": seqs},
        )

    async def conversation_updated(self, conversation: Dict[str, Any]) -> None:
        payload = {"type": "conversation.updated", "conversation": conversation}
        for participant_id in conversation["participants"]:
            await self._publish(inbox_channel(participant_id), payload)


class Subscription:

    kind = "subscription"

    def __init__(self, hub: "SubscriptionHub", channel: str, handler: Optional[EventHandler] = None) -> None:
        self._hub = hub
        self.channel = channel
        self._handler = handler
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=settings.SUBSCRIBER_QUEUE_SIZE)
        self._ready: Deque[Dict[str, Any]] = deque()
        self._closed = False
        self._started = False
        self._retry_at: Optional[float] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._done = asyncio.Event()
        # set when the handler raised and the subscription closed itself
        self.failed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def wait_closed(self) -> None:
        await self._done.wait()

    async def start(self) -> "Subscription":
        if self._started:
            return self
        await self._hub._attach(self)
        try:
            snapshot = await retry_read(self._load_snapshot, f"{self.kind} snapshot")
        except BaseException:
            await self._hub._detach(self)
            raise
        self._ready.append(snapshot)
        self._started = True
        if self._handler is not None:
            self._pump_task = asyncio.create_task(self._pump())
        return self

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._ready.clear()
        self._drain()
        self._queue.put_nowait(_CLOSED)
        self._done.set()
        await self._hub._detach(self)
        task = self._pump_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def __aenter__(self) -> "Subscription":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Dict[str, Any]:
        while not self._ready:
            if self._closed:
                raise StopAsyncIteration
            try:
                item = await asyncio.wait_for(self._queue.get(), self._wait_timeout())
            except asyncio.TimeoutError:
                item = _RESYNC
            if item is _CLOSED:
                raise StopAsyncIteration
            if item is _RESYNC:
                self._ready.extend(await self._safe_resync())
            else:
                self._ready.extend(await self._accept(item))
        if self._closed:
            raise StopAsyncIteration
        return self._ready.popleft()

    def _offer(self, item: Any) -> None:
        """Called from the bus task; never blocks."""
        if self._closed:
            return
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("Subscriber on %s fell behind, resyncing from store", self.channel)
            self._drain()
            self._queue.put_nowait(_RESYNC)

    def _drain(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return

    def _wait_timeout(self) -> float:
        timeout = settings.SUBSCRIPTION_REFRESH_SECONDS
        if self._retry_at is not None:
            timeout = min(timeout, max(0.0, self._retry_at - time.monotonic()))
        return timeout

    async def _safe_resync(self) -> List[Dict[str, Any]]:
        try:
            events = await self._resync()
        except (ChatError, PyMongoError) as exc:
            logger.warning("Resync of %s failed, will retry: %s", self.channel, exc)
            self._retry_at = time.monotonic() + settings.READ_RETRY_BACKOFF_SECONDS * 5
            return []
        self._retry_at = None
        return events

    async def _pump(self) -> None:
        try:
            async for event in self:
                await self._handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Subscription handler on %s failed, closing", self.channel)
            self.failed = True
            await self.close()

    async def _load_snapshot(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def _accept(self, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def _resync(self) -> List[Dict[str, Any]]:
        raise NotImplementedError


class MessageSubscription(Subscription):
    """Ordered message stream for one conversation.

    Deltas are released strictly in ``seq`` order. A missing position is
    held open until the store confirms it is still empty after
    SEQUENCE_GAP_TIMEOUT_SECONDS (an append that failed after reserving it).
    """

    kind = "messages"

    def __init__(
        self,
        hub: "SubscriptionHub",
        conversation_id: str,
        handler: Optional[EventHandler] = None,
        after_seq: int = 0,
    ) -> None:
        super().__init__(hub, message_channel(conversation_id), handler)
        self.conversation_id = conversation_id
        self._participants = parse_conversation_id(conversation_id)
        self._delivered_seq = max(0, int(after_seq))
        self._pending: Dict[int, Dict[str, Any]] = {}
        # delivered while unread: seq -> sender id
        self._unread: Dict[int, str] = {}
        self._early_reads: Set[int] = set()
        self._gap_since: Optional[float] = None

    @property
    def delivered_seq(self) -> int:
        return self._delivered_seq

    async def _load_snapshot(self) -> Dict[str, Any]:
        backlog = await self._hub.message_repo.list_after(self.conversation_id, self._delivered_seq)
        for doc in backlog:
            self._stash(public_message(doc))
        messages = self._release(confirmed=True)
        return {"type": "snapshot", "conversation_id": self.conversation_id, "messages": messages}

    async def _accept(self, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        kind = event.get("type")
        if kind == "message.created":
            self._stash(event["message"])
            return self._created(self._release(confirmed=False))
        if kind == "message.read":
            return self._apply_reads(event["seqs"], event.get("reader_id"))
        return []

    async def _resync(self) -> List[Dict[str, Any]]:
        backlog = await self._hub.message_repo.list_after(self.conversation_id, self._delivered_seq)
        for doc in backlog:
            self._stash(public_message(doc))
        events = self._created(self._release(confirmed=True))
        read_now = await self._hub.message_repo.read_positions(self.conversation_id, self._unread.keys())
        by_reader: Dict[str, List[int]] = {}
        for seq in read_now:
            reader_id = other_participant(self._participants, self._unread[seq])
            by_reader.setdefault(reader_id, []).append(seq)
        for reader_id, seqs in by_reader.items():
            events.extend(self._apply_reads(seqs, reader_id))
        return events

    def _wait_timeout(self) -> float:
        timeout = super()._wait_timeout()
        if self._gap_since is not None:
            remaining = self._gap_since + settings.SEQUENCE_GAP_TIMEOUT_SECONDS - time.monotonic()
            timeout = min(timeout, max(0.05, remaining))
        return timeout

    def _stash(self, message: Dict[str, Any]) -> None:
        seq = int(message["seq"])
        if seq <= self._delivered_seq:
            return
        if seq in self._early_reads:
            self._early_reads.discard(seq)
            message = {**message, "read": True}
        existing = self._pending.get(seq)
        if existing is None or (message["read"] and not existing["read"]):
            self._pending[seq] = message

    def _gap_expired(self, after_gap: Dict[str, Any]) -> bool:
        timeout = settings.SEQUENCE_GAP_TIMEOUT_SECONDS
        if self._gap_since is not None and time.monotonic() - self._gap_since >= timeout:
            return True
        stamped = datetime.fromisoformat(after_gap["timestamp"])
        return stamped < datetime.now(timezone.utc) - timedelta(seconds=timeout)

    def _release(self, confirmed: bool) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        while self._pending:
            nxt = self._delivered_seq + 1
            if nxt in self._pending:
                message = self._pending.pop(nxt)
            else:
                lowest = min(self._pending)
                if not (confirmed and self._gap_expired(self._pending[lowest])):
                    break
                logger.warning(
                    "Skipping unfilled positions %d-%d in %s", nxt, lowest - 1, self.conversation_id
                )
                message = self._pending.pop(lowest)
            self._delivered_seq = int(message["seq"])
            if not message["read"]:
                self._unread[self._delivered_seq] = message["sender_id"]
            out.append(message)
        if not self._pending:
            self._gap_since = None
        elif self._gap_since is None:
            self._gap_since = time.monotonic()
        return out

    def _created(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [
            {"type": "message.created", "conversation_id": self.conversation_id, "message": m}
            for m in messages
        ]

    def _apply_reads(self, seqs: List[int], reader_id: Optional[str]) -> List[Dict[str, Any]]:
        flipped = []
        for seq in sorted(int(s) for s in seqs):
            if seq in self._unread:
                del self._unread[seq]
                flipped.append(seq)
            elif seq in self._pending:
                self._pending[seq] = {**self._pending[seq], "read": True}
            elif seq > self._delivered_seq:
                self._early_reads.add(seq)
        if not flipped:
            return []
        return [{"type": "message.read", "conversation_id": self.conversation_id, "reader_id": reader_id, "seqs": flipped}]


class InboxSubscription(Subscription):
    """Every conversation a participant belongs to, newest revision wins."""

    kind = "inbox"

    def __init__(self, hub: "SubscriptionHub", participant_id: str, handler: Optional[EventHandler] = None) -> None:
        super().__init__(hub, inbox_channel(participant_id), handler)
        self.participant_id = participant_id
        self._revisions: Dict[str, int] = {}

    async def _load_snapshot(self) -> Dict[str, Any]:
        docs = await self._hub.conversation_repo.list_all_for_user(self.participant_id)
        conversations = [public_conversation(doc) for doc in docs]
        self._revisions = {c["id"]: c["revision"] for c in conversations}
        return {"type": "snapshot", "participant_id": self.participant_id, "conversations": conversations}

    async def _accept(self, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        if event.get("type") != "conversation.updated":
            return []
        return self._updated([event["conversation"]])

    async def _resync(self) -> List[Dict[str, Any]]:
        docs = await self._hub.conversation_repo.list_all_for_user(self.participant_id)
        return self._updated([public_conversation(doc) for doc in docs])

    def _updated(self, conversations: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        out = []
        for conversation in conversations:
            if self.participant_id not in conversation["participants"]:
                continue
            if conversation["revision"] <= self._revisions.get(conversation["id"], 0):
                continue
            self._revisions[conversation["id"]] = conversation["revision"]
            out.append({"type": "conversation.updated", "participant_id": self.participant_id, "conversation": conversation})
        return out


class _Channel:

    def __init__(self, name: str) -> None:
        self.name = name
        self.members: Set[Subscription] = set()
        self.listener = None
        self.task: Optional[asyncio.Task] = None


class SubscriptionHub:
    """Owns one bus listener per channel and fans events out to local subscribers."""

    def __init__(self, bus, message_repo: MessageRepository, conversation_repo: ConversationRepository) -> None:
        self._bus = bus
        self.message_repo = message_repo
        self.conversation_repo = conversation_repo
        self.publisher = EventPublisher(bus)
        self._channels: Dict[str, _Channel] = {}
        self._lock = asyncio.Lock()

    async def subscribe_messages(
        self,
        conversation_id: str,
        handler: Optional[EventHandler] = None,
        after_seq: int = 0,
    ) -> MessageSubscription:
        return await MessageSubscription(self, conversation_id, handler, after_seq).start()

    async def subscribe_conversations_for(self, participant_id: str, handler: Optional[EventHandler] = None) -> InboxSubscription:
        return await InboxSubscription(self, participant_id, handler).start()

    def subscriber_count(self, channel: str) -> int:
        entry = self._channels.get(channel)
        return len(entry.members) if entry else 0

    async def _attach(self, subscription: Subscription) -> None:
        async with self._lock:
            entry = self._channels.get(subscription.channel)
            if entry is None:
                entry = _Channel(subscription.channel)

                async def on_message(raw: str) -> None:
                    try:
                        event = json.loads(raw)
                    except ValueError:
                        logger.warning("Dropping malformed event on %s", entry.name)
                        return
                    for member in list(entry.members):
                        member._offer(event)

                async def on_reconnect() -> None:
                    for member in list(entry.members):
                        member._offer(_RESYNC)

                entry.listener = await self._bus.subscribe(entry.name, on_message, on_reconnect)
                entry.task = asyncio.create_task(entry.listener.run())
                self._channels[entry.name] = entry
            entry.members.add(subscription)

    async def _detach(self, subscription: Subscription) -> None:
        async with self._lock:
            entry = self._channels.get(subscription.channel)
            if entry is None:
                return
            entry.members.discard(subscription)
            if entry.members:
                return
            del self._channels[entry.name]
        await entry.listener.cancel()
        if entry.task is not None:
            entry.task.cancel()
            with suppress(asyncio.CancelledError):
                await entry.task

    async def close(self) -> None:
        members = [m for entry in list(self._channels.values()) for m in list(entry.members)]
        for member in members:
            await member.close()


_hub: Optional[SubscriptionHub] = None


async def get_hub() -> SubscriptionHub:
    global _hub
    if _hub is None:
        db = get_database()
        _hub = SubscriptionHub(await get_bus(), MessageRepository(db), ConversationRepository(db))
    return _hub


async def close_hub() -> None:
    global _hub
    if _hub is not None:
        await _hub.close()
    _hub = None
