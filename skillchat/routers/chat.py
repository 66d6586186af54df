import asyncio
import json
import logging
from contextlib import suppress
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from redis.exceptions import RedisError

from skillchat.config import settings
from skillchat.exceptions import ChatError, InvalidParticipants
from skillchat.services.chat_service import ChatService, inbox_items
from skillchat.services.identity import validate_user_id
from skillchat.services.subscriptions import Subscription
from skillchat.utils.dependencies import get_chat_service
from skillchat.utils.realtime_bus import get_bus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["chat"])

# close codes
WS_UNAUTHORIZED = 4401
WS_FORBIDDEN = 4403
WS_NOT_FOUND = 4404
WS_INTERNAL_ERROR = 1011


def _error_frame(exc: ChatError, **extra: Any) -> str:
    return json.dumps({"type": "error", "error": exc.code, "detail": exc.message, **extra})


def _close_code(exc: ChatError) -> int:
    if exc.status_code == 404:
        return WS_NOT_FOUND
    if exc.status_code in (400, 403):
        return WS_FORBIDDEN
    return WS_INTERNAL_ERROR


def _close_on_failure(websocket: WebSocket, subscription: Subscription) -> asyncio.Task:
    """Closes the socket once the subscription's handler has died, so the client reconnects."""

    async def watch() -> None:
        await subscription.wait_closed()
        if not subscription.failed:
            return
        try:
            await websocket.close(code=WS_INTERNAL_ERROR)
        except (RuntimeError, OSError) as exc:
            # the client is already gone
            logger.debug("Close after failed %s skipped: %s", subscription.channel, exc)

    return asyncio.create_task(watch())


async def _stop(task: asyncio.Task) -> None:
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


def _caller(websocket: WebSocket, expected: Optional[str] = None) -> Optional[str]:
    user_id = websocket.query_params.get("user_id") or expected
    try:
        validate_user_id(user_id or "")
    except InvalidParticipants:
        return None
    if expected is not None and user_id != expected:
        return None
    return user_id


@router.websocket("/conversations/{conversation_id}")
async def conversation_socket(websocket: WebSocket, conversation_id: str, service: ChatService = Depends(get_chat_service)):
    user_id = _caller(websocket)
    if user_id is None:
        await websocket.close(code=WS_UNAUTHORIZED)
        return
    try:
        after_seq = int(websocket.query_params.get("after_seq") or 0)
    except ValueError:
        after_seq = 0

    await websocket.accept()

    async def forward(event: Dict[str, Any]) -> None:
        await websocket.send_text(json.dumps(event))

    try:
        subscription = await service.subscribe_messages(conversation_id, user_id, forward, after_seq=after_seq)
    except ChatError as exc:
        await websocket.send_text(_error_frame(exc))
        await websocket.close(code=_close_code(exc))
        return

    watchdog = _close_on_failure(websocket, subscription)
    try:
        while not subscription.closed:
            data = await websocket.receive_text()
            try:
                frame = json.loads(data)
            except ValueError:
                await websocket.send_text(json.dumps({"type": "error", "error": "invalid_frame", "detail": "frames must be JSON"}))
                continue
            kind = frame.get("type")

            if kind == "send":
                # {type: "send", body, client_message_id?}
                client_message_id = frame.get("client_message_id")
                try:
                    result = await service.send_message(conversation_id, user_id, frame.get("body", ""), client_message_id)
                except ChatError as exc:
                    await websocket.send_text(_error_frame(exc, client_message_id=client_message_id, status="failed"))
                    continue
                await websocket.send_text(json.dumps({"type": "ack", "status": "sent", **result["ack"]}))
                continue

            if kind == "read":
                try:
                    result = await service.mark_conversation_read(conversation_id, user_id)
                except ChatError as exc:
                    await websocket.send_text(_error_frame(exc))
                    continue
                await websocket.send_text(json.dumps({"type": "read.ack", "marked": result["marked"], "unread": result["unread"]}))
                continue

            await websocket.send_text(json.dumps({"type": "error", "error": "invalid_frame", "detail": f"unknown frame type {kind!r}"}))
    except WebSocketDisconnect:
        logger.debug("%s left %s", user_id, conversation_id)
    finally:
        await _stop(watchdog)
        await subscription.close()


@router.websocket("/inbox/{user_id}")
async def inbox_socket(websocket: WebSocket, user_id: str, service: ChatService = Depends(get_chat_service)):
    if _caller(websocket, expected=user_id) is None:
        await websocket.close(code=WS_UNAUTHORIZED)
        return
    await websocket.accept()

    async def forward(event: Dict[str, Any]) -> None:
        if event["type"] == "snapshot":
            items = inbox_items(event["conversations"], user_id)
            items.sort(key=lambda item: item["last_message_at"] or "", reverse=True)
            await websocket.send_text(json.dumps({"type": "snapshot", "items": items}))
        else:
            for item in inbox_items([event["conversation"]], user_id):
                await websocket.send_text(json.dumps({"type": event["type"], "item": item}))

    try:
        subscription = await service.subscribe_conversations_for(user_id, forward)
    except ChatError as exc:
        await websocket.send_text(_error_frame(exc))
        await websocket.close(code=_close_code(exc))
        return

    bus = await get_bus()

    async def _presence_heartbeat():
        while True:
            try:
                await bus.set_presence(user_id, ttl_seconds=settings.PRESENCE_TTL_SECONDS)
            except (RedisError, OSError) as exc:
                logger.warning("Presence refresh for %s failed: %s", user_id, exc)
            await asyncio.sleep(settings.PRESENCE_TTL_SECONDS / 2)

    heartbeat_task = asyncio.create_task(_presence_heartbeat())
    watchdog = _close_on_failure(websocket, subscription)
    try:
        while not subscription.closed:
            # clients may send pings; content is ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("%s inbox socket closed", user_id)
    finally:
        await _stop(heartbeat_task)
        await _stop(watchdog)
        await subscription.close()
