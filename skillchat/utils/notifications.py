import asyncio
import json
import logging
from typing import Dict, List, Optional, Set

from pyfcm import FCMNotification

from skillchat.config import settings
from skillchat.repositories.device_repository import DeviceRepository

logger = logging.getLogger(__name__)

NOTIFICATION_CHANNEL = "notifications"


class NoopPush:

    enabled = False

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, str]] = None) -> None:
        return


class FcmPush:

    enabled = True

    def __init__(self, service_account_file: str, project_id: str) -> None:
        self._client = FCMNotification(service_account_file=service_account_file, project_id=project_id)

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, str]] = None) -> None:
        # pyfcm is sync
        for token in tokens:
            await asyncio.to_thread(
                self._client.notify,
                fcm_token=token,
                notification_title=title,
                notification_body=body,
                data_payload=data or {},
            )


_push = None


async def get_push():
    global _push
    if _push is not None:
        return _push
    if settings.FCM_SERVICE_ACCOUNT_FILE and settings.FCM_PROJECT_ID:
        _push = FcmPush(settings.FCM_SERVICE_ACCOUNT_FILE, settings.FCM_PROJECT_ID)
    else:
        _push = NoopPush()
    return _push


class Notifier:
    """Fire-and-forget ``messageSent`` hook; the send path never waits on it."""

    def __init__(self, bus, push, device_repo: DeviceRepository) -> None:
        self._bus = bus
        self._push = push
        self._device_repo = device_repo
        self._tasks: Set[asyncio.Task] = set()

    def message_sent(self, conversation_id: str, sender_id: str, recipient_id: str, preview: str = "", sender_name: str = "") -> asyncio.Task:
        task = asyncio.create_task(self._deliver(conversation_id, sender_id, recipient_id, preview, sender_name))
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("messageSent notification failed: %s", exc, exc_info=exc)

    async def _deliver(self, conversation_id: str, sender_id: str, recipient_id: str, preview: str, sender_name: str) -> None:
        await self._bus.publish(
            NOTIFICATION_CHANNEL,
            json.dumps({
                "type": "message.sent",
                "conversation_id": conversation_id,
                "sender_id": sender_id,
                "recipient_id": recipient_id,
            }),
        )
        if not getattr(self._push, "enabled", False):
            return
        if await self._bus.is_online(recipient_id):
            return
        tokens = await self._device_repo.get_tokens(recipient_id, platform="fcm")
        if not tokens:
            return
        await self._push.send_fcm(
            tokens,
            title=sender_name or "New message",
            body=preview[:100],
            data={"conversation_id": conversation_id, "from": sender_id},
        )
