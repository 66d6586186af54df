import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

from skillchat.config import settings

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str], Awaitable[None]]
ReconnectCallback = Callable[[], Awaitable[None]]


class LocalBus:
    """In-process pub/sub for single-worker deployments and tests."""

    enabled = False

    def __init__(self) -> None:
        self._channels: Dict[str, Set[asyncio.Queue]] = {}
        self._presence: Dict[str, float] = {}

    async def publish(self, channel: str, message: str) -> None:
        for queue in list(self._channels.get(channel, ())):
            queue.put_nowait(message)

    async def subscribe(
        self,
        channel: str,
        on_message: MessageCallback,
        on_reconnect: Optional[ReconnectCallback] = None,
    ):
        queue: asyncio.Queue = asyncio.Queue()
        self._channels.setdefault(channel, set()).add(queue)
        channels = self._channels

        class _Sub:
            async def run(self_inner):
                while True:
                    msg = await queue.get()
                    if msg is None:
                        return
                    await on_message(msg)

            async def cancel(self_inner):
                subs = channels.get(channel)
                if subs is not None:
                    subs.discard(queue)
                    if not subs:
                        del channels[channel]
                queue.put_nowait(None)

        return _Sub()

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        self._presence[user_id] = time.monotonic() + ttl_seconds

    async def is_online(self, user_id: str) -> bool:
        expires = self._presence.get(user_id)
        return expires is not None and expires > time.monotonic()

    async def close(self) -> None:
        self._channels.clear()


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(
        self,
        channel: str,
        on_message: MessageCallback,
        on_reconnect: Optional[ReconnectCallback] = None,
    ):
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)

        class _Sub:
            _running = True
            _lost = False

            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    except (RedisError, OSError) as exc:
                        if not self_inner._lost:
                            logger.warning("Lost pub/sub connection on %s: %s", channel, exc)
                        self_inner._lost = True
                        await asyncio.sleep(0.5)
                        continue
                    if self_inner._lost:
                        # pubsub re-subscribes on reconnect; deltas in between are gone
                        self_inner._lost = False
                        logger.info("Pub/sub on %s reconnected", channel)
                        if on_reconnect is not None:
                            await on_reconnect()
                    if msg and msg.get("type") == "message":
                        data = msg.get("data")
                        if isinstance(data, bytes):
                            data = data.decode("utf-8")
                        await on_message(data)

            async def cancel(self_inner):
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except (RedisError, OSError) as exc:
                    logger.debug("Unsubscribe from %s failed: %s", channel, exc)

        return _Sub()

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        key = f"presence:{user_id}"
        await self._redis.set(key, "online", ex=ttl_seconds)

    async def is_online(self, user_id: str) -> bool:
        ttl = await self._redis.ttl(f"presence:{user_id}")
        return bool(ttl and ttl > 0)

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    if settings.REDIS_URL:
        _bus = RedisBus(settings.REDIS_URL)
    else:
        _bus = LocalBus()
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
    _bus = None
