"""Tests for the messageSent notifier and the in-process bus."""

from __future__ import annotations

import asyncio
import json
import logging

from skillchat.repositories.device_repository import DeviceRepository
from skillchat.utils.notifications import NOTIFICATION_CHANNEL, Notifier, NoopPush
from skillchat.utils.realtime_bus import LocalBus


class RecordingPush:

    enabled = True

    def __init__(self):
        self.sent = []

    async def send_fcm(self, tokens, title, body, data=None):
        self.sent.append((tokens, title, body, data))


class FailingPush(RecordingPush):

    async def send_fcm(self, tokens, title, body, data=None):
        raise ConnectionError("fcm unreachable")


async def _listen(bus, channel):
    received = []

    async def on_message(raw):
        received.append(json.loads(raw))

    sub = await bus.subscribe(channel, on_message)
    task = asyncio.create_task(sub.run())
    return received, sub, task


class TestNotifier:
    async def test_publishes_message_sent(self, db, bus):
        received, sub, task = await _listen(bus, NOTIFICATION_CHANNEL)
        notifier = Notifier(bus, NoopPush(), DeviceRepository(db))

        await notifier.message_sent("alice_bob", "alice", "bob", "hello", "Alice")
        await asyncio.sleep(0.02)
        await sub.cancel()
        await task

        assert received == [{
            "type": "message.sent",
            "conversation_id": "alice_bob",
            "sender_id": "alice",
            "recipient_id": "bob",
        }]

    async def test_pushes_to_offline_recipient(self, db, bus):
        await db["devices"].insert_many([
            {"user_id": "bob", "platform": "fcm", "token": "tok-1"},
            {"user_id": "bob", "platform": "apns", "token": "tok-2"},
        ])
        push = RecordingPush()
        notifier = Notifier(bus, push, DeviceRepository(db))

        await notifier.message_sent("alice_bob", "alice", "bob", "hello there", "Alice")

        assert push.sent == [(["tok-1"], "Alice", "hello there", {"conversation_id": "alice_bob", "from": "alice"})]

    async def test_skips_push_when_online(self, db, bus):
        await db["devices"].insert_one({"user_id": "bob", "platform": "fcm", "token": "tok-1"})
        await bus.set_presence("bob", ttl_seconds=60)
        push = RecordingPush()
        notifier = Notifier(bus, push, DeviceRepository(db))

        await notifier.message_sent("alice_bob", "alice", "bob", "hello")

        assert push.sent == []

    async def test_failure_is_logged_not_raised(self, db, bus, caplog):
        await db["devices"].insert_one({"user_id": "bob", "platform": "fcm", "token": "tok-1"})
        notifier = Notifier(bus, FailingPush(), DeviceRepository(db))

        with caplog.at_level(logging.WARNING, logger="skillchat.utils.notifications"):
            task = notifier.message_sent("alice_bob", "alice", "bob", "hello")
            await asyncio.gather(task, return_exceptions=True)
            await asyncio.sleep(0)

        assert "messageSent notification failed" in caplog.text


class TestLocalBus:
    async def test_fan_out_and_cancel(self):
        bus = LocalBus()
        first, sub1, task1 = await _listen(bus, "conversation:alice_bob")
        second, sub2, task2 = await _listen(bus, "conversation:alice_bob")

        await bus.publish("conversation:alice_bob", json.dumps({"n": 1}))
        await asyncio.sleep(0.01)
        await sub1.cancel()
        await task1
        await bus.publish("conversation:alice_bob", json.dumps({"n": 2}))
        await asyncio.sleep(0.01)
        await sub2.cancel()
        await task2

        assert first == [{"n": 1}]
        assert second == [{"n": 1}, {"n": 2}]

    async def test_presence_expires(self):
        bus = LocalBus()
        await bus.set_presence("bob", ttl_seconds=0)
        assert await bus.is_online("bob") is False
        await bus.set_presence("bob", ttl_seconds=60)
        assert await bus.is_online("bob") is True
