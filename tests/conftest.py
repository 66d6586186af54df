"""Shared fixtures: an in-memory MongoDB and an in-process bus."""

from __future__ import annotations

import asyncio

import pytest
from mongomock_motor import AsyncMongoMockClient

from skillchat.config import settings
from skillchat.database.connection import set_database
from skillchat.repositories.conversation_repository import ConversationRepository
from skillchat.repositories.device_repository import DeviceRepository
from skillchat.repositories.message_repository import MessageRepository
from skillchat.repositories.user_repository import UserRepository
from skillchat.services.chat_service import ChatService
from skillchat.services.subscriptions import SubscriptionHub
from skillchat.utils.notifications import Notifier, NoopPush
from skillchat.utils.realtime_bus import LocalBus


@pytest.fixture(autouse=True)
def _fast_timings(monkeypatch):
    monkeypatch.setattr(settings, "SEQUENCE_GAP_TIMEOUT_SECONDS", 0.3)
    monkeypatch.setattr(settings, "SUBSCRIPTION_REFRESH_SECONDS", 5.0)
    monkeypatch.setattr(settings, "READ_RETRY_BACKOFF_SECONDS", 0.01)
    monkeypatch.setattr(settings, "STORE_TIMEOUT_SECONDS", 2.0)


@pytest.fixture
def db():
    database = AsyncMongoMockClient()["skillchat_test"]
    set_database(database)
    return database


@pytest.fixture
async def users(db):
    await db["users"].insert_many([
        {"_id": "alice", "display_name": "Alice"},
        {"_id": "bob", "email": "bob@example.com"},
        {"_id": "carol", "display_name": "Carol"},
    ])


@pytest.fixture
def bus():
    return LocalBus()


@pytest.fixture
async def hub(db, bus):
    hub = SubscriptionHub(bus, MessageRepository(db), ConversationRepository(db))
    yield hub
    await hub.close()


@pytest.fixture
def service(db, bus, hub):
    return ChatService(
        ConversationRepository(db),
        MessageRepository(db),
        UserRepository(db),
        hub,
        Notifier(bus, NoopPush(), DeviceRepository(db)),
    )


@pytest.fixture
async def alice_bob(service, users):
    return await service.ensure_conversation("alice_bob", "alice", "bob")


@pytest.fixture
def next_event():
    async def _next(subscription, timeout: float = 1.0):
        return await asyncio.wait_for(subscription.__anext__(), timeout)

    return _next
