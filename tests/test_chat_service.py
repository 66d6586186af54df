"""End-to-end behaviour of ChatService against the in-memory store."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

import pytest
from pymongo.errors import AutoReconnect

from skillchat.config import settings
from skillchat.exceptions import ConversationNotFound, InvalidMessage, NotParticipant, SendFailed
from skillchat.services.chat_service import inbox_item


class TestAliceAndBob:
    async def test_full_exchange(self, service, users):
        cid = service.derive_id("bob", "alice")
        assert cid == "alice_bob"

        await service.ensure_conversation(cid, "alice", "bob")
        await service.send_message(cid, "alice", "Hi Bob")
        await service.send_message(cid, "alice", "Are you free?")

        bob_inbox, _ = await service.list_conversations("bob")
        assert bob_inbox[0]["unread_count"] == 2
        assert bob_inbox[0]["last_message"] == "Are you free?"
        assert bob_inbox[0]["other_user_name"] == "Alice"
        assert bob_inbox[0]["is_last_message_mine"] is False

        await service.mark_conversation_read(cid, "bob")
        await service.send_message(cid, "bob", "Yes!")

        alice_inbox, _ = await service.list_conversations("alice")
        bob_inbox, _ = await service.list_conversations("bob")
        assert alice_inbox[0]["unread_count"] == 1
        assert alice_inbox[0]["is_last_message_mine"] is False
        assert bob_inbox[0]["unread_count"] == 0
        assert bob_inbox[0]["is_last_message_mine"] is True

        history, _ = await service.get_history(cid, "alice")
        assert [(m["seq"], m["sender_id"], m["read"]) for m in history] == [
            (1, "alice", True),
            (2, "alice", True),
            (3, "bob", False),
        ]


class TestSendMessage:
    @pytest.mark.parametrize("body", ["", "   ", None])
    async def test_empty_body_rejected(self, service, alice_bob, body, db):
        with pytest.raises(InvalidMessage):
            await service.send_message("alice_bob", "alice", body)
        assert await db["messages"].count_documents({}) == 0

    async def test_oversized_body_rejected(self, service, alice_bob, monkeypatch):
        monkeypatch.setattr(settings, "MAX_MESSAGE_LENGTH", 10)
        with pytest.raises(InvalidMessage):
            await service.send_message("alice_bob", "alice", "x" * 11)

    async def test_outsider_cannot_send(self, service, alice_bob, db):
        with pytest.raises(NotParticipant):
            await service.send_message("alice_bob", "carol", "let me in")
        assert await db["messages"].count_documents({}) == 0

    async def test_uninitialised_conversation(self, service, users):
        with pytest.raises(ConversationNotFound):
            await service.send_message("alice_carol", "alice", "hello")

    async def test_failed_append_leaves_counters_untouched(self, service, alice_bob, db, monkeypatch):
        async def broken(**kwargs):
            raise AutoReconnect("connection reset")

        monkeypatch.setattr(service.message_log._message_repo, "save_message", broken)

        with pytest.raises(SendFailed):
            await service.send_message("alice_bob", "alice", "hello")

        conversation = await db["conversations"].find_one({"_id": "alice_bob"})
        assert conversation["unread_counts"] == {"alice": 0, "bob": 0}
        assert conversation["last_message"] == ""

    async def test_counter_failure_does_not_fail_the_send(self, service, alice_bob, db, monkeypatch):
        async def broken(*args, **kwargs):
            raise AutoReconnect("connection reset")

        monkeypatch.setattr(service.read_tracker._conversation_repo, "apply_new_message", broken)

        result = await service.send_message("alice_bob", "alice", "hello")

        assert result["message"]["seq"] == 1
        assert result["conversation"] is None
        assert await db["messages"].count_documents({}) == 1

    async def test_ack_carries_client_id(self, service, alice_bob):
        result = await service.send_message("alice_bob", "alice", "hello", client_message_id="tmp-1")

        assert result["ack"] == {
            "message_id": result["message"]["id"],
            "conversation_id": "alice_bob",
            "seq": 1,
            "client_message_id": "tmp-1",
        }

    async def test_sender_name_from_profile(self, service, alice_bob):
        result = await service.send_message("alice_bob", "bob", "hi")
        assert result["message"]["sender_name"] == "bob@example.com"

    async def test_notifies_recipient_once_per_message(self, service, alice_bob, monkeypatch):
        calls = []
        monkeypatch.setattr(service._notifier, "message_sent", lambda *args: calls.append(args))

        await service.send_message("alice_bob", "alice", "hello", client_message_id="c-1")
        await service.send_message("alice_bob", "alice", "hello", client_message_id="c-1")

        assert calls == [("alice_bob", "alice", "bob", "hello", "Alice")]


class TestQueries:
    async def test_inbox_newest_first(self, service, users):
        await service.ensure_conversation("alice_bob", "alice", "bob")
        await service.ensure_conversation("alice_carol", "alice", "carol")
        await service.send_message("alice_bob", "bob", "older")
        await asyncio.sleep(0.01)
        await service.send_message("alice_carol", "carol", "newer")

        items, next_cursor = await service.list_conversations("alice")

        assert [item["conversation_id"] for item in items] == ["alice_carol", "alice_bob"]
        assert next_cursor is None

    async def test_inbox_page_cursor_when_full(self, service, users):
        await service.ensure_conversation("alice_bob", "alice", "bob")
        await service.ensure_conversation("alice_carol", "alice", "carol")

        items, next_cursor = await service.list_conversations("alice", limit=1)

        assert len(items) == 1
        assert next_cursor is not None
        assert next_cursor.endswith(":" + items[0]["conversation_id"])

    async def test_inbox_tolerates_partial_participants(self, service, users, db):
        await db["conversations"].insert_one({
            "_id": "alice_bob",
            "participants": ["alice"],
            "participant_names": {"alice": "Alice"},
            "last_message": "",
            "last_message_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
            "unread_counts": {"alice": 0},
            "revision": 1,
        })
        await service.ensure_conversation("alice_carol", "alice", "carol")

        items, _ = await service.list_conversations("alice")

        by_id = {item["conversation_id"]: item for item in items}
        assert set(by_id) == {"alice_bob", "alice_carol"}
        assert by_id["alice_bob"]["other_user_id"] == "bob"
        assert by_id["alice_bob"]["other_user_name"] == settings.PLACEHOLDER_DISPLAY_NAME
        assert by_id["alice_carol"]["other_user_name"] == "Carol"

    async def test_inbox_skips_unrecoverable_rows(self, service, users, db, caplog):
        await db["conversations"].insert_one({
            "_id": "legacy-room",
            "participants": ["alice"],
            "participant_names": {},
            "last_message_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
            "revision": 1,
        })
        await service.ensure_conversation("alice_carol", "alice", "carol")

        with caplog.at_level(logging.WARNING, logger="skillchat.services.chat_service"):
            items, _ = await service.list_conversations("alice")

        assert [item["conversation_id"] for item in items] == ["alice_carol"]
        assert "Skipping inbox row legacy-room" in caplog.text

    async def test_send_on_partial_record_counts_for_counterpart(self, service, users, db):
        await db["conversations"].insert_one({
            "_id": "alice_bob",
            "participants": ["alice"],
            "participant_names": {"alice": "Alice"},
            "last_message": "",
            "last_message_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
            "unread_counts": {"alice": 0},
            "message_seq": 0,
            "revision": 1,
        })

        await service.send_message("alice_bob", "alice", "still here")

        stored = await db["conversations"].find_one({"_id": "alice_bob"})
        assert stored["unread_counts"]["bob"] == 1

    async def test_history_requires_participant(self, service, alice_bob):
        with pytest.raises(NotParticipant):
            await service.get_history("alice_bob", "carol")


class TestInboxItem:
    def test_projection_for_viewer(self):
        conversation = {
            "id": "alice_bob",
            "participants": ["alice", "bob"],
            "participant_names": {"alice": "alice", "bob": ""},
            "last_message": "hey",
            "last_message_at": "2026-10-19T10:00:00+00:00",
            "last_message_sender": "bob",
            "unread_counts": {"alice": 3},
        }

        assert inbox_item(conversation, "alice") == {
            "conversation_id": "alice_bob",
            "other_user_id": "bob",
            "other_user_name": settings.PLACEHOLDER_DISPLAY_NAME,
            "other_user_initial": settings.PLACEHOLDER_DISPLAY_NAME[0].upper(),
            "last_message": "hey",
            "last_message_at": "2026-10-19T10:00:00+00:00",
            "unread_count": 3,
            "is_last_message_mine": False,
        }
        assert inbox_item(conversation, "bob")["other_user_initial"] == "A"
        assert inbox_item(conversation, "bob")["unread_count"] == 0
