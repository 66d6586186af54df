"""Tests for logging_config: context stamping and idempotent setup."""

from __future__ import annotations

import logging

import pytest

from skillchat.logging_config import ContextFilter, ContextFormatter, conversation_id_var, setup_logging


def _record(msg="hello"):
    return logging.LogRecord("skillchat.test", logging.INFO, __file__, 10, msg, None, None)


class TestContextFilter:
    def test_stamps_role_and_conversation(self):
        token = conversation_id_var.set("alice_bob")
        try:
            record = _record()
            assert ContextFilter("Server").filter(record) is True
            assert record.role == "Server"
            assert record.conversation_id == "alice_bob"
        finally:
            conversation_id_var.reset(token)

    def test_empty_without_conversation(self):
        record = _record()
        ContextFilter("Server").filter(record)
        assert record.conversation_id == ""


class TestContextFormatter:
    def test_includes_conversation_prefix(self):
        record = _record("Appended seq=4")
        record.role = "Server"
        record.conversation_id = "alice_bob"

        line = ContextFormatter().format(record)

        assert "[Server][Conv alice_bob][INFO]" in line
        assert line.endswith("skillchat.test:10 - Appended seq=4")

    def test_omits_missing_context(self):
        record = _record()
        line = ContextFormatter().format(record)
        assert "[Conv" not in line
        assert "[INFO]" in line


class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def _restore_root(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        for handler in root.handlers:
            if handler not in handlers:
                root.removeHandler(handler)
                handler.close()
        root.setLevel(level)

    def test_idempotent(self):
        setup_logging("Server")
        setup_logging("Server")
        names = [h.name for h in logging.getLogger().handlers]
        assert names.count("_skillchat_stream") == 1

    def test_file_handler(self, tmp_path, monkeypatch):
        from skillchat.config import settings

        log_file = tmp_path / "logs" / "chat.log"
        monkeypatch.setattr(settings, "LOG_FILE", str(log_file))

        setup_logging("Server")
        logging.getLogger("skillchat.test").warning("written to disk")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert "written to disk" in log_file.read_text(encoding="utf-8")
