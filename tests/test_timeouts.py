"""Tests for utils/timeouts.py."""

from __future__ import annotations

import asyncio

import pytest
from pymongo.errors import ExecutionTimeout, NetworkTimeout

from skillchat.exceptions import OperationTimeout
from skillchat.utils.timeouts import bounded, retry_read


class TestBounded:
    async def test_returns_result_in_time(self):
        async def quick():
            return 42

        assert await bounded(quick(), "quick read", timeout=1) == 42

    async def test_deadline_raises_operation_timeout(self):
        with pytest.raises(OperationTimeout) as excinfo:
            await bounded(asyncio.sleep(1), "slow read", timeout=0.01)

        assert excinfo.value.operation == "slow read"
        assert excinfo.value.status_code == 504
        assert excinfo.value.code == "timeout"

    @pytest.mark.parametrize("error", [NetworkTimeout("socket timed out"), ExecutionTimeout("operation exceeded time limit")])
    async def test_driver_timeout_is_operation_timeout(self, error):
        async def driver_call():
            raise error

        with pytest.raises(OperationTimeout) as excinfo:
            await bounded(driver_call(), "message insert", timeout=1)

        assert excinfo.value.operation == "message insert"
        assert excinfo.value.__cause__ is error


class TestRetryRead:
    async def test_retries_until_success(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OperationTimeout("profile read")
            return "ok"

        assert await retry_read(flaky, "profile read", attempts=3, backoff=0) == "ok"
        assert len(calls) == 3

    async def test_gives_up_after_attempts(self):
        calls = []

        async def always_slow():
            calls.append(1)
            raise OperationTimeout("inbox read")

        with pytest.raises(OperationTimeout):
            await retry_read(always_slow, "inbox read", attempts=2, backoff=0)
        assert len(calls) == 2

    async def test_other_errors_are_not_retried(self):
        calls = []

        async def broken():
            calls.append(1)
            raise ValueError("bad query")

        with pytest.raises(ValueError):
            await retry_read(broken, "inbox read", attempts=3, backoff=0)
        assert len(calls) == 1
