"""
Tests for the shared deadline.
"""

import asyncio

import pytest

from agentwallet.core.deadline import Deadline
from agentwallet.core.errors import OperationTimeoutError


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestDeadline:
    def test_remaining_and_cap(self):
        clock = FakeClock()
        deadline = Deadline(10, clock=clock)
        clock.now += 4
        assert deadline.remaining() == 6
        assert deadline.timeout(cap=2) == 2
        assert not deadline.expired
        clock.now += 6
        assert deadline.expired
        assert deadline.remaining() == 0

    def test_bound_times_out(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(OperationTimeoutError) as exc:
            asyncio.run(Deadline(0.01).bound(slow(), "GRANT_TIMEOUT", "too slow", {"a": 1}))
        assert exc.value.code == "GRANT_TIMEOUT"
        assert exc.value.details == {"a": 1, "timeoutSeconds": 0.01}
        assert exc.value.retryable

    def test_bound_when_already_expired(self):
        calls = []

        async def work():
            calls.append(1)

        async def go():
            await Deadline(0).bound(work(), "SETTLEMENT_STATUS_TIMEOUT", "expired")

        with pytest.raises(OperationTimeoutError):
            asyncio.run(go())
        assert calls == []

    def test_bound_returns_result(self):
        async def quick():
            return 42

        assert asyncio.run(Deadline(1).bound(quick(), "X", "x")) == 42
