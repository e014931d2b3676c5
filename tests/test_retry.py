# file: tests/test_retry.py
import asyncio
import pytest
from unittest.mock import AsyncMock

import aiohttp

from app.errors import RemoteServiceError
from app.tools.retry import FailedAttempt, RetryPolicy, is_retryable


def recording_sleep(delays):
    async def sleep(delay):
        delays.append(delay)
    return sleep


def test_classification():
    assert is_retryable(asyncio.TimeoutError())
    assert is_retryable(ConnectionResetError())
    assert is_retryable(aiohttp.ClientConnectionError("refused"))
    assert is_retryable(RemoteServiceError("throttled", status=429))
    assert is_retryable(RemoteServiceError("bad gateway", status=502))
    assert not is_retryable(RemoteServiceError("bad request", status=400))
    assert not is_retryable(ValueError("broken payload"))
    assert not is_retryable(asyncio.CancelledError())


def test_delays_double_up_to_the_cap():
    policy = RetryPolicy(attempts=5, base_delay=1.0, max_delay=4.0)
    assert [policy.delay_for(k) for k in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 4.0]


@pytest.mark.asyncio
async def test_transient_failure_is_attempted_three_times():
    delays = []
    op = AsyncMock(side_effect=RemoteServiceError("unavailable", status=503))
    policy = RetryPolicy(attempts=3, base_delay=1.0, sleep=recording_sleep(delays))

    with pytest.raises(RemoteServiceError):
        await policy.execute(op)

    assert op.await_count == 3
    assert delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_fatal_failure_is_attempted_once():
    delays = []
    op = AsyncMock(side_effect=RemoteServiceError("rejected", status=400))
    policy = RetryPolicy(attempts=3, sleep=recording_sleep(delays))

    with pytest.raises(RemoteServiceError):
        await policy.execute(op)

    assert op.await_count == 1
    assert delays == []


@pytest.mark.asyncio
async def test_recovers_and_reports_each_failed_attempt():
    seen = []
    op = AsyncMock(side_effect=[asyncio.TimeoutError(), {"ok": True}])
    policy = RetryPolicy(attempts=3, on_failed_attempt=seen.append, sleep=recording_sleep([]))

    assert await policy.execute(op, "payload") == {"ok": True}
    op.assert_awaited_with("payload")
    assert len(seen) == 1
    assert isinstance(seen[0], FailedAttempt)
    assert seen[0].attempt == 1 and seen[0].retryable and seen[0].delay == 1.0


@pytest.mark.asyncio
async def test_cancellation_is_never_retried():
    op = AsyncMock(side_effect=asyncio.CancelledError())
    policy = RetryPolicy(attempts=3, sleep=recording_sleep([]))

    with pytest.raises(asyncio.CancelledError):
        await policy.execute(op)
    assert op.await_count == 1
