"""Tests for the retry executor."""

from unittest.mock import AsyncMock

import pytest
from structlog.testing import capture_logs

from upload_relay.core.retry import RetryExecutor
from upload_relay.exceptions import (
    OperationExhausted,
    PermanentBackendError,
    TransientNetworkError,
)


def transient(message: str = "connection reset") -> TransientNetworkError:
    return TransientNetworkError(message, operation="test")


@pytest.mark.asyncio
async def test_returns_first_success():
    executor = RetryExecutor(max_retries=2, delay=0)
    operation = AsyncMock(return_value="ok")

    assert await executor.execute(operation) == "ok"
    assert operation.await_count == 1


@pytest.mark.asyncio
async def test_recovers_after_two_transient_failures():
    executor = RetryExecutor(max_retries=2, delay=0)
    operation = AsyncMock(side_effect=[transient(), transient(), "listed"])

    with capture_logs() as logs:
        result = await executor.execute(operation, name="list_objects")

    assert result == "listed"
    assert operation.await_count == 3
    failures = [entry for entry in logs if entry["log_level"] == "warning"]
    assert len(failures) == 2
    assert [entry["attempt"] for entry in failures] == [0, 1]
    assert [entry["remaining"] for entry in failures] == [2, 1]
    assert all(entry["operation"] == "list_objects" for entry in failures)


@pytest.mark.asyncio
async def test_exhausted_after_max_retries_plus_one():
    executor = RetryExecutor(max_retries=2, delay=0)
    last = transient("still down")
    operation = AsyncMock(side_effect=[transient(), transient(), last])

    with pytest.raises(OperationExhausted) as exc_info:
        await executor.execute(operation, name="find_object")

    assert operation.await_count == 3
    assert exc_info.value.attempts == 3
    assert exc_info.value.operation == "find_object"
    assert exc_info.value.last_error is last
    assert exc_info.value.details == "still down"
    assert exc_info.value.__cause__ is last


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried():
    executor = RetryExecutor(max_retries=2, delay=0)
    error = PermanentBackendError("Access Denied", operation="test", code="AccessDenied")
    operation = AsyncMock(side_effect=error)

    with pytest.raises(PermanentBackendError):
        await executor.execute(operation)

    assert operation.await_count == 1


@pytest.mark.asyncio
async def test_unexpected_error_propagates_immediately():
    executor = RetryExecutor(max_retries=2, delay=0)
    operation = AsyncMock(side_effect=ValueError("bad"))

    with pytest.raises(ValueError):
        await executor.execute(operation)

    assert operation.await_count == 1


@pytest.mark.asyncio
async def test_per_call_override_of_retry_bound():
    executor = RetryExecutor(max_retries=5, delay=0)
    operation = AsyncMock(side_effect=transient())

    with pytest.raises(OperationExhausted) as exc_info:
        await executor.execute(operation, max_retries=0)

    assert operation.await_count == 1
    assert exc_info.value.attempts == 1


@pytest.mark.asyncio
async def test_sleeps_between_attempts_only(monkeypatch):
    sleep = AsyncMock()
    monkeypatch.setattr("upload_relay.core.retry.asyncio.sleep", sleep)
    executor = RetryExecutor(max_retries=2, delay=0.25)
    operation = AsyncMock(side_effect=transient())

    with pytest.raises(OperationExhausted):
        await executor.execute(operation)

    assert sleep.await_count == 2
    sleep.assert_awaited_with(0.25)


def test_negative_retry_bound_rejected():
    with pytest.raises(ValueError):
        RetryExecutor(max_retries=-1)
