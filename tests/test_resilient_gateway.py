"""
Resilient Gateway Tests
Store retry and reconnection, processor retry budget, and query timeouts.
"""

import asyncio
from unittest.mock import AsyncMock, call

import pytest
from sqlalchemy.exc import OperationalError

from config import Config
from services.error_classifier import ErrorClassificationService
from services.event_channel import EngineEvent, EventChannel
from services.resilient_gateway import ResilientGateway
from utils.exceptions import RetryableProcessorError, RetryBudgetExhausted, TerminalProcessorError


def flaky(result, failures=1, error_factory=lambda: ConnectionError("connection terminated unexpectedly")):
    """Operation that fails `failures` times before returning result"""
    state = {"calls": 0}

    async def operation():
        state["calls"] += 1
        if state["calls"] <= failures:
            raise error_factory()
        return result

    operation.state = state
    return operation


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def make_gateway(sleep):
    def _make(ping=None, **overrides):
        options = {
            "events": EventChannel(),
            "classifier": ErrorClassificationService(window_seconds=60, threshold=100),
            "ping": ping,
            "max_reconnect_attempts": 3,
            "reconnect_delay": 5,
            "operation_retries": 3,
            "retry_delay": 1,
            "processor_retries": 3,
            "processor_retry_delay": 1,
            "query_timeout": 0.05,
            "sleep": sleep,
        }
        options.update(overrides)
        return ResilientGateway(**options)

    return _make


class TestStoreReconnection:

    @pytest.mark.asyncio
    async def test_operation_survives_store_outage(self, make_gateway, sleep):
        ping = AsyncMock(side_effect=[ConnectionError("ECONNREFUSED"), True])
        gateway = make_gateway(ping=ping)
        operation = flaky("saved")

        result = await gateway.execute_with_retry(operation, description="save job")

        assert result == "saved"
        assert operation.state["calls"] == 2
        assert ping.await_count == 2
        # One reconnect wait between pings, then the operation retry delay
        assert sleep.await_args_list == [call(5), call(1)]
        assert gateway.events.events_of(EngineEvent.STORE_RECONNECTED) == [{"attempts": 2}]
        assert gateway.is_reconnecting is False
        assert gateway.metrics["reconnections"] == 1

    @pytest.mark.asyncio
    async def test_queued_operations_wait_for_single_reconnect(self, make_gateway):
        ping_calls = {"count": 0}

        async def ping():
            ping_calls["count"] += 1
            await asyncio.sleep(0.01)
            if ping_calls["count"] == 1:
                raise ConnectionError("server closed the connection")
            return True

        gateway = make_gateway(ping=ping)
        first, second = flaky("first"), flaky("second")

        results = await asyncio.gather(
            gateway.execute_with_retry(first),
            gateway.execute_with_retry(second),
        )

        assert results == ["first", "second"]
        assert ping_calls["count"] == 2
        assert len(gateway.events.events_of(EngineEvent.STORE_RECONNECTED)) == 1

    @pytest.mark.asyncio
    async def test_reconnection_gives_up_after_bound(self, make_gateway, sleep):
        ping = AsyncMock(side_effect=ConnectionError("could not connect to server"))
        gateway = make_gateway(ping=ping)

        reconnected = await gateway.handle_connection_error(ConnectionError("connection reset"))

        assert reconnected is False
        assert ping.await_count == 3
        assert sleep.await_count == 2
        failed = gateway.events.events_of(EngineEvent.STORE_RECONNECTION_FAILED)
        assert failed[0]["attempts"] == 3
        assert gateway.metrics["reconnection_failures"] == 1
        assert gateway.get_connection_status()["is_reconnecting"] is False

    @pytest.mark.asyncio
    async def test_concurrent_reconnect_request_is_ignored(self, make_gateway):
        gateway = make_gateway(ping=AsyncMock(return_value=True))
        gateway.is_reconnecting = True
        assert await gateway.handle_connection_error(ConnectionError("reset")) is None

    @pytest.mark.asyncio
    async def test_ping_timeout_fails_closed(self, make_gateway):
        async def hanging_ping():
            await asyncio.sleep(1)

        gateway = make_gateway(ping=hanging_ping)
        assert await gateway.validate_connection() is False
        assert gateway.metrics["timeouts"] == 1

    @pytest.mark.asyncio
    async def test_health_check_starts_background_reconnect(self, make_gateway):
        ping = AsyncMock(side_effect=[ConnectionError("connection refused"), True, True])
        gateway = make_gateway(ping=ping)

        status = await gateway.health_check()
        assert status["healthy"] is False
        await gateway._reconnect_task

        assert gateway._reconnect_task.result() is True
        assert (await gateway.health_check())["healthy"] is True

    @pytest.mark.asyncio
    async def test_wait_for_reconnection(self, make_gateway):
        async def hanging_ping():
            await asyncio.sleep(1)

        gateway = make_gateway(ping=hanging_ping)
        assert await gateway.wait_for_reconnection(timeout=0.01) is True

        task = asyncio.create_task(gateway.handle_connection_error(ConnectionError("connection reset")))
        await asyncio.sleep(0)
        assert await gateway.wait_for_reconnection(timeout=0.01) is False
        assert await gateway.wait_for_reconnection(timeout=2) is True
        assert await task is False

    @pytest.mark.asyncio
    async def test_default_ping_against_real_store(self, session_factory, make_gateway):
        gateway = make_gateway(session_factory=session_factory, query_timeout=2)
        assert await gateway.validate_connection() is True


class TestStoreRetry:

    @pytest.mark.asyncio
    async def test_lock_contention_retried_without_reconnect(self, make_gateway, sleep):
        ping = AsyncMock(return_value=True)
        gateway = make_gateway(ping=ping)
        operation = flaky(
            "ok", failures=2,
            error_factory=lambda: OperationalError("UPDATE jobs", {}, Exception("database is locked")),
        )

        assert await gateway.execute_with_retry(operation) == "ok"
        assert operation.state["calls"] == 3
        ping.assert_not_awaited()
        assert gateway.metrics["store_retries"] == 2

    @pytest.mark.asyncio
    async def test_retry_budget_reraises_last_error(self, make_gateway):
        gateway = make_gateway(ping=AsyncMock(return_value=True))
        operation = flaky(
            "never", failures=10,
            error_factory=lambda: OperationalError("UPDATE jobs", {}, Exception("deadlock detected")),
        )

        with pytest.raises(OperationalError):
            await gateway.execute_with_retry(operation, retries=2)
        assert operation.state["calls"] == 2

    @pytest.mark.asyncio
    async def test_business_errors_are_not_retried(self, make_gateway):
        gateway = make_gateway(ping=AsyncMock(return_value=True))
        operation = flaky("never", failures=1, error_factory=lambda: ValueError("bad data"))

        with pytest.raises(ValueError):
            await gateway.execute_with_retry(operation)
        assert operation.state["calls"] == 1


class TestProcessorRetry:

    @pytest.mark.asyncio
    async def test_retryable_error_then_success_with_backoff(self, make_gateway, sleep):
        gateway = make_gateway(processor_backoff_base=2)
        operation = flaky({"id": "pi_1"}, failures=2, error_factory=lambda: RetryableProcessorError("rate limited"))

        assert await gateway.call_processor(operation) == {"id": "pi_1"}
        assert sleep.await_args_list == [call(1), call(2)]
        assert gateway.metrics["processor_retries"] == 2

    @pytest.mark.asyncio
    async def test_exhaustion_raises_retry_budget_exhausted(self, make_gateway):
        gateway = make_gateway()
        operation = flaky("never", failures=10, error_factory=lambda: RetryableProcessorError("503"))

        with pytest.raises(RetryBudgetExhausted) as exc_info:
            await gateway.call_processor(operation, description="create transfer")

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.__cause__, RetryableProcessorError)
        assert operation.state["calls"] == 3

    @pytest.mark.asyncio
    async def test_terminal_error_surfaces_immediately(self, make_gateway, sleep):
        gateway = make_gateway()
        operation = flaky("never", failures=10, error_factory=lambda: TerminalProcessorError("card_declined"))

        with pytest.raises(TerminalProcessorError):
            await gateway.call_processor(operation)
        assert operation.state["calls"] == 1
        sleep.assert_not_awaited()


class TestQueryTimeout:

    @pytest.mark.asyncio
    async def test_fail_open_returns_fallback(self, make_gateway):
        gateway = make_gateway()

        async def slow():
            await asyncio.sleep(1)
            return ["late"]

        assert await gateway.run_with_timeout(slow, fail_open=True, fallback=[]) == []

    @pytest.mark.asyncio
    async def test_fail_closed_raises(self, make_gateway):
        gateway = make_gateway()

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(asyncio.TimeoutError):
            await gateway.run_with_timeout(slow)
        assert gateway.metrics["timeouts"] == 1

    @pytest.mark.asyncio
    async def test_fast_query_passes_through(self, make_gateway):
        gateway = make_gateway()

        async def fast():
            return 7

        assert await gateway.run_with_timeout(fast, fail_open=True, fallback=0) == 7

    @pytest.mark.asyncio
    async def test_zero_timeout_is_not_replaced_by_default(self, make_gateway):
        gateway = make_gateway(query_timeout=5)

        async def slow():
            await asyncio.sleep(1)
            return ["late"]

        assert await gateway.run_with_timeout(slow, timeout=0, fail_open=True, fallback=[]) == []
        assert make_gateway(query_timeout=0).query_timeout == 0


class TestSettings:

    @pytest.mark.parametrize("setting", ["max_reconnect_attempts", "operation_retries", "processor_retries"])
    def test_zero_attempts_rejected(self, make_gateway, setting):
        with pytest.raises(ValueError, match=setting):
            make_gateway(**{setting: 0})

    def test_negative_timeout_rejected(self, make_gateway):
        with pytest.raises(ValueError):
            make_gateway(query_timeout=-1)

    def test_unset_values_use_config(self, make_gateway):
        gateway = make_gateway(processor_retries=None, query_timeout=None)
        assert gateway.processor_retries == Config.PROCESSOR_MAX_RETRIES
        assert gateway.query_timeout == Config.STORE_QUERY_TIMEOUT

    @pytest.mark.asyncio
    async def test_zero_retries_per_call_rejected(self, make_gateway):
        operation = AsyncMock(return_value="ok")
        gateway = make_gateway()

        with pytest.raises(ValueError):
            await gateway.call_processor(operation, retries=0)
        with pytest.raises(ValueError):
            await gateway.execute_with_retry(operation, retries=0)
        operation.assert_not_awaited()
