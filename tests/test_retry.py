"""
Tests for RetryExecutor.
"""
import pytest
from unittest.mock import AsyncMock

from ladderbot.infra.errors import AuthError, ExchangeError, InsufficientFundsError, TransportError
from ladderbot.infra.retry import RetryExecutor


def make_executor(events=None, max_attempts=3):
    sleep = AsyncMock()
    executor = RetryExecutor(max_attempts=max_attempts, base_delay=0.5, sleep=sleep, log_event=events)
    return executor, sleep


class TestRetryExecutor:

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, events):
        executor, sleep = make_executor(events)
        op = AsyncMock(return_value=42)
        assert await executor.execute(op) == 42
        assert op.await_count == 1
        sleep.assert_not_awaited()
        assert events.recorded == []

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, events):
        executor, sleep = make_executor(events)
        op = AsyncMock(side_effect=[TransportError("reset"), ExchangeError("500"), "ok"])
        assert await executor.execute(op, label="get_positions") == "ok"
        assert op.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]
        assert events.names() == ["retry_attempt", "retry_attempt"]
        assert events.recorded[0][1]["where"] == "get_positions"

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error_without_final_wait(self, events):
        executor, sleep = make_executor(events)
        errors = [TransportError("a"), TransportError("b"), TransportError("c")]
        op = AsyncMock(side_effect=errors)
        with pytest.raises(TransportError, match="c"):
            await executor.execute(op)
        assert op.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_final_error_is_the_raised_instance(self, events):
        executor, _ = make_executor(events, max_attempts=2)
        final = ExchangeError("still 500")
        op = AsyncMock(side_effect=[TransportError("reset"), final])
        with pytest.raises(ExchangeError) as info:
            await executor.execute(op)
        assert info.value is final
        assert events.names() == ["retry_attempt"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exc", [AuthError("bad key", status=401), InsufficientFundsError("margin")])
    async def test_non_retryable_propagates_immediately(self, events, exc):
        executor, sleep = make_executor(events)
        op = AsyncMock(side_effect=exc)
        with pytest.raises(type(exc)):
            await executor.execute(op)
        assert op.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_per_call_attempt_override(self, events):
        executor, sleep = make_executor(events)
        op = AsyncMock(side_effect=TransportError("down"))
        with pytest.raises(TransportError):
            await executor.execute(op, max_attempts=1)
        assert op.await_count == 1
        sleep.assert_not_awaited()

    def test_delay_doubles(self):
        executor = RetryExecutor(base_delay=0.5)
        assert [executor.delay_for(n) for n in range(4)] == [0.5, 1.0, 2.0, 4.0]

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryExecutor(max_attempts=0)
