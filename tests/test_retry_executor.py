"""
Tests for the retry executor: backoff, quota short-circuit and rate accounting.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from gemini_service import GeminiServiceError, QuotaExceededError, RateLimitError
from progress_events import ProgressChannel
from rate_tracker import RateTracker
from retry_executor import ErrorKind, RetryExecutor, RetryPolicy, classify_failure


@pytest.fixture
def tracker():
    return RateTracker(clock=lambda: 100.0)


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def executor(tracker, sleep):
    return RetryExecutor(tracker, ProgressChannel(), sleep=sleep, language="en")


class TestClassifyFailure:
    """Failure classification by type and message"""

    def test_typed_errors(self):
        assert classify_failure(QuotaExceededError("x")) is ErrorKind.QUOTA_EXHAUSTED
        assert classify_failure(RateLimitError("x")) is ErrorKind.RATE_LIMITED

    @pytest.mark.parametrize("message", [
        "429 Too Many Requests",
        "RESOURCE_EXHAUSTED: try later",
        "Resource has been exhausted (e.g. check quota).",
    ])
    def test_rate_limit_signatures(self, message):
        assert classify_failure(Exception(message)) is ErrorKind.RATE_LIMITED

    def test_quota_signature_wins_over_rate_signature(self):
        error = Exception("429 RESOURCE_EXHAUSTED: Quota exceeded for metric")
        assert classify_failure(error) is ErrorKind.QUOTA_EXHAUSTED

    def test_other(self):
        assert classify_failure(ValueError("boom")) is ErrorKind.OTHER


class TestRetryExecutor:
    """Retry behaviour"""

    @pytest.mark.asyncio
    async def test_success_first_try(self, executor, tracker, sleep):
        work = AsyncMock(return_value="ok")

        assert await executor.execute(work) == "ok"
        assert work.await_count == 1
        assert len(tracker.timestamps) == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backoff_doubles_then_succeeds(self, executor, tracker, sleep):
        work = AsyncMock(side_effect=[Exception("429"), Exception("429"), "ok"])
        messages = []
        policy = RetryPolicy(max_attempts=3, initial_delay=2.0, on_retry_message=messages.append)

        result = await executor.execute(work, policy)

        assert result == "ok"
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]
        assert len(tracker.timestamps) == 3
        assert len(messages) == 2
        assert "2 seconds" in messages[0] and "(1/3)" in messages[0]
        assert "4 seconds" in messages[1] and "(2/3)" in messages[1]

    @pytest.mark.asyncio
    async def test_exhausted_budget_propagates_last_error(self, executor, tracker, sleep):
        errors = [RateLimitError("429 first"), RateLimitError("429 second"), RateLimitError("429 third")]
        work = AsyncMock(side_effect=errors)

        with pytest.raises(RateLimitError) as exc_info:
            await executor.execute(work, RetryPolicy(max_attempts=3, initial_delay=1.0))

        assert exc_info.value is errors[-1]
        assert work.await_count == 3
        assert sleep.await_count == 2
        assert len(tracker.timestamps) == 3

    @pytest.mark.asyncio
    async def test_quota_error_is_not_retried(self, executor, tracker, sleep):
        error = Exception("Quota exceeded for this project")
        work = AsyncMock(side_effect=error)
        on_retry = MagicMock()

        with pytest.raises(Exception) as exc_info:
            await executor.execute(work, RetryPolicy(on_retry_message=on_retry))

        assert exc_info.value is error
        assert work.await_count == 1
        assert len(tracker.timestamps) == 1
        sleep.assert_not_awaited()
        on_retry.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_error_is_not_retried(self, executor, sleep):
        error = GeminiServiceError("bad things")
        work = AsyncMock(side_effect=error)

        with pytest.raises(GeminiServiceError) as exc_info:
            await executor.execute(work)

        assert exc_info.value is error
        assert work.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retry_emits_progress_events(self, tracker, sleep):
        channel = ProgressChannel()
        events = []
        channel.add_listener(events.append)
        executor = RetryExecutor(tracker, channel, sleep=sleep, language="en")
        work = AsyncMock(side_effect=[Exception("resource_exhausted"), "ok"])

        await executor.execute(work, RetryPolicy(max_attempts=2, initial_delay=0.5), stage="outline")

        assert len(events) == 1
        assert events[0].stage == "outline"
        assert events[0].attempt == 1

    def test_policy_validation(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        assert RetryPolicy(initial_delay=2.0).delay_for(3) == 8.0
