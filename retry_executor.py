"""
Retry policy for outbound AI calls.

Rate-limited failures are retried with exponential backoff; quota failures and
everything else propagate at once, unchanged.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from gemini_service import (
    QUOTA_SIGNATURES,
    RATE_LIMIT_SIGNATURES,
    QuotaExceededError,
    RateLimitError,
)
from localization import DEFAULT_LANGUAGE, get_message
from progress_events import ProgressChannel
from rate_tracker import RateTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(Enum):
    """How a failure is treated by the executor"""
    RATE_LIMITED = "rate_limited"
    QUOTA_EXHAUSTED = "quota_exhausted"
    OTHER = "other"


def classify_failure(error: Exception) -> ErrorKind:
    """Classify by type first, then by message signature"""
    if isinstance(error, QuotaExceededError):
        return ErrorKind.QUOTA_EXHAUSTED
    if isinstance(error, RateLimitError):
        return ErrorKind.RATE_LIMITED

    message = str(error).lower()
    if any(signature in message for signature in QUOTA_SIGNATURES):
        return ErrorKind.QUOTA_EXHAUSTED
    if any(signature in message for signature in RATE_LIMIT_SIGNATURES):
        return ErrorKind.RATE_LIMITED
    return ErrorKind.OTHER


@dataclass
class RetryPolicy:
    """Retry budget for one unit of work"""
    max_attempts: int = 3
    initial_delay: float = 2.0
    on_retry_message: Optional[Callable[[str], None]] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.initial_delay < 0:
            raise ValueError(f"initial_delay cannot be negative, got {self.initial_delay}")

    def delay_for(self, attempt: int) -> float:
        """Wait after failed attempt ``attempt`` (1-based)"""
        return self.initial_delay * (2 ** (attempt - 1))


class RetryExecutor:
    """Runs units of work under a RetryPolicy"""

    def __init__(self, rate_tracker: RateTracker, progress: Optional[ProgressChannel] = None,
                 default_policy: Optional[RetryPolicy] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 language: str = DEFAULT_LANGUAGE):
        self.rate_tracker = rate_tracker
        self.progress = progress
        self.default_policy = default_policy or RetryPolicy()
        self.language = language
        self._sleep = sleep

    async def execute(self, unit_of_work: Callable[[], Awaitable[T]],
                      policy: Optional[RetryPolicy] = None, stage: str = "") -> T:
        """Run ``unit_of_work`` until it succeeds or the policy gives up"""
        policy = policy or self.default_policy
        attempt = 1

        while True:
            self.rate_tracker.record_request()
            try:
                return await unit_of_work()
            except Exception as e:
                kind = classify_failure(e)

                if kind is ErrorKind.QUOTA_EXHAUSTED:
                    logger.error(f"Quota exhausted during {stage or 'request'}: {e}")
                    raise
                if kind is ErrorKind.OTHER:
                    logger.error(f"Non-retryable error during {stage or 'request'}: {e}")
                    raise
                if attempt >= policy.max_attempts:
                    logger.error(f"Max retries reached for {stage or 'request'}. Final error: {e}")
                    raise

                delay = policy.delay_for(attempt)
                message = get_message(
                    "retry_rate_limited", self.language,
                    seconds=f"{delay:g}", attempt=attempt, max_attempts=policy.max_attempts,
                )
                logger.warning(
                    f"Rate limited (attempt {attempt}/{policy.max_attempts}). Retrying in {delay:.2f}s"
                )
                if policy.on_retry_message is not None:
                    policy.on_retry_message(message)
                if self.progress is not None:
                    self.progress.emit(stage or "retry", message, attempt=attempt)

                await self._sleep(delay)
                attempt += 1
