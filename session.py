"""
Generation session: everything tied to one API credential.
"""

import logging
from typing import Optional

from config_manager import AppConfig
from gemini_service import GeminiService
from progress_events import ProgressChannel
from rate_tracker import RateTracker
from retry_executor import RetryExecutor, RetryPolicy

logger = logging.getLogger(__name__)


class GenerationSession:
    """Owns the AI service, rate tracker, progress channel and retry executor.

    Created when a credential is set and closed when it is cleared; nothing here
    outlives the credential.
    """

    def __init__(self, api_key: str, config: AppConfig,
                 service: Optional[GeminiService] = None,
                 rate_tracker: Optional[RateTracker] = None,
                 progress: Optional[ProgressChannel] = None,
                 executor: Optional[RetryExecutor] = None):
        self.config = config
        self.service = service or GeminiService(api_key, config.api)
        self.rate_tracker = rate_tracker or RateTracker(
            window_seconds=config.pipeline.rate_window_seconds,
            sweep_interval=config.pipeline.rate_sweep_interval,
        )
        self.progress = progress or ProgressChannel()
        self.executor = executor or RetryExecutor(
            self.rate_tracker,
            self.progress,
            default_policy=RetryPolicy(
                max_attempts=config.api.max_retries,
                initial_delay=config.api.retry_delay,
            ),
            language=config.ui.language,
        )
        self._started = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._closed:
            raise RuntimeError("Cannot restart a closed session")
        if not self._started:
            self.rate_tracker.start()
            self._started = True
            logger.info("Generation session started")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.rate_tracker.stop()
        self.progress.close()
        await self.service.aclose()
        logger.info("Generation session closed")

    def requests_last_minute(self) -> int:
        return self.rate_tracker.current_count()

    async def __aenter__(self) -> 'GenerationSession':
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
