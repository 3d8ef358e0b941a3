"""
Structured progress reporting for generation stages.

Stages publish ``ProgressEvent`` objects to a ``ProgressChannel``. Consumers either
register a plain listener or iterate a subscription asynchronously.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ProgressEvent:
    """A single progress update"""
    stage: str
    message: str
    attempt: Optional[int] = None
    episode_index: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.now)


class ProgressChannel:
    """Fan-out channel for progress events"""

    _CLOSED = object()

    def __init__(self):
        self._listeners: List[Callable[[ProgressEvent], None]] = []
        self._queues: List[asyncio.Queue] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, listener: Callable[[ProgressEvent], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[ProgressEvent], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            logger.debug(f"Dropping progress event on closed channel: {event.message}")
            return
        logger.debug(f"[{event.stage}] {event.message}")
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Progress listener failed: {e}")
        for queue in self._queues:
            queue.put_nowait(event)

    def emit(self, stage: str, message: str, attempt: Optional[int] = None,
             episode_index: Optional[int] = None) -> ProgressEvent:
        event = ProgressEvent(stage=stage, message=message, attempt=attempt, episode_index=episode_index)
        self.publish(event)
        return event

    async def subscribe(self) -> AsyncIterator[ProgressEvent]:
        """Yield events until the channel is closed"""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                item = await queue.get()
                if item is self._CLOSED:
                    return
                yield item
        finally:
            self._queues.remove(queue)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._queues:
            queue.put_nowait(self._CLOSED)
