"""Async pub/sub event bus for real-time client streams."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from mlagent.utils.logging import get_logger

log = get_logger(__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(str, Enum):
    QUESTION_NEW = "question.new"
    QUESTION_PROCESSING = "question.processing"


@dataclass
class Event:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def organization_id(self) -> str:
        return self.data.get("organization_id", "")


@dataclass
class QuestionCreated(Event):
    type: EventType = field(default=EventType.QUESTION_NEW, init=False)
    # data keys: question fields, organization_id, account


@dataclass
class QuestionProcessing(Event):
    type: EventType = field(default=EventType.QUESTION_PROCESSING, init=False)
    # data keys: ml_question_id, organization_id


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------

class EventBus:
    """Fans every published event out to the attached client streams."""

    def __init__(self, max_queue_size: int = 256) -> None:
        self._max_queue_size = max_queue_size
        self._streams: list[asyncio.Queue[Event]] = []

    def open_stream(self) -> asyncio.Queue[Event]:
        """Attach a client queue that receives every published event."""
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=self._max_queue_size)
        self._streams.append(queue)
        return queue

    def close_stream(self, queue: asyncio.Queue[Event]) -> None:
        if queue in self._streams:
            self._streams.remove(queue)

    @property
    def stream_count(self) -> int:
        return len(self._streams)

    async def publish(self, event: Event) -> None:
        # Full client queues drop the event
        for queue in self._streams:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                log.warning("stream_queue_full", event_type=event.type.value)
