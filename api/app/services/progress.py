from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_EVENT_TYPES = frozenset({EventType.COMPLETED, EventType.FAILED, EventType.CANCELLED})


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    job_id: str
    sequence_number: int
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "sequence_number": self.sequence_number,
            "type": self.type.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


EventCallback = Callable[[ProgressEvent], None]


class Subscription:
    def __init__(self, channel: ProgressChannel, job_id: str, callback: EventCallback) -> None:
        self._channel = channel
        self.job_id = job_id
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._channel._detach(self)


class EventStream:
    """Async iterator over one job's events from the moment it was opened."""

    def __init__(self, channel: ProgressChannel, job_id: str) -> None:
        self._channel = channel
        self.job_id = job_id
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        self._done = False

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._done:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            await self.aclose()
            raise StopAsyncIteration
        if event.is_terminal:
            await self.aclose()
        return event

    async def aclose(self) -> None:
        if self._done:
            return
        self._done = True
        self._channel._detach_stream(self)

    def _push(self, event: ProgressEvent | None) -> None:
        if not self._done:
            self._queue.put_nowait(event)


class ProgressChannel:
    """Ordered per-job fan-out of progress events.

    One producer per job. Sequence numbers must strictly increase; delivery to
    callbacks is synchronous, so nothing is delivered after `unsubscribe()`
    returns. No history is kept: late subscribers reconcile from job status.
    """

    def __init__(self) -> None:
        self._last_sequence: dict[str, int] = {}
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._streams: dict[str, list[EventStream]] = {}
        self._closed: set[str] = set()

    def publish(self, event: ProgressEvent) -> None:
        job_id = event.job_id
        if job_id in self._closed:
            raise ValueError(f"job {job_id} already emitted a terminal event")
        last = self._last_sequence.get(job_id, 0)
        if event.sequence_number <= last:
            raise ValueError(f"sequence {event.sequence_number} for job {job_id} is not after {last}")
        self._last_sequence[job_id] = event.sequence_number

        for subscription in list(self._subscriptions.get(job_id, ())):
            if not subscription.active:
                continue
            try:
                subscription.callback(event)
            except Exception:
                logger.exception("progress subscriber failed job_id=%s sequence=%s", job_id, event.sequence_number)

        for stream in list(self._streams.get(job_id, ())):
            stream._push(event)

        if event.is_terminal:
            self._close_job(job_id)

    def subscribe(self, job_id: str, callback: EventCallback) -> Subscription:
        subscription = Subscription(self, job_id, callback)
        if job_id in self._closed:
            subscription.active = False
            return subscription
        self._subscriptions.setdefault(job_id, []).append(subscription)
        return subscription

    def stream(self, job_id: str) -> EventStream:
        stream = EventStream(self, job_id)
        if job_id in self._closed:
            stream._push(None)
            return stream
        self._streams.setdefault(job_id, []).append(stream)
        return stream

    def last_sequence(self, job_id: str) -> int:
        return self._last_sequence.get(job_id, 0)

    def is_closed(self, job_id: str) -> bool:
        return job_id in self._closed

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscriptions.get(job_id, ())) + len(self._streams.get(job_id, ()))

    def forget(self, job_id: str) -> None:
        self._close_job(job_id)
        self._closed.discard(job_id)
        self._last_sequence.pop(job_id, None)

    def close_all(self) -> None:
        for job_id in set(self._subscriptions) | set(self._streams):
            self._close_job(job_id)

    def _close_job(self, job_id: str) -> None:
        self._closed.add(job_id)
        for subscription in self._subscriptions.pop(job_id, []):
            subscription.active = False
        for stream in self._streams.pop(job_id, []):
            stream._push(None)

    def _detach(self, subscription: Subscription) -> None:
        rows = self._subscriptions.get(subscription.job_id)
        if rows is None:
            return
        if subscription in rows:
            rows.remove(subscription)
        if not rows:
            self._subscriptions.pop(subscription.job_id, None)

    def _detach_stream(self, stream: EventStream) -> None:
        rows = self._streams.get(stream.job_id)
        if rows is None:
            return
        if stream in rows:
            rows.remove(stream)
        if not rows:
            self._streams.pop(stream.job_id, None)
