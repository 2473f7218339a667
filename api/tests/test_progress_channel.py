from __future__ import annotations

import asyncio

import pytest

from app.services.progress import EventType, ProgressChannel, ProgressEvent


def _event(sequence: int, event_type: EventType = EventType.PROGRESS, job_id: str = "job-1") -> ProgressEvent:
    return ProgressEvent(job_id=job_id, sequence_number=sequence, type=event_type, payload={"percent": sequence})


def test_subscribers_receive_events_in_order_until_terminal() -> None:
    channel = ProgressChannel()
    seen: list[int] = []
    subscription = channel.subscribe("job-1", lambda event: seen.append(event.sequence_number))

    channel.publish(_event(1))
    channel.publish(_event(2))
    channel.publish(_event(3, EventType.COMPLETED))

    assert seen == [1, 2, 3]
    assert subscription.active is False
    assert channel.is_closed("job-1")
    assert channel.subscriber_count("job-1") == 0


def test_publish_rejects_out_of_order_and_post_terminal_events() -> None:
    channel = ProgressChannel()
    channel.publish(_event(2))
    with pytest.raises(ValueError):
        channel.publish(_event(2))
    channel.publish(_event(3, EventType.CANCELLED))
    with pytest.raises(ValueError):
        channel.publish(_event(4))
    assert channel.last_sequence("job-1") == 3


def test_unsubscribe_stops_delivery_and_is_idempotent() -> None:
    channel = ProgressChannel()
    seen: list[int] = []
    subscription = channel.subscribe("job-1", lambda event: seen.append(event.sequence_number))
    channel.publish(_event(1))
    subscription.unsubscribe()
    subscription.unsubscribe()
    channel.publish(_event(2))
    assert seen == [1]


def test_failing_callback_does_not_block_other_subscribers() -> None:
    channel = ProgressChannel()
    seen: list[int] = []

    def broken(_: ProgressEvent) -> None:
        raise RuntimeError("listener crashed")

    channel.subscribe("job-1", broken)
    channel.subscribe("job-1", lambda event: seen.append(event.sequence_number))
    channel.publish(_event(1))
    assert seen == [1]


def test_subscribing_to_closed_job_yields_inactive_subscription() -> None:
    channel = ProgressChannel()
    channel.publish(_event(1, EventType.FAILED))
    subscription = channel.subscribe("job-1", lambda event: None)
    assert subscription.active is False


def test_stream_yields_events_and_stops_after_terminal() -> None:
    channel = ProgressChannel()

    async def run() -> list[str]:
        stream = channel.stream("job-1")
        channel.publish(_event(1))
        channel.publish(_event(2, EventType.COMPLETED))
        return [event.type.value async for event in stream]

    assert asyncio.run(run()) == ["progress", "completed"]


def test_stream_on_closed_job_ends_immediately() -> None:
    channel = ProgressChannel()
    channel.publish(_event(1, EventType.COMPLETED))

    async def run() -> list[ProgressEvent]:
        return [event async for event in channel.stream("job-1")]

    assert asyncio.run(run()) == []


def test_forget_allows_job_id_reuse() -> None:
    channel = ProgressChannel()
    channel.publish(_event(1, EventType.COMPLETED))
    channel.forget("job-1")
    channel.publish(_event(1))
    assert channel.last_sequence("job-1") == 1
