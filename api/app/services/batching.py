from __future__ import annotations

import asyncio
import csv
import io
from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass
from itertools import count, islice
from typing import Generic, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass(slots=True, frozen=True)
class BatchOutcome(Generic[R]):
    index: int
    size: int
    result: R | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def iter_batches(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Lazily cut `items` into lists of at most `size` elements."""
    if size < 1:
        raise ValueError("batch size must be at least 1")
    iterator = iter(items)
    while True:
        batch = list(islice(iterator, size))
        if not batch:
            return
        yield batch


async def process_batches(
    batches: Iterable[list[T]],
    handler: Callable[[list[T]], Awaitable[R]],
    max_concurrent: int,
) -> list[BatchOutcome[R]]:
    """Run `handler` over batches with at most `max_concurrent` in flight.

    The next batch is pulled only once a slot frees up. A failing batch is
    reported in its outcome and does not stop the others. Outcomes come back
    ordered by batch index.
    """
    if max_concurrent < 1:
        raise ValueError("max_concurrent must be at least 1")

    outcomes: list[BatchOutcome[R]] = []
    in_flight: dict[asyncio.Task[R], tuple[int, int]] = {}

    def collect(done: set[asyncio.Task[R]]) -> None:
        for task in done:
            index, size = in_flight.pop(task)
            error = task.exception()
            if error is not None:
                outcomes.append(BatchOutcome(index=index, size=size, error=error))  # type: ignore[arg-type]
            else:
                outcomes.append(BatchOutcome(index=index, size=size, result=task.result()))

    iterator = iter(batches)
    try:
        for index in count():
            if len(in_flight) >= max_concurrent:
                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                collect(done)
            batch = next(iterator, None)
            if batch is None:
                break
            task = asyncio.create_task(handler(batch))
            in_flight[task] = (index, len(batch))

        while in_flight:
            done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            collect(done)
    finally:
        for task in in_flight:
            task.cancel()

    outcomes.sort(key=lambda outcome: outcome.index)
    return outcomes


@dataclass(slots=True, frozen=True)
class CsvRow:
    line: int
    values: dict[str, str]


def iter_csv_rows(text: str) -> Iterator[CsvRow]:
    """Yield CSV rows with lowercased header keys and stripped values."""
    reader = csv.DictReader(io.StringIO(text))
    for row in reader:
        values = {
            (key or "").strip().lower(): (value or "").strip()
            for key, value in row.items()
            if key is not None and isinstance(value, str)
        }
        if not any(values.values()):
            continue
        yield CsvRow(line=reader.line_num, values=values)
