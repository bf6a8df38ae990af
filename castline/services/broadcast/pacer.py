"""Paced batch dispatch.

The pacer pulls pending recipients a page at a time, sends every member of a
batch concurrently, waits for the whole batch to settle and then sleeps
``batch_delay_ms`` before the next one. Peak throughput is therefore bounded
by ``batch_size / batch_delay_ms``. No sleep follows the last batch.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import time
from typing import Awaitable, Callable, Generic, Sequence, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BatchReport:
    index: int
    size: int
    sent: int
    failed: int
    # Monotonic clock readings taken around the batch dispatch.
    started_at: float
    finished_at: float
    # Members the dispatcher declined to send, e.g. after losing the job.
    skipped: int = 0


@dataclass
class PacerOutcome:
    batches: list[BatchReport] = field(default_factory=list)
    # True when should_continue stopped the run before the pending set was exhausted.
    stopped: bool = False

    @property
    def dispatched(self) -> int:
        return sum(report.size for report in self.batches)


class BatchPacer(Generic[T]):
    def __init__(
        self,
        *,
        batch_size: int,
        batch_delay_ms: int,
        max_in_flight: int = 0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if batch_delay_ms < 0:
            raise ValueError("batch_delay_ms must be non-negative")
        self.batch_size = batch_size
        self.batch_delay_ms = batch_delay_ms
        # 0 means every member of a batch may be in flight at once.
        self.max_in_flight = max_in_flight if 0 < max_in_flight < batch_size else batch_size
        self._sleep = sleep
        self._clock = clock

    async def _dispatch_batch(
        self,
        batch: Sequence[T],
        dispatch: Callable[[T], Awaitable[bool | None]],
    ) -> list[bool | None]:
        semaphore = asyncio.Semaphore(self.max_in_flight)

        async def _one(item: T) -> bool | None:
            async with semaphore:
                return await dispatch(item)

        # Let every send settle before surfacing an error so no task is left running.
        results = await asyncio.gather(*(_one(item) for item in batch), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return [None if result is None else bool(result) for result in results]

    async def run(
        self,
        *,
        fetch_batch: Callable[[T | None, int], Awaitable[Sequence[T]]],
        dispatch: Callable[[T], Awaitable[bool | None]],
        should_continue: Callable[[], Awaitable[bool]],
        on_batch_complete: Callable[[BatchReport], Awaitable[None]] | None = None,
    ) -> PacerOutcome:
        """Drive every pending item through ``dispatch``.

        ``fetch_batch(last_item, limit)`` returns the next page after
        ``last_item`` (``None`` for the first page). ``dispatch`` returns
        ``None`` for an item it declined to send; those count as skipped.
        ``should_continue`` is checked before each batch, so cancellation is
        observed between batches while in-flight sends finish.
        """
        outcome = PacerOutcome()
        batch = list(await fetch_batch(None, self.batch_size))
        index = 0
        while batch:
            if not await should_continue():
                outcome.stopped = True
                logger.info("broadcast_pacer_stopped batches=%s", len(outcome.batches))
                break
            started = self._clock()
            results = await self._dispatch_batch(batch, dispatch)
            finished = self._clock()
            sent = sum(1 for result in results if result is True)
            skipped = sum(1 for result in results if result is None)
            report = BatchReport(
                index=index,
                size=len(batch),
                sent=sent,
                failed=len(batch) - sent - skipped,
                started_at=started,
                finished_at=finished,
                skipped=skipped,
            )
            outcome.batches.append(report)
            if on_batch_complete is not None:
                await on_batch_complete(report)
            index += 1
            batch = list(await fetch_batch(batch[-1], self.batch_size))
            if not batch:
                break
            if self.batch_delay_ms > 0:
                await self._sleep(self.batch_delay_ms / 1000.0)
        return outcome
