"""Execution shapes shared by the analyzer tasks.

``run_direct`` splits targets into fixed-size sub-batches and calls a handler
per sub-batch, sequentially or through a bounded pool. ``run_batch_api``
groups targets into large batches and hands each one to a handler, at most
``batch_max_concurrency`` at a time; the handler drives a ``BatchPoller``
through submit, poll and fetch.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from config.settings import ModelFamily, settings
from services.errors import AnalyzerError, BatchTimeoutError
from services.llm.base import ACTIVE_BATCH_STATUSES, BatchResult, BatchStatus

log = logging.getLogger(__name__)


class Clock(Protocol):
    async def sleep(self, seconds: float) -> None: ...


class AsyncioClock:
    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


def chunked(items: Sequence, size: int) -> list[list]:
    if size <= 0:
        raise ValueError("size must be positive")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


@dataclass
class PoolOutcome:
    results: list[Any] = field(default_factory=list)
    failures: list[tuple[Any, AnalyzerError]] = field(default_factory=list)
    skipped: list[Any] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures and not self.skipped


class BoundedPool:
    """Semaphore-gated fan-out.

    ``AnalyzerError`` from one item is recorded and does not affect the
    others. Any other exception is fatal: items not yet started are skipped,
    in-flight items are drained, then the first fatal error is raised.
    """

    def __init__(self, max_concurrency: int):
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")
        self.max_concurrency = max_concurrency
        self.in_flight = 0
        self.max_in_flight = 0

    async def run(
        self,
        items: Sequence,
        worker: Callable[[Any], Awaitable[Any]],
        before: Callable[[Any], Awaitable[None]] | None = None,
    ) -> PoolOutcome:
        """Run ``worker`` over ``items``. ``before(item)`` is awaited outside the
        semaphore, so a start delay never holds a slot.
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)
        outcome = PoolOutcome()
        fatal: list[BaseException] = []

        async def guarded(item):
            if before is not None:
                await before(item)
            async with semaphore:
                if fatal:
                    outcome.skipped.append(item)
                    return
                self.in_flight += 1
                self.max_in_flight = max(self.max_in_flight, self.in_flight)
                try:
                    outcome.results.append(await worker(item))
                except AnalyzerError as e:
                    outcome.failures.append((item, e))
                except Exception as e:
                    fatal.append(e)
                finally:
                    self.in_flight -= 1

        await asyncio.gather(*(guarded(item) for item in items))
        if fatal:
            raise fatal[0]
        return outcome


class PollState(StrEnum):
    SUBMITTING = "submitting"
    POLLING = "polling"
    COMPLETED = "completed"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


@dataclass
class BatchOutcome:
    batch_id: str
    attempts: int
    results: list[BatchResult]


class BatchPoller:
    """Submit, poll and fetch one large batch as an explicit state machine.

    Each attempt submits fresh requests and polls every ``interval`` seconds
    while the status is active. An attempt that ends in any status other than
    ``completed`` (or runs past ``max_polls``) moves to RETRYING; after
    ``max_attempts`` the batch is abandoned with ``BatchTimeoutError``.
    """

    def __init__(
        self,
        gateway,
        family: ModelFamily | str,
        clock: Clock | None = None,
        interval: float | None = None,
        max_attempts: int | None = None,
        max_polls: int | None = None,
        cancel: asyncio.Event | None = None,
    ):
        self.gateway = gateway
        self.family = family
        self.clock = clock or AsyncioClock()
        self.interval = settings.batch_poll_interval if interval is None else interval
        self.max_attempts = max_attempts or settings.batch_max_attempts
        self.max_polls = max_polls or settings.batch_max_polls
        self.cancel = cancel
        self.state = PollState.SUBMITTING
        self.attempts = 0
        self.batch_id: str | None = None
        self.status: BatchStatus | None = None
        self.polls = 0

    def _cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    async def run(self, build_requests: Callable[[], list[dict]]) -> BatchOutcome:
        while True:
            if self._cancelled():
                self.state = PollState.CANCELLED
            match self.state:
                case PollState.SUBMITTING:
                    await self._submit(build_requests)
                case PollState.POLLING:
                    await self._poll()
                case PollState.RETRYING:
                    if self.attempts >= self.max_attempts:
                        self.state = PollState.EXHAUSTED
                    else:
                        log.warning(
                            f"Batch {self.batch_id} ended as {self.status}, "
                            f"retrying ({self.attempts}/{self.max_attempts})"
                        )
                        self.state = PollState.SUBMITTING
                case PollState.COMPLETED:
                    results = await self.gateway.fetch_batch_results(self.family, self.batch_id)
                    return BatchOutcome(self.batch_id, self.attempts, results)
                case PollState.EXHAUSTED:
                    raise BatchTimeoutError(
                        f"Batch {self.batch_id} did not complete after {self.attempts} attempts",
                        batch_id=self.batch_id,
                        status=self.status,
                    )
                case PollState.CANCELLED:
                    raise BatchTimeoutError(
                        f"Batch {self.batch_id} polling cancelled",
                        batch_id=self.batch_id,
                        status=PollState.CANCELLED,
                    )

    async def _submit(self, build_requests: Callable[[], list[dict]]):
        self.attempts += 1
        self.polls = 0
        self.status = None
        try:
            self.batch_id = await self.gateway.submit_batch(self.family, build_requests())
        except AnalyzerError as e:
            log.warning(f"Batch submission failed (attempt {self.attempts}): {e}")
            self.state = PollState.RETRYING
            return
        log.debug(f"Batch {self.batch_id} submitted (attempt {self.attempts}/{self.max_attempts})")
        self.state = PollState.POLLING

    async def _poll(self):
        await self.clock.sleep(self.interval)
        if self._cancelled():
            self.state = PollState.CANCELLED
            return
        self.polls += 1
        try:
            self.status = await self.gateway.poll_batch_status(self.family, self.batch_id)
        except AnalyzerError as e:
            log.warning(f"Status poll for batch {self.batch_id} failed: {e}")
            self.status = None
        if self.status == BatchStatus.COMPLETED:
            self.state = PollState.COMPLETED
        elif self.status is not None and self.status not in ACTIVE_BATCH_STATUSES:
            self.state = PollState.RETRYING
        elif self.polls >= self.max_polls:
            log.warning(f"Batch {self.batch_id} still {self.status} after {self.polls} polls")
            self.state = PollState.RETRYING


class BatchRunner:
    def __init__(
        self,
        clock: Clock | None = None,
        cancel: asyncio.Event | None = None,
        direct_max_concurrency: int | None = None,
        batch_max_concurrency: int | None = None,
        photos_per_batch: int | None = None,
    ):
        self.clock = clock or AsyncioClock()
        self.cancel = cancel
        self.direct_max_concurrency = direct_max_concurrency or settings.direct_max_concurrency
        self.batch_max_concurrency = batch_max_concurrency or settings.batch_max_concurrency
        self.photos_per_batch = photos_per_batch or settings.batch_photos_per_batch
        self.last_pool: BoundedPool | None = None

    def poller(self, gateway, family: ModelFamily | str) -> BatchPoller:
        return BatchPoller(gateway, family, clock=self.clock, cancel=self.cancel)

    async def run_direct(
        self,
        items: Sequence,
        size: int,
        handler: Callable[[list, int], Awaitable[Any]],
        sequential: bool = False,
        stagger: float = 0.0,
        max_concurrency: int | None = None,
    ) -> PoolOutcome:
        """Run ``handler(sub_batch, index)`` over fixed-size sub-batches.

        Sequential mode starts sub-batch N+1 only once sub-batch N has
        returned. Parallel mode optionally delays each start by
        ``stagger * index`` seconds counted from the start of the run, whatever
        the concurrency cap.
        """
        batches = chunked(items, size)
        if sequential:
            outcome = PoolOutcome()
            for index, batch in enumerate(batches):
                try:
                    outcome.results.append(await handler(batch, index))
                except AnalyzerError as e:
                    log.warning(f"Sub-batch {index} failed: {e}")
                    outcome.failures.append((batch, e))
            return outcome

        async def call(entry):
            index, batch = entry
            return await handler(batch, index)

        async def stagger_start(entry):
            index, _ = entry
            if index > 0:
                await self.clock.sleep(stagger * index)

        pool = BoundedPool(max_concurrency or self.direct_max_concurrency)
        self.last_pool = pool
        outcome = await pool.run(
            list(enumerate(batches)), call, before=stagger_start if stagger > 0 else None
        )
        for (index, _), error in outcome.failures:
            log.warning(f"Sub-batch {index} failed: {error}")
        outcome.failures = [(batch, error) for (_, batch), error in outcome.failures]
        return outcome

    async def run_batch_api(
        self,
        items: Sequence,
        handler: Callable[[list], Awaitable[Any]],
        photos_per_batch: int | None = None,
    ) -> PoolOutcome:
        batches = chunked(items, photos_per_batch or self.photos_per_batch)
        pool = BoundedPool(self.batch_max_concurrency)
        self.last_pool = pool
        outcome = await pool.run(batches, handler)
        for batch, error in outcome.failures:
            log.warning(f"Large batch of {len(batch)} photos abandoned: {error}")
        return outcome
