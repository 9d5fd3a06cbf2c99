"""Bounded-concurrency dispatch of validated sites.

One control flow admits records in registry order; each admitted record runs
as its own asyncio task wrapping an OS subprocess. Before each admission the
control flow waits, in order, for:
- the fixed stagger delay since the previous launch (none before the first)
- a free slot (at most ``max_parallel`` jobs in flight)
- the resource monitor to stop reporting pressure

A cancellation event stops further admissions; in-flight jobs see the same
event, terminate their handler and still report an outcome.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Protocol

from wpcron.config.settings import SchedulerConfig
from wpcron.registry.records import JobOutcome, JobStatus, SiteRecord, ThrottleSignal

logger = logging.getLogger(__name__)


class Monitor(Protocol):
    def should_throttle(self) -> ThrottleSignal: ...


class Handler(Protocol):
    async def run(self, record: SiteRecord, cancel: asyncio.Event) -> JobOutcome: ...


async def _until(aw: Awaitable[object], cancel: asyncio.Event) -> bool:
    """Await aw unless cancel fires first. True if aw completed."""
    if cancel.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        return False
    work = asyncio.ensure_future(aw)
    stop = asyncio.ensure_future(cancel.wait())
    finished = False
    try:
        await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        finished = work.done()
    finally:
        stop.cancel()
        if not finished:
            work.cancel()
    return finished


@dataclass
class DispatchScheduler:
    config: SchedulerConfig
    handler: Handler
    monitor: Monitor
    on_outcome: Callable[[JobOutcome], None] | None = None
    _in_flight: set[asyncio.Task] = field(default_factory=set, init=False, repr=False)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def run(self, records: Iterable[SiteRecord], cancel: asyncio.Event | None = None) -> list[JobOutcome]:
        cancel = cancel or asyncio.Event()
        slots = asyncio.Semaphore(self.config.max_parallel)
        launched: list[asyncio.Task] = []

        for record in records:
            if launched and self.config.job_start_delay_seconds > 0:
                if not await _until(asyncio.sleep(self.config.job_start_delay_seconds), cancel):
                    break
            if not await _until(slots.acquire(), cancel):
                break
            if not await self._wait_for_capacity(record, cancel) or cancel.is_set():
                slots.release()
                break

            task = asyncio.create_task(self._run_job(record, cancel, slots))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            launched.append(task)

        if cancel.is_set():
            logger.info(
                "dispatch_cancelled",
                extra={"event": "dispatch_cancelled", "reason": f"{len(self._in_flight)} job(s) still running"},
            )
        elif self._in_flight:
            logger.info("waiting_for_jobs", extra={"event": "waiting_for_jobs", "total": len(self._in_flight)})

        return list(await asyncio.gather(*launched))

    async def _wait_for_capacity(self, record: SiteRecord, cancel: asyncio.Event) -> bool:
        while not cancel.is_set():
            signal = await asyncio.to_thread(self.monitor.should_throttle)
            if not signal.throttled:
                return True
            logger.info(
                "throttle_pause",
                extra={"event": "throttle_pause", "reason": signal.reason, "path": record.path},
            )
            if not await _until(asyncio.sleep(self.config.throttle_backoff_seconds), cancel):
                return False
        return False

    async def _run_job(self, record: SiteRecord, cancel: asyncio.Event, slots: asyncio.Semaphore) -> JobOutcome:
        try:
            outcome = await self.handler.run(record, cancel)
        except Exception as e:
            logger.exception("job_crashed", extra={"event": "job_crashed", "path": record.path})
            outcome = JobOutcome.for_record(record, JobStatus.FAILURE, detail=f"handler error: {e}")
        finally:
            slots.release()

        if self.on_outcome is not None:
            self.on_outcome(outcome)
        return outcome
