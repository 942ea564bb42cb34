"""Job queue and cron scheduler for recommendation maintenance work.

``JobQueue`` is an in-process priority queue: higher priority jobs run
first, failed jobs are retried with exponential backoff until their attempt
budget is spent. ``Scheduler`` fires named handlers on cron expressions and
logs (never raises) their failures. ``run_in_batches`` is the shared bounded
batch runner used by the engines and the scheduled tasks.
"""

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    List,
    Optional,
    Sequence,
    Set,
    TypeVar,
)

from croniter import croniter

from shoppulse.exceptions import JobError
from shoppulse.recommender.models import new_id, utcnow

# Configure module logger
logger = logging.getLogger(__name__)

T = TypeVar("T")

# Completed/failed job ids retained for introspection
HISTORY_SIZE = 1000
# Scheduler never sleeps longer than this between due checks
MAX_SCHEDULER_SLEEP_SECONDS = 60.0


async def run_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[Any]],
    batch_size: int,
    label: str = "batch",
) -> int:
    """Run ``worker`` over ``items`` in bounded concurrent batches.

    A failing item is logged and skipped; the rest of its batch and the
    following batches still run.

    Returns:
        Number of items processed without error.
    """
    items = list(items)
    succeeded = 0
    for start in range(0, len(items), max(1, batch_size)):
        chunk = items[start : start + batch_size]
        results = await asyncio.gather(*(worker(item) for item in chunk), return_exceptions=True)
        for item, result in zip(chunk, results):
            if isinstance(result, Exception):
                logger.error(
                    f"{label} failed for item",
                    extra={"item": str(item), "error": str(result)},
                    exc_info=result,
                )
            else:
                succeeded += 1
    logger.debug(f"{label}: {succeeded}/{len(items)} items succeeded")
    return succeeded


@dataclass
class Job:
    name: str
    data: Dict[str, Any]
    priority: int = 1
    attempts: int = 1
    backoff_seconds: float = 0.0
    id: str = field(default_factory=new_id)
    attempts_made: int = 0
    last_error: Optional[str] = None


JobHandler = Callable[[Job], Awaitable[Any]]
JobListener = Callable[[Job, bool, float], None]


class JobQueue:
    """Priority job queue with retries and exponential backoff."""

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        listener: Optional[JobListener] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.listener = listener
        self._sleep = sleep
        self._queue: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self._sequence = itertools.count()
        self._handlers: Dict[str, JobHandler] = {}
        self._delayed: Set[asyncio.Task] = set()
        self._workers: List[asyncio.Task] = []
        self.completed: Deque[Job] = deque(maxlen=HISTORY_SIZE)
        self.failed: Deque[Job] = deque(maxlen=HISTORY_SIZE)

    def register(self, name: str, handler: JobHandler) -> None:
        self._handlers[name] = handler

    def _put(self, job: Job) -> None:
        self._queue.put_nowait((-job.priority, next(self._sequence), job))

    def add(
        self,
        name: str,
        data: Optional[Dict[str, Any]] = None,
        priority: int = 1,
        attempts: int = 1,
        backoff_seconds: float = 0.0,
        delay_seconds: float = 0.0,
    ) -> Job:
        """Enqueue a job for a registered handler.

        Args:
            delay_seconds: Hold the job back this long before it becomes runnable.

        Raises:
            KeyError: If no handler is registered under ``name``.
        """
        if name not in self._handlers:
            raise KeyError(f"No handler registered for job '{name}'")
        job = Job(
            name=name,
            data=data or {},
            priority=priority,
            attempts=max(1, attempts),
            backoff_seconds=backoff_seconds,
        )
        if delay_seconds > 0:
            self._put_later(job, delay_seconds)
        else:
            self._put(job)
        logger.debug(
            "Job enqueued",
            extra={"job": name, "job_id": job.id, "priority": priority, "delay": delay_seconds},
        )
        return job

    @property
    def size(self) -> int:
        return self._queue.qsize()

    def retry_delay(self, job: Job) -> float:
        """Backoff before the next attempt: base × 2^(attempts made − 1)."""
        return job.backoff_seconds * (2 ** (job.attempts_made - 1))

    async def _requeue_later(self, job: Job, delay: float) -> None:
        await self._sleep(delay)
        self._put(job)

    def _put_later(self, job: Job, delay: float) -> None:
        task = asyncio.create_task(self._requeue_later(job, delay))
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)

    async def _execute(self, job: Job) -> bool:
        handler = self._handlers[job.name]
        job.attempts_made += 1
        started = time.time()
        try:
            if self.timeout_seconds:
                await asyncio.wait_for(handler(job), timeout=self.timeout_seconds)
            else:
                await handler(job)
        except Exception as e:
            job.last_error = str(e) or type(e).__name__
            duration = time.time() - started

            if job.attempts_made < job.attempts:
                delay = self.retry_delay(job)
                logger.warning(
                    f"Job '{job.name}' failed, retrying in {delay:.1f}s",
                    extra={"job_id": job.id, "attempt": job.attempts_made, "error": job.last_error},
                )
                self._put_later(job, delay)
                return False

            error = JobError(job.name, e, attempts=job.attempts_made)
            logger.error(error.message, extra=error.details, exc_info=True)
            self.failed.append(job)
            if self.listener:
                self.listener(job, False, duration)
            return False

        duration = time.time() - started
        self.completed.append(job)
        logger.debug(
            "Job completed",
            extra={"job": job.name, "job_id": job.id, "duration_ms": round(duration * 1000, 2)},
        )
        if self.listener:
            self.listener(job, True, duration)
        return True

    async def _worker(self) -> None:
        while True:
            _, _, job = await self._queue.get()
            try:
                await self._execute(job)
            finally:
                self._queue.task_done()

    def start(self, workers: int = 1) -> None:
        if self._workers:
            return
        self._workers = [asyncio.create_task(self._worker()) for _ in range(max(1, workers))]
        logger.info(f"Job queue started with {len(self._workers)} worker(s)")

    async def stop(self) -> None:
        tasks = self._workers + list(self._delayed)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._delayed.clear()
        logger.info("Job queue stopped")

    async def drain(self) -> None:
        """Run until the queue is empty and no retries are pending."""
        while True:
            if self._workers:
                await self._queue.join()
            else:
                while not self._queue.empty():
                    _, _, job = self._queue.get_nowait()
                    try:
                        await self._execute(job)
                    finally:
                        self._queue.task_done()
            if not self._delayed:
                return
            await asyncio.gather(*list(self._delayed))


# ----------------------------------------------------------------------
# Cron scheduling
# ----------------------------------------------------------------------


def next_cron_run(cron: str, after: datetime) -> datetime:
    """First time ``cron`` fires strictly after ``after``.

    Raises:
        ValueError: If ``cron`` is not a valid five-field expression.
    """
    if len(cron.split()) != 5 or not croniter.is_valid(cron):
        raise ValueError(f"Invalid cron expression: '{cron}'")
    return croniter(cron, after).get_next(datetime)


@dataclass
class ScheduledJob:
    name: str
    cron: str
    handler: Callable[[], Awaitable[Any]]
    next_run: datetime
    last_run: Optional[datetime] = None
    runs: int = 0
    failures: int = 0
    last_error: Optional[str] = None


class Scheduler:
    """Fires registered handlers when their cron expressions come due."""

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        listener: Optional[Callable[[str, bool, float], None]] = None,
    ):
        self.clock = clock
        self.listener = listener
        self._sleep = sleep
        self.jobs: Dict[str, ScheduledJob] = {}
        self._task: Optional[asyncio.Task] = None

    def add(self, name: str, cron: str, handler: Callable[[], Awaitable[Any]]) -> ScheduledJob:
        job = ScheduledJob(
            name=name,
            cron=cron,
            handler=handler,
            next_run=next_cron_run(cron, self.clock()),
        )
        self.jobs[name] = job
        logger.info(f"Scheduled '{name}' ({cron}), next run {job.next_run.isoformat()}")
        return job

    async def run_job(self, name: str) -> bool:
        """Run one scheduled handler now. Failures are logged, never raised."""
        job = self.jobs[name]
        job.last_run = self.clock()
        started = time.time()
        try:
            await job.handler()
        except Exception as e:
            job.failures += 1
            job.last_error = str(e)
            error = JobError(name, e)
            logger.error(error.message, extra=error.details, exc_info=True)
            if self.listener:
                self.listener(name, False, time.time() - started)
            return False

        job.runs += 1
        logger.info(f"Scheduled job '{name}' completed", extra={"duration_s": time.time() - started})
        if self.listener:
            self.listener(name, True, time.time() - started)
        return True

    async def run_due(self, now: Optional[datetime] = None) -> List[str]:
        now = now or self.clock()
        ran = []
        for job in list(self.jobs.values()):
            if job.next_run <= now:
                await self.run_job(job.name)
                job.next_run = next_cron_run(job.cron, now)
                ran.append(job.name)
        return ran

    def seconds_until_next(self, now: Optional[datetime] = None) -> float:
        if not self.jobs:
            return MAX_SCHEDULER_SLEEP_SECONDS
        now = now or self.clock()
        soonest = min(job.next_run for job in self.jobs.values())
        return min(MAX_SCHEDULER_SLEEP_SECONDS, max(1.0, (soonest - now).total_seconds()))

    async def run_forever(self) -> None:
        while True:
            await self.run_due()
            await self._sleep(self.seconds_until_next())

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run_forever())
            logger.info(f"Scheduler started with {len(self.jobs)} job(s)")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
            logger.info("Scheduler stopped")

    def status(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": job.name,
                "cron": job.cron,
                "next_run": job.next_run.isoformat(),
                "last_run": job.last_run.isoformat() if job.last_run else None,
                "runs": job.runs,
                "failures": job.failures,
                "last_error": job.last_error,
            }
            for job in self.jobs.values()
        ]
