"""Tests for the job queue and the cron scheduler."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW, fixed_clock
from shoppulse.recommender.jobs import JobQueue, Scheduler, run_in_batches


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def queue(sleep):
    return JobQueue(sleep=sleep)


@pytest.mark.asyncio
async def test_higher_priority_runs_first(queue):
    ran = []

    async def handler(job):
        ran.append(job.data["n"])

    queue.register("work", handler)
    queue.add("work", {"n": "low"}, priority=1)
    queue.add("work", {"n": "high"}, priority=10)
    queue.add("work", {"n": "mid"}, priority=5)
    queue.add("work", {"n": "mid-2"}, priority=5)

    await queue.drain()

    assert ran == ["high", "mid", "mid-2", "low"]
    assert len(queue.completed) == 4


@pytest.mark.asyncio
async def test_failed_job_retried_with_exponential_backoff(sleep):
    outcomes = []
    queue = JobQueue(sleep=sleep, listener=lambda job, ok, duration: outcomes.append(ok))

    async def flaky(job):
        raise RuntimeError("downstream unavailable")

    queue.register("flaky", flaky)
    job = queue.add("flaky", attempts=3, backoff_seconds=2.0)

    await queue.drain()

    assert job.attempts_made == 3
    assert sleep.delays == [2.0, 4.0]
    assert list(queue.failed) == [job]
    assert job.last_error == "downstream unavailable"
    assert outcomes == [False]


@pytest.mark.asyncio
async def test_job_succeeds_on_retry(queue, sleep):
    calls = []

    async def second_time_lucky(job):
        calls.append(job.attempts_made)
        if len(calls) == 1:
            raise RuntimeError("transient")

    queue.register("lucky", second_time_lucky)
    job = queue.add("lucky", attempts=2, backoff_seconds=1.0)

    await queue.drain()

    assert calls == [1, 2]
    assert list(queue.completed) == [job]
    assert not queue.failed


@pytest.mark.asyncio
async def test_delayed_job_waits_before_running(queue, sleep):
    ran = []

    async def handler(job):
        ran.append(job.name)

    queue.register("later", handler)
    queue.add("later", delay_seconds=5.0)

    assert queue.size == 0
    await queue.drain()

    assert sleep.delays == [5.0]
    assert ran == ["later"]


def test_unregistered_job_rejected(queue):
    with pytest.raises(KeyError):
        queue.add("missing")


def test_retry_delay_doubles(queue):
    async def noop(job):
        pass

    queue.register("noop", noop)
    job = queue.add("noop", backoff_seconds=3.0)
    job.attempts_made = 3
    assert queue.retry_delay(job) == 12.0


def test_scheduler_computes_next_run_from_cron():
    scheduler = Scheduler(clock=fixed_clock)

    async def noop():
        pass

    nightly = scheduler.add("nightly", "0 2 * * *", noop)

    assert nightly.next_run == datetime(2024, 6, 13, 2, 0, tzinfo=timezone.utc)
    assert scheduler.status()[0]["cron"] == "0 2 * * *"


@pytest.mark.parametrize("expression", ["* * *", "61 * * * *", "not a cron at all"])
def test_scheduler_rejects_invalid_cron(expression):
    scheduler = Scheduler(clock=fixed_clock)

    async def noop():
        pass

    with pytest.raises(ValueError):
        scheduler.add("bad", expression, noop)
    assert scheduler.jobs == {}


@pytest.mark.asyncio
async def test_scheduler_logs_failures_instead_of_raising(caplog):
    results = []
    scheduler = Scheduler(clock=fixed_clock, listener=lambda name, ok, d: results.append(ok))

    async def broken():
        raise RuntimeError("boom")

    scheduler.add("broken", "*/15 * * * *", broken)

    assert await scheduler.run_job("broken") is False
    job = scheduler.jobs["broken"]
    assert job.failures == 1
    assert job.last_error == "boom"
    assert results == [False]
    assert "Job 'broken' failed" in caplog.text


@pytest.mark.asyncio
async def test_scheduler_runs_due_jobs_and_reschedules():
    ran = []
    scheduler = Scheduler(clock=fixed_clock)

    async def tick():
        ran.append("tick")

    scheduler.add("tick", "*/15 * * * *", tick)
    scheduler.add("nightly", "0 2 * * *", tick)

    later = NOW + timedelta(minutes=20)
    assert await scheduler.run_due(later) == ["tick"]
    assert scheduler.jobs["tick"].next_run == NOW + timedelta(minutes=30)
    assert scheduler.jobs["tick"].runs == 1
    assert scheduler.seconds_until_next(later) == 60.0


@pytest.mark.asyncio
async def test_run_in_batches_skips_failures():
    seen = []

    async def worker(item):
        if item == 3:
            raise ValueError("bad item")
        seen.append(item)

    succeeded = await run_in_batches([1, 2, 3, 4, 5], worker, batch_size=2)

    assert succeeded == 4
    assert sorted(seen) == [1, 2, 4, 5]
