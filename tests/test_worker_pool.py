"""
Tests for WorkerPool.

The processor is replaced by a scripted fake so the tests control exactly
when each job finishes; the JobStore is real.
"""
import asyncio
from datetime import timedelta

import pytest

from config.settings import WorkerConfig
from job_queue.worker_pool import WorkerPool
from models.schemas import JobResult, JobStatus


class ScriptedProcessor:
    """Returns canned results; jobs listed in ``hold`` wait until released."""

    def __init__(self):
        self.results: dict[str, JobResult] = {}
        self.hold: dict[str, asyncio.Event] = {}
        self.hold_all: asyncio.Event | None = None
        self.started: list[str] = []

    async def process(self, job):
        self.started.append(job.id)
        gate = self.hold.get(job.id) or self.hold_all
        if gate is not None:
            await gate.wait()
        return self.results.get(job.id, JobResult.ok({"handled": job.id}))


async def wait_until(predicate, timeout: float = 3.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def processor() -> ScriptedProcessor:
    return ScriptedProcessor()


def make_pool(store, processor, **overrides) -> WorkerPool:
    config = WorkerConfig(
        concurrency=overrides.pop("concurrency", 2),
        poll_interval_seconds=overrides.pop("poll_interval_seconds", 0.01),
        shutdown_timeout_seconds=overrides.pop("shutdown_timeout_seconds", 2),
        job_timeout_seconds=overrides.pop("job_timeout_seconds", 5),
    )
    return WorkerPool(store, processor, config)


async def add_jobs(store, clock, payload, n):
    ids = []
    for _ in range(n):
        ids.append(await store.add_job("publish_post", payload))
        clock.advance(seconds=1)
    return ids


# ──────────────────────────────────────────────────────────────
#  Polling and concurrency
# ──────────────────────────────────────────────────────────────

class TestPolling:
    @pytest.mark.asyncio
    async def test_fills_up_to_concurrency(self, store, clock, processor, publish_payload):
        ids = await add_jobs(store, clock, publish_payload, 3)
        processor.hold_all = asyncio.Event()
        pool = make_pool(store, processor, concurrency=2)

        assert await pool.poll_once() == 2
        assert sorted(pool.active_job_ids) == sorted(ids[:2])
        assert await pool.poll_once() == 0

        locked = [await store.get_job(i) for i in ids[:2]]
        assert all(j.status == JobStatus.LOCKED and j.worker_id == "worker-a" for j in locked)
        assert (await store.get_job(ids[2])).status == JobStatus.PENDING

        processor.hold_all.set()
        await wait_until(lambda: not pool.active_job_ids)
        assert await pool.poll_once() == 1
        await wait_until(lambda: not pool.active_job_ids)
        assert (await store.get_stats())["completed"] == 3

    @pytest.mark.asyncio
    async def test_slow_job_does_not_block_other_slot(self, store, clock, processor, publish_payload):
        slow, fast = await add_jobs(store, clock, publish_payload, 2)
        processor.hold[slow] = asyncio.Event()
        pool = make_pool(store, processor, concurrency=2)

        await pool.poll_once()
        await wait_until(lambda: pool.active_job_ids == [slow])

        assert (await store.get_job(fast)).status == JobStatus.COMPLETED
        assert (await store.get_job(slow)).status == JobStatus.LOCKED

        processor.hold[slow].set()
        await wait_until(lambda: not pool.active_job_ids)

    @pytest.mark.asyncio
    async def test_process_next_idle(self, store, processor):
        pool = make_pool(store, processor)
        assert await pool.process_next() is None


# ──────────────────────────────────────────────────────────────
#  Settling results
# ──────────────────────────────────────────────────────────────

class TestSettle:
    @pytest.mark.asyncio
    async def test_success_completes(self, store, processor, publish_payload):
        job_id = await store.add_job("publish_post", publish_payload)
        processor.results[job_id] = JobResult.ok({"media_id": "m1"})
        pool = make_pool(store, processor)

        outcome = await pool.process_next()

        assert outcome == {"job_id": job_id, "job_type": "publish_post", "success": True, "error": None}
        job = await store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"media_id": "m1"}
        assert pool.processed_count == 1

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(self, store, clock, processor, publish_payload):
        job_id = await store.add_job("publish_post", publish_payload)
        processor.results[job_id] = JobResult.fail("Invalid OAuth access token.")
        pool = make_pool(store, processor)

        await pool.process_next()

        job = await store.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 1
        assert job.last_error == "Invalid OAuth access token."
        assert job.scheduled_for == clock.now + timedelta(seconds=60)
        assert pool.failed_count == 1

    @pytest.mark.asyncio
    async def test_rate_limited_result_defers(self, store, clock, processor, dm_payload):
        job_id = await store.add_job("direct_message", dm_payload)
        until = clock.now + timedelta(minutes=30)
        processor.results[job_id] = JobResult.fail("Rate limited: Hourly limit reached", defer_until=until)
        pool = make_pool(store, processor)

        await pool.process_next()

        job = await store.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.scheduled_for == until
        assert pool.failed_count == 0

    @pytest.mark.asyncio
    async def test_job_timeout_counts_as_failure(self, store, processor, publish_payload):
        job_id = await store.add_job("publish_post", publish_payload)
        processor.hold[job_id] = asyncio.Event()   # never released
        pool = make_pool(store, processor, job_timeout_seconds=0.05)

        outcome = await pool.process_next()

        assert outcome["success"] is False
        assert outcome["error"] == "Job timed out after 0.05s"
        job = await store.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 1

    @pytest.mark.asyncio
    async def test_cancelled_while_running(self, store, processor, publish_payload):
        job_id = await store.add_job("publish_post", publish_payload)
        processor.hold[job_id] = asyncio.Event()
        pool = make_pool(store, processor)

        await pool.poll_once()
        await wait_until(lambda: job_id in processor.started)
        assert await store.cancel_job(job_id) is True

        processor.hold[job_id].set()
        await wait_until(lambda: not pool.active_job_ids)

        job = await store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.last_error == "cancelled"


# ──────────────────────────────────────────────────────────────
#  Lifecycle
# ──────────────────────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_background_loop_processes_jobs(self, store, clock, processor, publish_payload):
        ids = await add_jobs(store, clock, publish_payload, 3)
        pool = make_pool(store, processor)

        await pool.start_background()
        assert pool.is_running is True
        await wait_until(lambda: pool.processed_count == 3)
        await pool.stop()

        assert pool.is_running is False
        for job_id in ids:
            assert (await store.get_job(job_id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_waits_for_quick_jobs(self, store, processor, publish_payload):
        job_id = await store.add_job("publish_post", publish_payload)
        gate = processor.hold[job_id] = asyncio.Event()
        pool = make_pool(store, processor, shutdown_timeout_seconds=5)

        await pool.start_background()
        await wait_until(lambda: job_id in processor.started)

        stopping = asyncio.create_task(pool.stop())
        await asyncio.sleep(0.05)
        gate.set()
        await stopping

        assert (await store.get_job(job_id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_abandons_stuck_jobs(self, store, other_store, clock, processor, publish_payload):
        job_id = await store.add_job("publish_post", publish_payload)
        processor.hold[job_id] = asyncio.Event()   # never released
        pool = make_pool(store, processor, shutdown_timeout_seconds=0.05)

        await pool.start_background()
        await wait_until(lambda: job_id in processor.started)
        await pool.stop()

        assert pool.active_job_ids == []
        job = await store.get_job(job_id)
        assert job.status == JobStatus.LOCKED
        assert job.worker_id == "worker-a"
        assert job.attempts == 0

        # another worker picks it up once the lease runs out
        assert await other_store.get_next_job() is None
        clock.advance(seconds=301)
        reclaimed = await other_store.get_next_job()
        assert reclaimed.id == job_id
        assert reclaimed.worker_id == "worker-b"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", ["foreground", "background"])
    async def test_stop_during_fill_claims_nothing_more(
        self, store, clock, processor, publish_payload, monkeypatch, mode,
    ):
        ids = await add_jobs(store, clock, publish_payload, 3)
        claimed: list[str] = []
        get_next_job = store.get_next_job

        async def slow_next_job():
            await asyncio.sleep(0.05)
            job = await get_next_job()
            if job is not None:
                claimed.append(job.id)
            return job

        monkeypatch.setattr(store, "get_next_job", slow_next_job)
        pool = make_pool(store, processor, concurrency=3)

        if mode == "foreground":
            loop = asyncio.create_task(pool.start())
        else:
            loop = await pool.start_background()
        await asyncio.sleep(0.02)   # first claim is in flight
        await pool.stop()

        claimed_at_stop = list(claimed)
        assert loop.done()
        assert pool.active_job_ids == []
        assert claimed_at_stop == [ids[0]]

        await asyncio.sleep(0.15)
        assert claimed == claimed_at_stop
        assert (await store.get_job(ids[0])).status == JobStatus.COMPLETED
        for job_id in ids[1:]:
            assert (await store.get_job(job_id)).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_foreground_start_then_wait_stopped(self, store, processor):
        pool = make_pool(store, processor)

        async def run():
            await pool.start()
            await pool.wait_stopped()

        runner = asyncio.create_task(run())
        await asyncio.sleep(0.02)
        await asyncio.wait_for(pool.stop(), timeout=1)
        await asyncio.wait_for(runner, timeout=1)

    @pytest.mark.asyncio
    async def test_poll_errors_do_not_stop_loop(self, store, processor, monkeypatch):
        calls = []

        async def flaky_next_job():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database is locked")
            return None

        monkeypatch.setattr(store, "get_next_job", flaky_next_job)
        pool = make_pool(store, processor)

        await pool.start_background()
        await wait_until(lambda: len(calls) >= 3)
        await pool.stop()

    @pytest.mark.asyncio
    async def test_wait_stopped(self, store, processor):
        pool = make_pool(store, processor)
        await pool.start_background()
        waiter = asyncio.create_task(pool.wait_stopped())
        await asyncio.sleep(0.02)
        assert not waiter.done()
        await pool.stop()
        await asyncio.wait_for(waiter, timeout=1)

    @pytest.mark.asyncio
    async def test_status(self, store, processor, publish_payload):
        job_id = await store.add_job("publish_post", publish_payload)
        processor.hold[job_id] = asyncio.Event()
        pool = make_pool(store, processor, concurrency=4)

        await pool.poll_once()
        status = pool.get_status()

        assert status["is_running"] is False
        assert status["active_jobs"] == 1
        assert status["active_job_ids"] == [job_id]
        assert status["concurrency"] == 4
        assert status["worker_id"] == "worker-a"
        assert status["processed_count"] == 0
        assert status["last_processed_at"] is None

        processor.hold[job_id].set()
        await wait_until(lambda: not pool.active_job_ids)
        status = pool.get_status()
        assert status["processed_count"] == 1
        assert status["last_processed_at"] is not None
