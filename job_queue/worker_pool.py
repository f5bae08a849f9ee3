"""
Worker Pool — polls the JobStore and runs claimed jobs concurrently.

Each poll fills free slots (up to ``concurrency``) with get_next_job(), then
sleeps ``poll_interval``. Every claimed job runs as its own task, so a slow
publish never holds up the other slots or the poll loop.

Shutdown:
  stop() ──▶ no more polls ──▶ wait ≤ shutdown_timeout for in-flight jobs
                                   └─▶ still running? cancel & abandon
  Abandoned jobs keep their lease; once lock_expiry passes any worker
  (this process after restart, or another) reclaims them.

Horizontal scaling is just more processes: the store's compare-and-swap
claim is the only coordination.
"""
from __future__ import annotations

import asyncio
import signal
import structlog
from datetime import datetime
from typing import Any, Optional

from config.settings import WorkerConfig
from database.models import utcnow
from job_queue.processor import JobProcessor
from job_queue.store import JobStore
from models.schemas import Job, JobResult

logger = structlog.get_logger()


class WorkerPool:
    """
    Usage:
        pool = WorkerPool(store, processor, settings.worker)
        await pool.start_background()
        ...
        await pool.stop()
    """

    def __init__(
        self,
        store: JobStore,
        processor: JobProcessor,
        config: Optional[WorkerConfig] = None,
    ):
        config = config or WorkerConfig()
        self.store = store
        self.processor = processor
        self.concurrency = config.concurrency
        self.poll_interval = config.poll_interval_seconds
        self.shutdown_timeout = config.shutdown_timeout_seconds
        self.job_timeout = config.job_timeout_seconds

        self._active: dict[str, asyncio.Task] = {}
        self._running = False
        self._stopping = False
        self._wake = asyncio.Event()
        self._stopped = asyncio.Event()
        self._loop_done = asyncio.Event()
        self._loop_done.set()
        self._loop_owner: Optional[asyncio.Task] = None

        self.processed_count = 0
        self.failed_count = 0
        self.last_processed_at: Optional[datetime] = None
        self.started_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_job_ids(self) -> list[str]:
        return list(self._active)

    # ── Lifecycle ───────────────────────────────────────────

    async def start(self) -> None:
        """Run the poll loop until stop() is called."""
        if self._running:
            return
        self._running = True
        self._stopping = False
        self._wake.clear()
        self._stopped.clear()
        self._loop_done.clear()
        self._loop_owner = asyncio.current_task()
        self.started_at = utcnow()
        logger.info("worker_started",
                    worker_id=self.store.worker_id, queue=self.store.queue_name,
                    concurrency=self.concurrency, poll_interval=self.poll_interval)

        try:
            while self._running:
                try:
                    await self.poll_once()
                except Exception as e:
                    # Store unreachable: keep polling, in-flight jobs are unaffected.
                    logger.exception("worker_poll_failed", worker_id=self.store.worker_id, error=str(e))
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
                self._wake.clear()
        finally:
            self._loop_owner = None
            self._loop_done.set()

    async def start_background(self) -> asyncio.Task:
        """Start polling in a background task. Returns the task handle."""
        task = asyncio.create_task(self.start())
        # Let the loop mark itself running before the caller inspects status.
        await asyncio.sleep(0)
        return task

    async def stop(self) -> None:
        """Stop polling and wait up to shutdown_timeout for in-flight jobs."""
        if not self._running and not self._active:
            self._stopped.set()
            return

        self._running = False
        self._stopping = True
        self._wake.set()
        logger.info("worker_stopping", worker_id=self.store.worker_id,
                    active_jobs=len(self._active))

        # A claim already in flight still lands in _active, so the loop must
        # finish its current fill before the snapshot below.
        if self._loop_owner is not None and self._loop_owner is not asyncio.current_task():
            await self._loop_done.wait()

        pending = set(self._active.values())
        if pending:
            _, pending = await asyncio.wait(pending, timeout=self.shutdown_timeout)
        if pending:
            abandoned = [job_id for job_id, task in self._active.items() if task in pending]
            # No unlock: these leases expire on their own and the jobs get reclaimed.
            logger.warning("shutdown_abandoned_jobs",
                           worker_id=self.store.worker_id,
                           job_ids=abandoned, count=len(abandoned),
                           shutdown_timeout=self.shutdown_timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self._stopped.set()
        logger.info("worker_stopped",
                    worker_id=self.store.worker_id,
                    processed=self.processed_count, failed=self.failed_count)

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    def install_signal_handlers(self) -> None:
        """SIGTERM / SIGINT trigger a graceful stop."""
        try:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda: asyncio.create_task(self.stop()))
        except (NotImplementedError, RuntimeError):
            # Signal handling not available (e.g., Windows)
            logger.debug("signal_handlers_unavailable")

    # ── Polling ─────────────────────────────────────────────

    async def poll_once(self) -> int:
        """Fill free slots with claimable jobs. Returns how many were started."""
        started = 0
        while not self._stopping and self._has_capacity():
            job = await self.store.get_next_job()
            if job is None:
                break
            self._launch(job)
            started += 1
        return started

    async def process_next(self) -> Optional[dict[str, Any]]:
        """Claim one job and run it to completion inline. None when idle."""
        job = await self.store.get_next_job()
        if job is None:
            return None
        result = await self._run_job(job)
        return {"job_id": job.id, "job_type": job.job_type.value,
                "success": result.success, "error": result.error}

    def _has_capacity(self) -> bool:
        return len(self._active) < self.concurrency

    def _launch(self, job: Job) -> None:
        task = asyncio.create_task(self._run_job(job), name=f"job-{job.id}")
        self._active[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._active.pop(job_id, None))

    async def _run_job(self, job: Job) -> JobResult:
        try:
            result = await asyncio.wait_for(self.processor.process(job), timeout=self.job_timeout)
        except asyncio.TimeoutError:
            result = JobResult.fail(f"Job timed out after {self.job_timeout:g}s")

        try:
            if result.success:
                await self.store.complete_job(job.id, result.data)
                self.processed_count += 1
            elif result.defer_until is not None:
                await self.store.defer_job(job.id, result.defer_until, result.error or "rate limited")
            else:
                await self.store.fail_job(job.id, result.error or "Unknown error")
                self.failed_count += 1
        except Exception as e:
            # The lease is still ours until it expires; the job will be picked up again.
            logger.exception("job_settle_failed", job_id=job.id, worker_id=self.store.worker_id,
                             error=str(e))
        self.last_processed_at = utcnow()
        return result

    # ── Monitoring ──────────────────────────────────────────

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self._running,
            "active_jobs": len(self._active),
            "concurrency": self.concurrency,
            "worker_id": self.store.worker_id,
            "active_job_ids": self.active_job_ids,
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "last_processed_at": self.last_processed_at.isoformat() if self.last_processed_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }
