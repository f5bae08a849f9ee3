"""
FastAPI Application — queue, worker and rate-limit administration.

Provides:
- Queue: stats, per-feed job listing, enqueue, cancel, cleanup, dead-letter
- Worker: status, manual processing (single / batch), start / stop in-process pool
- Rate limits: status per action or all, record, custom limits, clear block

The UI and schedulers talk to this surface; workers normally run as their
own processes (scripts/run_worker.py) against the same database.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from channels.graph_api import GraphAPIClient
from config.logging import configure_logging
from config.settings import Settings, get_settings
from database.models import utcnow
from database.session import Database
from job_queue.processor import JobProcessor
from job_queue.store import JobStore, NewJob
from job_queue.worker_pool import WorkerPool
from models.schemas import ActionType, JobStatus, JobValidationError
from rate_limit.limiter import RateLimiter, limits_from_settings

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Services:
    settings: Settings
    db: Database
    store: JobStore
    limiter: RateLimiter
    graph: GraphAPIClient
    processor: JobProcessor
    pool: WorkerPool


def build_services(
    settings: Settings,
    database: Optional[Database] = None,
    graph: Optional[GraphAPIClient] = None,
) -> Services:
    db = database or Database(settings.database.url, echo=settings.database.echo)
    store = JobStore(db, settings.queue)
    limiter = RateLimiter(db, defaults=limits_from_settings(settings.rate_limits))
    graph = graph or GraphAPIClient(settings.graph_api)
    processor = JobProcessor(graph, limiter, settings.publish)
    pool = WorkerPool(store, processor, settings.worker)
    return Services(settings, db, store, limiter, graph, processor, pool)


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    graph: Optional[GraphAPIClient] = None,
    start_worker: bool = False,
) -> FastAPI:
    settings = settings or get_settings()
    services = build_services(settings, database, graph)
    owns_db = database is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.logging)
        await services.db.open()
        await services.db.create_all()
        if start_worker:
            await services.pool.start_background()
        logger.info("jobqueue_api_started", queue=services.store.queue_name,
                    inline_worker=start_worker)
        yield

        await services.pool.stop()
        await services.graph.close()
        if owns_db:
            await services.db.close()
        logger.info("jobqueue_api_stopped")

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Persistent job queue for social publishing and automation",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def _services(request: Request) -> Services:
    return request.app.state.services


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class EnqueueRequest(BaseModel):
    type: str
    payload: dict[str, Any]
    scheduled_for: Optional[datetime] = None
    priority: int = 0
    max_attempts: Optional[int] = Field(default=None, ge=1)
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None

    def to_new_job(self) -> NewJob:
        return NewJob(
            job_type=self.type, payload=self.payload,
            scheduled_for=self.scheduled_for, priority=self.priority,
            max_attempts=self.max_attempts,
            reference_type=self.reference_type, reference_id=self.reference_id,
        )


class EnqueueBatchRequest(BaseModel):
    jobs: list[EnqueueRequest] = Field(min_length=1)


class RecordActionRequest(BaseModel):
    feed_id: str
    action_type: str


class CustomLimitsRequest(BaseModel):
    feed_id: str
    action_type: str
    daily_limit: Optional[int] = Field(default=None, ge=0)
    hourly_limit: Optional[int] = Field(default=None, ge=0)


def _action_type(value: str) -> ActionType:
    try:
        return ActionType(value.upper())
    except ValueError:
        valid = ", ".join(a.value for a in ActionType)
        raise HTTPException(status_code=400, detail=f"Invalid action_type. Must be one of: {valid}")


def _job_status(value: Optional[str]) -> Optional[JobStatus]:
    if value is None:
        return None
    try:
        return JobStatus(value.upper())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid status: {value}")


# ══════════════════════════════════════════════════════════════
#  ROUTES
# ══════════════════════════════════════════════════════════════

def _register_routes(app: FastAPI) -> None:

    # ── Health ──────────────────────────────────────────────

    @app.get("/health")
    async def health(request: Request):
        s = _services(request)
        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "queue": s.store.queue_name,
            "worker": s.pool.get_status(),
        }

    # ── Queue ───────────────────────────────────────────────

    @app.get("/api/v1/queue")
    async def queue_overview(
        request: Request,
        feed_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = Query(default=50, ge=1, le=500),
    ):
        s = _services(request)
        body: dict[str, Any] = {"stats": await s.store.get_stats()}
        if feed_id:
            jobs = await s.store.get_jobs_for_feed(feed_id, status=_job_status(status), limit=limit)
            body["jobs"] = [job.model_dump(mode="json") for job in jobs]
        return body

    @app.post("/api/v1/queue", status_code=201)
    async def enqueue(req: EnqueueRequest, request: Request):
        s = _services(request)
        new_job = req.to_new_job()
        try:
            job_id = await s.store.add_job(
                new_job.job_type, new_job.payload,
                scheduled_for=new_job.scheduled_for, priority=new_job.priority,
                max_attempts=new_job.max_attempts,
                reference_type=new_job.reference_type, reference_id=new_job.reference_id,
            )
        except JobValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"job_id": job_id}

    @app.post("/api/v1/queue/batch", status_code=201)
    async def enqueue_batch(req: EnqueueBatchRequest, request: Request):
        s = _services(request)
        try:
            job_ids = await s.store.add_jobs([j.to_new_job() for j in req.jobs])
        except JobValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"job_ids": job_ids}

    @app.delete("/api/v1/queue")
    async def cancel_or_cleanup(
        request: Request,
        job_id: Optional[str] = None,
        cleanup: Optional[int] = Query(default=None, ge=0),
    ):
        s = _services(request)
        if job_id:
            return {"job_id": job_id, "cancelled": await s.store.cancel_job(job_id)}
        if cleanup is not None:
            return {"removed": await s.store.cleanup(older_than_days=cleanup)}
        raise HTTPException(status_code=400, detail="job_id or cleanup is required")

    @app.get("/api/v1/queue/dead-letter")
    async def dead_letter_list(request: Request, limit: int = Query(default=100, ge=1, le=500)):
        s = _services(request)
        jobs = await s.store.get_dead_letter_jobs(limit=limit)
        return {"jobs": [job.model_dump(mode="json") for job in jobs]}

    @app.post("/api/v1/queue/{job_id}/dead-letter")
    async def dead_letter(job_id: str, request: Request):
        s = _services(request)
        job = await s.store.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        if not await s.store.dead_letter_job(job_id):
            raise HTTPException(status_code=409,
                                detail=f"Only FAILED jobs can be dead-lettered (status is {job.status.value})")
        return {"job_id": job_id, "status": JobStatus.DEAD_LETTER.value}

    # ── Worker ──────────────────────────────────────────────

    @app.get("/api/v1/worker")
    async def worker_status(request: Request):
        s = _services(request)
        stats = await s.store.get_stats()
        return {
            "worker": s.pool.get_status(),
            "queue": stats,
            "recommendation": (
                "Consider running a dedicated worker process for production"
                if stats["pending"] > 10
                else "Queue is manageable with inline processing"
            ),
        }

    @app.post("/api/v1/worker")
    async def worker_control(
        request: Request,
        mode: str = "single",
        max_jobs: int = Query(default=10, ge=1, le=100, alias="max"),
    ):
        s = _services(request)
        if mode == "single":
            outcome = await s.pool.process_next()
            if outcome is None:
                return {"processed": False, "message": "No jobs available to process"}
            return {"processed": True, **outcome}

        if mode == "batch":
            results = []
            while len(results) < max_jobs:
                outcome = await s.pool.process_next()
                if outcome is None:
                    break
                results.append(outcome)
            return {"processed": len(results), "results": results}

        if mode == "start":
            if s.pool.is_running:
                return {"message": "Worker is already running", "worker": s.pool.get_status()}
            await s.pool.start_background()
            return {"message": "Worker started", "worker": s.pool.get_status()}

        if mode == "stop":
            await s.pool.stop()
            return {"message": "Worker stopped", "worker": s.pool.get_status()}

        raise HTTPException(status_code=400, detail="Invalid mode. Use: single, batch, start, or stop")

    # ── Rate limits ─────────────────────────────────────────

    @app.get("/api/v1/rate-limits")
    async def rate_limits(request: Request, feed_id: str, action_type: Optional[str] = None):
        s = _services(request)
        if action_type:
            action = _action_type(action_type)
            status = await s.limiter.check_limit(feed_id, action)
            return {"action_type": action.value, "status": status}
        return {
            "limits": await s.limiter.get_all_limits(feed_id),
            "daily_usage": await s.limiter.get_daily_usage(feed_id),
        }

    @app.post("/api/v1/rate-limits")
    async def record_action(req: RecordActionRequest, request: Request):
        s = _services(request)
        status = await s.limiter.record_action(req.feed_id, _action_type(req.action_type))
        return {"recorded": True, "status": status}

    @app.put("/api/v1/rate-limits")
    async def set_limits(req: CustomLimitsRequest, request: Request):
        s = _services(request)
        action = _action_type(req.action_type)
        await s.limiter.set_custom_limits(req.feed_id, action,
                                          daily=req.daily_limit, hourly=req.hourly_limit)
        return {"updated": True, "status": await s.limiter.check_limit(req.feed_id, action)}

    @app.delete("/api/v1/rate-limits")
    async def clear_block(request: Request, feed_id: str, action_type: str):
        s = _services(request)
        action = _action_type(action_type)
        cleared = await s.limiter.clear_block(feed_id, action)
        return {"cleared": cleared, "status": await s.limiter.check_limit(feed_id, action)}


app = create_app()
