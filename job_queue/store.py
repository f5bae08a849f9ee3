"""
JobStore — durable job records plus atomic claim/release operations.

Every worker process constructs its own JobStore over a shared Database.
Correctness across processes rests on one primitive: a conditional UPDATE
whose WHERE clause restates what the caller observed, checked through the
affected-row count. No in-process lock is involved.

Lifecycle:
                           ┌──────── fail (attempts < max) ◀──┐
                           ▼          defer (rate limited)    │
  add_job ──▶ PENDING ── try_claim ──▶ LOCKED ──▶ complete ──▶ COMPLETED
                 ▲                      │    └──▶ fail (attempts = max) ──▶ FAILED
                 └── lease expiry ──────┘                                   │
                                                    dead_letter_job ──▶ DEAD_LETTER

  cancel_job: PENDING / LOCKED ──▶ FAILED ("cancelled")
"""
from __future__ import annotations

import os
import uuid
import structlog
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional, Union

from pydantic.alias_generators import to_snake
from sqlalchemy import and_, delete, func, or_, select, update

from config.settings import QueueConfig
from database.models import JobRow, utcnow
from database.session import Database
from job_queue.retry import RetryPolicy
from models.schemas import (
    HELD_STATUSES, TERMINAL_STATUSES,
    Job, JobStatus, JobValidationError,
    ReferenceType, load_payload, parse_job_type, parse_reference_type, validate_payload,
)

logger = structlog.get_logger()

Clock = Callable[[], datetime]

_HELD = [s.value for s in HELD_STATUSES]
_TERMINAL = [s.value for s in TERMINAL_STATUSES]
_CLAIMABLE = [JobStatus.PENDING.value, JobStatus.LOCKED.value]


@dataclass
class NewJob:
    """One entry of an add_jobs() batch."""
    job_type: Any
    payload: Any
    scheduled_for: Optional[datetime] = None
    priority: int = 0
    max_attempts: Optional[int] = None
    reference_type: Optional[Union[ReferenceType, str]] = None
    reference_id: Optional[str] = None


_NEW_JOB_FIELDS = frozenset(f.name for f in fields(NewJob))


def _entry_from_dict(item: dict[str, Any]) -> NewJob:
    values = {to_snake(key): value for key, value in item.items()}
    if "type" in values:
        values["job_type"] = values.pop("type")
    unknown = sorted(set(values) - _NEW_JOB_FIELDS)
    if unknown:
        raise JobValidationError(f"Unknown batch entry field(s): {', '.join(unknown)}")
    missing = [name for name in ("job_type", "payload") if name not in values]
    if missing:
        raise JobValidationError(f"Batch entry is missing {', '.join(missing)}")
    return NewJob(**values)


def _default_worker_id() -> str:
    return f"worker_{os.getpid()}_{uuid.uuid4().hex[:8]}"


def _same(column, value):
    """Null-safe equality for compare-and-swap predicates."""
    return column.is_(None) if value is None else column == value


class JobStore:
    """
    Usage:
        store = JobStore(db, settings.queue)
        job_id = await store.add_job("publish_post", {...})
        job = await store.get_next_job()
        if job:
            await store.complete_job(job.id, {"post_id": "..."})
    """

    def __init__(
        self,
        db: Database,
        config: Optional[QueueConfig] = None,
        worker_id: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Clock = utcnow,
    ):
        config = config or QueueConfig()
        self.db = db
        self.queue_name = config.name
        self.default_max_attempts = config.retry_attempts
        self.lease_duration = timedelta(seconds=config.lease_duration_seconds)
        self.worker_id = worker_id or _default_worker_id()
        self.retry_policy = retry_policy or RetryPolicy.from_config(config)
        self.clock = clock

    # ── Enqueue ─────────────────────────────────────────────

    def _build_row(self, entry: NewJob, now: datetime) -> JobRow:
        job_type = parse_job_type(entry.job_type)
        payload = validate_payload(job_type, entry.payload)
        max_attempts = entry.max_attempts if entry.max_attempts is not None else self.default_max_attempts
        if max_attempts < 1:
            raise JobValidationError(f"max_attempts must be at least 1, got {max_attempts}")
        reference_type = parse_reference_type(entry.reference_type)
        return JobRow(
            id=uuid.uuid4().hex,
            queue_name=self.queue_name,
            job_type=job_type.value,
            entity_id=payload.entity_id,
            reference_type=reference_type.value if reference_type else None,
            reference_id=entry.reference_id,
            payload=payload.model_dump(mode="json"),
            status=JobStatus.PENDING.value,
            priority=int(entry.priority or 0),
            scheduled_for=entry.scheduled_for,
            attempts=0,
            max_attempts=max_attempts,
            created_at=now,
            updated_at=now,
        )

    async def add_job(
        self,
        job_type: Any,
        payload: Any,
        scheduled_for: Optional[datetime] = None,
        priority: int = 0,
        max_attempts: Optional[int] = None,
        reference_type: Optional[Union[ReferenceType, str]] = None,
        reference_id: Optional[str] = None,
    ) -> str:
        """Validate and enqueue one job. Raises JobValidationError if rejected."""
        entry = NewJob(job_type, payload, scheduled_for, priority, max_attempts,
                      reference_type, reference_id)
        row = self._build_row(entry, self.clock())
        async with self.db.session() as session:
            session.add(row)

        logger.info("job_added",
                    queue=self.queue_name, job_id=row.id, job_type=row.job_type,
                    entity_id=row.entity_id, priority=row.priority,
                    scheduled_for=row.scheduled_for.isoformat() if row.scheduled_for else None)
        return row.id

    async def add_jobs(self, batch: Iterable[Union[NewJob, dict[str, Any]]]) -> list[str]:
        """
        Enqueue a batch in one transaction: every row is written or none is.

        Dict entries take the NewJob field names in snake_case or camelCase,
        with ``type`` accepted as an alias for ``job_type``.
        """
        entries = []
        for item in batch:
            if isinstance(item, dict):
                item = _entry_from_dict(item)
            entries.append(item)
        if not entries:
            return []

        now = self.clock()
        ids: list[str] = []
        async with self.db.session() as session:
            for entry in entries:
                row = self._build_row(entry, now)
                session.add(row)
                await session.flush()
                ids.append(row.id)

        logger.info("jobs_added", queue=self.queue_name, count=len(ids))
        return ids

    # ── Claim ───────────────────────────────────────────────

    def _claimable(self, now: datetime):
        """Declarative eligibility predicate."""
        return and_(
            JobRow.queue_name == self.queue_name,
            JobRow.status.in_(_CLAIMABLE),
            or_(JobRow.lock_expiry.is_(None), JobRow.lock_expiry < now),
            or_(JobRow.scheduled_for.is_(None), JobRow.scheduled_for <= now),
            JobRow.attempts < JobRow.max_attempts,
        )

    async def find_claimable(self) -> Optional[Job]:
        """Phase 1 (read-only): the job this worker should try to claim next."""
        now = self.clock()
        stmt = (
            select(JobRow)
            .where(self._claimable(now))
            .order_by(
                JobRow.priority.desc(),
                func.coalesce(JobRow.scheduled_for, JobRow.created_at).asc(),
                JobRow.created_at.asc(),
                JobRow.id.asc(),
            )
            .limit(1)
        )
        async with self.db.session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _to_job(row) if row else None

    async def try_claim(self, candidate: Job) -> bool:
        """
        Phase 2: compare-and-swap the lease onto this worker.

        Succeeds only if the row still looks exactly as it did in phase 1
        and is still eligible. False means another worker got there first.
        """
        now = self.clock()
        stmt = (
            update(JobRow)
            .where(
                JobRow.id == candidate.id,
                self._claimable(now),
                JobRow.status == candidate.status.value,
                JobRow.attempts == candidate.attempts,
                _same(JobRow.worker_id, candidate.worker_id),
                _same(JobRow.lock_expiry, candidate.lock_expiry),
            )
            .values(
                status=JobStatus.LOCKED.value,
                worker_id=self.worker_id,
                locked_at=now,
                lock_expiry=now + self.lease_duration,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def get_next_job(self) -> Optional[Job]:
        """Select-then-claim. Returns None when idle or when the race is lost."""
        candidate = await self.find_claimable()
        if candidate is None:
            return None

        if not await self.try_claim(candidate):
            logger.debug("claim_race_lost",
                         queue=self.queue_name, job_id=candidate.id, worker_id=self.worker_id)
            return None

        job = await self.get_job(candidate.id)
        reclaimed = candidate.status == JobStatus.LOCKED
        logger.info("job_claimed",
                    queue=self.queue_name, job_id=candidate.id,
                    job_type=candidate.job_type.value, worker_id=self.worker_id,
                    attempts=candidate.attempts, reclaimed=reclaimed,
                    previous_worker=candidate.worker_id if reclaimed else None)
        return job

    # ── Settle ──────────────────────────────────────────────

    def _held_by_me(self, job_id: str):
        return and_(
            JobRow.id == job_id,
            JobRow.status.in_(_HELD),
            JobRow.worker_id == self.worker_id,
        )

    async def complete_job(self, job_id: str, result: Optional[dict[str, Any]] = None) -> bool:
        """
        Mark a held job COMPLETED.

        No-op (False) if the job was cancelled, reclaimed by another worker
        or is already terminal.
        """
        now = self.clock()
        stmt = (
            update(JobRow)
            .where(self._held_by_me(job_id))
            .values(
                status=JobStatus.COMPLETED.value,
                result=result,
                worker_id=None, locked_at=None, lock_expiry=None,
                processed_at=now, completed_at=now, updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as session:
            done = (await session.execute(stmt)).rowcount == 1

        if done:
            logger.info("job_completed", queue=self.queue_name, job_id=job_id,
                        worker_id=self.worker_id)
        else:
            logger.warning("job_complete_ignored", queue=self.queue_name, job_id=job_id,
                           worker_id=self.worker_id, reason="not held by this worker")
        return done

    async def fail_job(self, job_id: str, error: str) -> bool:
        """
        Record a failed attempt.

        attempts += 1; below max_attempts the job goes back to PENDING with
        a backoff delay, otherwise it is terminally FAILED. No-op (False) if
        the job is not held by this worker.
        """
        now = self.clock()
        async with self.db.session() as session:
            row = (await session.execute(
                select(JobRow).where(self._held_by_me(job_id))
            )).scalars().first()
            if row is None:
                logger.warning("job_fail_ignored", queue=self.queue_name, job_id=job_id,
                               worker_id=self.worker_id, error=error)
                return False

            attempts = row.attempts + 1
            values: dict[str, Any] = {
                "attempts": attempts,
                "last_error": error,
                "worker_id": None, "locked_at": None, "lock_expiry": None,
                "processed_at": now, "updated_at": now,
            }
            if attempts < row.max_attempts:
                values["status"] = JobStatus.PENDING.value
                values["scheduled_for"] = now + self.retry_policy.delay_for(attempts)
            else:
                values["status"] = JobStatus.FAILED.value

            stmt = (
                update(JobRow)
                .where(self._held_by_me(job_id), JobRow.attempts == row.attempts)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if (await session.execute(stmt)).rowcount != 1:
                logger.warning("job_fail_ignored", queue=self.queue_name, job_id=job_id,
                               worker_id=self.worker_id, error=error)
                return False

        if values["status"] == JobStatus.PENDING.value:
            logger.warning("job_retry_scheduled",
                           queue=self.queue_name, job_id=job_id, attempts=attempts,
                           max_attempts=row.max_attempts, error=error,
                           retry_at=values["scheduled_for"].isoformat())
        else:
            logger.error("job_failed_permanently",
                         queue=self.queue_name, job_id=job_id, attempts=attempts,
                         error=error)
        return True

    async def defer_job(self, job_id: str, until: datetime, reason: str = "rate limited") -> bool:
        """
        Put a held job back to PENDING until ``until`` without counting a failure.
        """
        now = self.clock()
        earliest = now + timedelta(seconds=self.retry_policy.min_delay)
        when = until if until > earliest else earliest
        stmt = (
            update(JobRow)
            .where(self._held_by_me(job_id))
            .values(
                status=JobStatus.PENDING.value,
                scheduled_for=when,
                last_error=reason,
                worker_id=None, locked_at=None, lock_expiry=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as session:
            done = (await session.execute(stmt)).rowcount == 1

        if done:
            logger.info("job_deferred", queue=self.queue_name, job_id=job_id,
                        until=when.isoformat(), reason=reason)
        else:
            logger.warning("job_defer_ignored", queue=self.queue_name, job_id=job_id,
                           worker_id=self.worker_id)
        return done

    # ── Administrative ──────────────────────────────────────

    async def cancel_job(self, job_id: str, reason: str = "cancelled") -> bool:
        """
        PENDING/LOCKED → FAILED. Does not interrupt a worker already running
        the job; that worker's later complete/fail becomes a no-op.
        """
        now = self.clock()
        stmt = (
            update(JobRow)
            .where(
                JobRow.id == job_id,
                JobRow.status.in_([JobStatus.PENDING.value, *_HELD]),
            )
            .values(
                status=JobStatus.FAILED.value,
                last_error=reason,
                worker_id=None, locked_at=None, lock_expiry=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as session:
            done = (await session.execute(stmt)).rowcount == 1

        logger.info("job_cancelled" if done else "job_cancel_ignored",
                    queue=self.queue_name, job_id=job_id)
        return done

    async def dead_letter_job(self, job_id: str) -> bool:
        """Operator promotion of a FAILED job to DEAD_LETTER."""
        now = self.clock()
        stmt = (
            update(JobRow)
            .where(JobRow.id == job_id, JobRow.status == JobStatus.FAILED.value)
            .values(status=JobStatus.DEAD_LETTER.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as session:
            done = (await session.execute(stmt)).rowcount == 1
        if done:
            logger.info("job_dead_lettered", queue=self.queue_name, job_id=job_id)
        return done

    async def cleanup(self, older_than_days: int = 7) -> int:
        """Delete terminal jobs last touched before the cutoff. Returns count removed."""
        cutoff = self.clock() - timedelta(days=older_than_days)
        stmt = (
            delete(JobRow)
            .where(
                JobRow.queue_name == self.queue_name,
                JobRow.status.in_(_TERMINAL),
                JobRow.updated_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as session:
            removed = (await session.execute(stmt)).rowcount or 0

        logger.info("jobs_cleaned_up", queue=self.queue_name, removed=removed,
                    older_than_days=older_than_days)
        return removed

    # ── Queries ─────────────────────────────────────────────

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self.db.session() as session:
            row = await session.get(JobRow, job_id)
            return _to_job(row) if row else None

    async def get_jobs_for_feed(
        self,
        entity_id: str,
        status: Optional[Union[JobStatus, str]] = None,
        limit: int = 50,
    ) -> list[Job]:
        """Newest first."""
        stmt = select(JobRow).where(
            JobRow.queue_name == self.queue_name,
            JobRow.entity_id == entity_id,
        )
        if status is not None:
            stmt = stmt.where(JobRow.status == JobStatus(status).value)
        stmt = stmt.order_by(JobRow.created_at.desc(), JobRow.id.desc()).limit(limit)
        return await self._list(stmt)

    async def get_dead_letter_jobs(self, limit: int = 100) -> list[Job]:
        stmt = (
            select(JobRow)
            .where(
                JobRow.queue_name == self.queue_name,
                JobRow.status == JobStatus.DEAD_LETTER.value,
            )
            .order_by(JobRow.updated_at.desc())
            .limit(limit)
        )
        return await self._list(stmt)

    async def get_stats(self) -> dict[str, int]:
        """Counts bucketed into pending / processing / completed / failed, plus total."""
        stmt = (
            select(JobRow.status, func.count())
            .where(JobRow.queue_name == self.queue_name)
            .group_by(JobRow.status)
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).all()

        stats = {"pending": 0, "processing": 0, "completed": 0, "failed": 0, "total": 0}
        buckets = {
            JobStatus.PENDING.value: "pending",
            JobStatus.LOCKED.value: "processing",
            JobStatus.PROCESSING.value: "processing",
            JobStatus.COMPLETED.value: "completed",
            JobStatus.FAILED.value: "failed",
            JobStatus.DEAD_LETTER.value: "failed",
        }
        for status, count in rows:
            bucket = buckets.get(status)
            if bucket:
                stats[bucket] += count
            stats["total"] += count
        return stats

    async def _list(self, stmt) -> list[Job]:
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_job(row) for row in rows]


def _to_job(row: JobRow) -> Job:
    data = row.to_dict()
    data["payload"] = load_payload(row.payload)
    return Job.model_validate(data)
