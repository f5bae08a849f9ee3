"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Timestamps are stored as naive UTC and always handed back timezone-aware,
    so comparisons behave the same on every backend.
  - String primary keys (uuid hex) — no database-specific sequences.
  - Status is a plain string column; the JobStatus enum lives in models.schemas.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, DateTime, Text, Boolean,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """DateTime that stores naive UTC and returns aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Jobs
# ──────────────────────────────────────────────────────────────

class JobRow(Base):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    queue_name: Mapped[str] = mapped_column(String(128), nullable=False)
    job_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)

    # What produced the job: a scheduled post, an automation rule, ...
    reference_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    payload: Mapped[Any] = mapped_column(JSON, nullable=False)
    result: Mapped[Any] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lease
    worker_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    lock_expiry: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_jobs_claim", "queue_name", "status", "scheduled_for"),
        Index("ix_jobs_entity_created", "entity_id", "created_at"),
        Index("ix_jobs_status_updated", "status", "updated_at"),
        Index("ix_jobs_reference", "reference_type", "reference_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "queue_name": self.queue_name,
            "job_type": self.job_type, "entity_id": self.entity_id,
            "payload": self.payload, "result": self.result,
            "reference_type": self.reference_type, "reference_id": self.reference_id,
            "status": self.status, "priority": self.priority,
            "scheduled_for": self.scheduled_for,
            "attempts": self.attempts, "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "worker_id": self.worker_id, "locked_at": self.locked_at,
            "lock_expiry": self.lock_expiry,
            "created_at": self.created_at, "updated_at": self.updated_at,
            "processed_at": self.processed_at, "completed_at": self.completed_at,
        }


# ──────────────────────────────────────────────────────────────
#  Rate limits
# ──────────────────────────────────────────────────────────────

class RateLimitRow(Base):
    __tablename__ = "rate_limits"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)

    daily_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    daily_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    daily_reset_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    hourly_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    hourly_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    hourly_reset_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    blocked_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    block_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Limits set by an operator rather than taken from the defaults.
    custom_limits: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("entity_id", "action_type", name="uq_rate_limits_entity_action"),
    )
