"""
Database layer — durable job and rate-limit records.

Backends: PostgreSQL / MySQL / SQLite via SQLAlchemy async.

Quick start:
  from database import Database
  async with Database("sqlite:///./jobqueue.db") as db:
      await db.create_all()
"""
from database.models import Base, JobRow, RateLimitRow, UTCDateTime, utcnow
from database.session import Database

__all__ = [
    # ORM models
    "Base", "JobRow", "RateLimitRow", "UTCDateTime", "utcnow",
    # Handle
    "Database",
]
