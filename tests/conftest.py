"""Shared test fixtures for the job queue."""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from config.settings import QueueConfig
from database.session import Database
from job_queue.store import JobStore
from rate_limit.limiter import RateLimiter


class FakeClock:
    """Manually advanced UTC clock, callable like utcnow()."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    # 12:30 UTC: next hourly reset 13:00, next daily reset midnight
    return FakeClock(datetime(2025, 3, 10, 12, 30, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def db(tmp_path):
    """A real SQLite database file per test (multiple connections, real locking)."""
    database = Database(f"sqlite:///{tmp_path / 'jobs.db'}")
    await database.open()
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig(
        name="social-exchange",
        retry_attempts=3,
        retry_delay_seconds=60,
        lease_duration_seconds=300,
    )


@pytest.fixture
def store(db, queue_config, clock) -> JobStore:
    return JobStore(db, queue_config, worker_id="worker-a", clock=clock)


@pytest.fixture
def other_store(db, queue_config, clock) -> JobStore:
    """A second worker process sharing the same database."""
    return JobStore(db, queue_config, worker_id="worker-b", clock=clock)


@pytest.fixture
def limiter(db, clock) -> RateLimiter:
    return RateLimiter(db, clock=clock)


@pytest.fixture
def publish_payload() -> dict:
    return {"entityId": "f1", "caption": "hi", "mediaUrls": ["https://cdn.example.com/a.jpg"]}


@pytest.fixture
def dm_payload() -> dict:
    return {
        "entityId": "f1",
        "ruleId": "rule_1",
        "targetId": "user_42",
        "accessToken": "tok",
        "messageText": "Thanks for the follow!",
    }
