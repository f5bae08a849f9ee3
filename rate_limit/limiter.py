"""
RateLimiter — per-(entity, action type) daily and hourly counters.

Windows are aligned to UTC: the hourly window ends at the top of the next
hour, the daily window at the next UTC midnight. Counters are reset lazily
on the next access once a window has ended, and an expired block is
cleared the same way.

check_limit and record_action are separate calls, so two workers can both
pass a check and push a counter one or two past its limit before the block
lands. That overshoot is accepted.

Block policy: when a counter reaches its limit the record is blocked until
the *latest* reset among the exhausted windows. Exhausting only the hourly
window blocks until the next hour; exhausting the daily window (alone or
together with the hourly one) blocks until the next day.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import RateLimitRow, utcnow
from database.session import Database
from models.schemas import (
    ActionType, DailyUsage, RateLimitStatus,
    WindowCounts, WindowLimits, WindowResets,
    DEFAULT_RATE_LIMITS, FALLBACK_RATE_LIMIT,
)

logger = structlog.get_logger()

Clock = Callable[[], datetime]


def next_hour_start(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


def next_day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)


def _action_key(action_type: Union[ActionType, str]) -> str:
    if isinstance(action_type, ActionType):
        return action_type.value
    return str(action_type).strip().upper()


def limits_from_settings(overrides: dict[str, dict[str, int]]) -> dict[str, WindowLimits]:
    """Merge configured per-action overrides onto the built-in defaults."""
    merged = dict(DEFAULT_RATE_LIMITS)
    for action, limits in (overrides or {}).items():
        merged[_action_key(action)] = WindowLimits(daily=limits["daily"], hourly=limits["hourly"])
    return merged


class RateLimiter:
    """
    Usage:
        limiter = RateLimiter(db)
        status = await limiter.check_limit("feed_1", ActionType.DM)
        if status.allowed:
            ...perform the action...
            await limiter.record_action("feed_1", ActionType.DM)
    """

    # The five action types automation actually performs; UNFOLLOW only
    # appears when a caller asks for it explicitly.
    TRACKED_ACTIONS = (
        ActionType.LIKE, ActionType.COMMENT, ActionType.FOLLOW,
        ActionType.DM, ActionType.PUBLISH,
    )

    def __init__(
        self,
        db: Database,
        defaults: Optional[dict[str, WindowLimits]] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.defaults = defaults if defaults is not None else dict(DEFAULT_RATE_LIMITS)
        self.clock = clock

    def default_limits(self, action_type: Union[ActionType, str]) -> WindowLimits:
        return self.defaults.get(_action_key(action_type), FALLBACK_RATE_LIMIT)

    # ── Public API ──────────────────────────────────────────

    async def check_limit(self, entity_id: str, action_type: Union[ActionType, str]) -> RateLimitStatus:
        action = _action_key(action_type)
        now = self.clock()
        await self._ensure_record(entity_id, action, now)

        async with self.db.session() as session:
            await self._reset_expired(session, entity_id, action, now)
            row = await self._load(session, entity_id, action)
            status = _status(row, now)

        if not status.allowed:
            logger.info("rate_limit_blocked",
                        entity_id=entity_id, action_type=action,
                        blocked_until=status.blocked_until.isoformat() if status.blocked_until else None,
                        reason=status.block_reason,
                        remaining_daily=status.remaining.daily,
                        remaining_hourly=status.remaining.hourly)
        return status

    async def record_action(self, entity_id: str, action_type: Union[ActionType, str]) -> RateLimitStatus:
        """
        Count one performed action against both windows, blocking the record
        if either window is now exhausted. Returns the resulting status.
        """
        action = _action_key(action_type)
        now = self.clock()
        await self._ensure_record(entity_id, action, now)

        async with self.db.session() as session:
            await self._reset_expired(session, entity_id, action, now)
            await session.execute(
                update(RateLimitRow)
                .where(RateLimitRow.entity_id == entity_id, RateLimitRow.action_type == action)
                .values(
                    daily_count=RateLimitRow.daily_count + 1,
                    hourly_count=RateLimitRow.hourly_count + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            row = await self._load(session, entity_id, action)

            daily_out = row.daily_count >= row.daily_limit
            hourly_out = row.hourly_count >= row.hourly_limit
            if daily_out or hourly_out:
                if daily_out:
                    until, reason = row.daily_reset_at, "Daily limit reached"
                else:
                    until, reason = row.hourly_reset_at, "Hourly limit reached"
                await session.execute(
                    update(RateLimitRow)
                    .where(
                        RateLimitRow.id == row.id,
                        (RateLimitRow.blocked_until.is_(None)) | (RateLimitRow.blocked_until < until),
                    )
                    .values(blocked_until=until, block_reason=reason, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                await session.refresh(row)
                logger.warning("rate_limit_reached",
                               entity_id=entity_id, action_type=action,
                               blocked_until=until.isoformat(), reason=reason,
                               daily_count=row.daily_count, hourly_count=row.hourly_count)

            return _status(row, now)

    async def get_all_limits(self, entity_id: str) -> dict[str, RateLimitStatus]:
        return {
            action.value: await self.check_limit(entity_id, action)
            for action in self.TRACKED_ACTIONS
        }

    async def set_custom_limits(
        self,
        entity_id: str,
        action_type: Union[ActionType, str],
        daily: Optional[int] = None,
        hourly: Optional[int] = None,
    ) -> None:
        """Administrative override of one record's limits."""
        for name, value in (("daily", daily), ("hourly", hourly)):
            if value is not None and value < 0:
                raise ValueError(f"{name} limit must not be negative, got {value}")

        action = _action_key(action_type)
        now = self.clock()
        await self._ensure_record(entity_id, action, now)

        values: dict = {"custom_limits": True, "updated_at": now}
        if daily is not None:
            values["daily_limit"] = daily
        if hourly is not None:
            values["hourly_limit"] = hourly

        async with self.db.session() as session:
            await session.execute(
                update(RateLimitRow)
                .where(RateLimitRow.entity_id == entity_id, RateLimitRow.action_type == action)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        logger.info("rate_limit_custom_set", entity_id=entity_id, action_type=action,
                    daily=daily, hourly=hourly)

    async def clear_block(self, entity_id: str, action_type: Union[ActionType, str]) -> bool:
        action = _action_key(action_type)
        async with self.db.session() as session:
            result = await session.execute(
                update(RateLimitRow)
                .where(
                    RateLimitRow.entity_id == entity_id,
                    RateLimitRow.action_type == action,
                    RateLimitRow.blocked_until.is_not(None),
                )
                .values(blocked_until=None, block_reason=None, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            cleared = result.rowcount == 1
        logger.info("rate_limit_block_cleared", entity_id=entity_id, action_type=action,
                    cleared=cleared)
        return cleared

    async def get_daily_usage(self, entity_id: str) -> dict[str, DailyUsage]:
        """Daily usage per action type that has a record. Read-only."""
        now = self.clock()
        async with self.db.session() as session:
            rows = (await session.execute(
                select(RateLimitRow).where(RateLimitRow.entity_id == entity_id)
            )).scalars().all()

        usage = {}
        for row in rows:
            used = 0 if now >= row.daily_reset_at else row.daily_count
            usage[row.action_type] = DailyUsage(
                used=used,
                limit=row.daily_limit,
                remaining=max(0, row.daily_limit - used),
            )
        return usage

    # ── Internals ───────────────────────────────────────────

    async def _ensure_record(self, entity_id: str, action: str, now: datetime) -> None:
        """Create the record with default limits on first use."""
        async with self.db.session() as session:
            found = await session.scalar(
                select(RateLimitRow.id)
                .where(RateLimitRow.entity_id == entity_id, RateLimitRow.action_type == action)
            )
        if found:
            return

        limits = self.default_limits(action)
        try:
            async with self.db.session() as session:
                session.add(RateLimitRow(
                    entity_id=entity_id,
                    action_type=action,
                    daily_limit=limits.daily,
                    daily_count=0,
                    daily_reset_at=next_day_start(now),
                    hourly_limit=limits.hourly,
                    hourly_count=0,
                    hourly_reset_at=next_hour_start(now),
                    created_at=now,
                    updated_at=now,
                ))
        except IntegrityError:
            # Another worker created it between our read and insert.
            logger.debug("rate_limit_record_exists", entity_id=entity_id, action_type=action)
        else:
            logger.info("rate_limit_record_created", entity_id=entity_id, action_type=action,
                        daily_limit=limits.daily, hourly_limit=limits.hourly)

    async def _reset_expired(self, session: AsyncSession, entity_id: str, action: str, now: datetime) -> None:
        """Zero finished windows and drop an expired block. Resets only move forward."""
        key = (RateLimitRow.entity_id == entity_id, RateLimitRow.action_type == action)
        await session.execute(
            update(RateLimitRow)
            .where(*key, RateLimitRow.daily_reset_at <= now)
            .values(daily_count=0, daily_reset_at=next_day_start(now), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            update(RateLimitRow)
            .where(*key, RateLimitRow.hourly_reset_at <= now)
            .values(hourly_count=0, hourly_reset_at=next_hour_start(now), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            update(RateLimitRow)
            .where(*key, RateLimitRow.blocked_until <= now)
            .values(blocked_until=None, block_reason=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    async def _load(self, session: AsyncSession, entity_id: str, action: str) -> RateLimitRow:
        row = (await session.execute(
            select(RateLimitRow)
            .where(RateLimitRow.entity_id == entity_id, RateLimitRow.action_type == action)
            .execution_options(populate_existing=True)
        )).scalars().one()
        return row


def _status(row: RateLimitRow, now: datetime) -> RateLimitStatus:
    resets = WindowResets(daily=row.daily_reset_at, hourly=row.hourly_reset_at)

    if row.blocked_until is not None and row.blocked_until > now:
        return RateLimitStatus(
            allowed=False,
            remaining=WindowCounts(daily=0, hourly=0),
            reset_times=resets,
            blocked_until=row.blocked_until,
            block_reason=row.block_reason or "Rate limit exceeded",
            custom_limits=bool(row.custom_limits),
        )

    daily = row.daily_limit - row.daily_count
    hourly = row.hourly_limit - row.hourly_count
    return RateLimitStatus(
        allowed=daily > 0 and hourly > 0,
        remaining=WindowCounts(daily=max(0, daily), hourly=max(0, hourly)),
        reset_times=resets,
        custom_limits=bool(row.custom_limits),
    )
