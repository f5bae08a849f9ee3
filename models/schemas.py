"""
Core data models for the job queue system.
These are the universal types shared across all modules.

Job payloads are a closed tagged union: one pydantic model per JobType,
discriminated by ``kind``. A payload is validated when the job is added
and re-validated whenever a job is read back from the store, so handlers
never see an untyped blob.
"""
from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator,
)
from pydantic.alias_generators import to_camel


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobType(str, Enum):
    PUBLISH_POST = "publish_post"
    ENGAGEMENT_ACTION = "engagement_action"
    DIRECT_MESSAGE = "direct_message"
    FETCH_ANALYTICS = "fetch_analytics"

    @classmethod
    def _missing_(cls, value):
        # Accept "PublishPost" and "PUBLISH_POST" as well as "publish_post".
        if isinstance(value, str):
            key = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", value.strip()).lower()
            for member in cls:
                if member.value == key:
                    return member
        return None


class JobStatus(str, Enum):
    PENDING = "PENDING"
    LOCKED = "LOCKED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    DEAD_LETTER = "DEAD_LETTER"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.DEAD_LETTER)
HELD_STATUSES = (JobStatus.LOCKED, JobStatus.PROCESSING)


class EngagementKind(str, Enum):
    LIKE = "like"
    COMMENT = "comment"
    FOLLOW = "follow"


class MediaType(str, Enum):
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    REELS = "REELS"
    CAROUSEL = "CAROUSEL"


class ActionType(str, Enum):
    LIKE = "LIKE"
    COMMENT = "COMMENT"
    FOLLOW = "FOLLOW"
    UNFOLLOW = "UNFOLLOW"
    DM = "DM"
    PUBLISH = "PUBLISH"


class ReferenceType(str, Enum):
    SCHEDULED_POST = "scheduled_post"
    AUTOMATION_RULE = "automation_rule"
    ANALYTICS = "analytics"


# ──────────────────────────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────────────────────────

class JobValidationError(ValueError):
    """Job type or payload rejected at enqueue time. Nothing was written."""


# ──────────────────────────────────────────────────────────────
#  Payload variants
# ──────────────────────────────────────────────────────────────

class _PayloadBase(BaseModel):
    # Producers send camelCase (entityId, mediaUrls); stored form is snake_case.
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    entity_id: str = Field(min_length=1)
    user_id: Optional[str] = None


class PublishPostPayload(_PayloadBase):
    kind: Literal["publish_post"] = "publish_post"
    scheduled_post_id: str = ""
    caption: str = ""
    media_urls: list[str] = Field(min_length=1, max_length=10)
    media_type: MediaType = MediaType.IMAGE
    access_token: str = ""
    external_account_id: str = ""

    @model_validator(mode="after")
    def _check_media(self) -> "PublishPostPayload":
        if any(not url.strip() for url in self.media_urls):
            raise ValueError("media_urls must not contain blank entries")
        if self.media_type != MediaType.CAROUSEL and len(self.media_urls) > 1:
            raise ValueError(f"{self.media_type.value} posts take exactly one media URL")
        if self.media_type == MediaType.CAROUSEL and len(self.media_urls) < 2:
            raise ValueError("CAROUSEL posts need at least two media URLs")
        return self


class EngagementActionPayload(_PayloadBase):
    kind: Literal["engagement_action"] = "engagement_action"
    rule_id: str = ""
    target_id: str = Field(min_length=1)
    access_token: str = ""
    action_kind: EngagementKind
    comment_text: Optional[str] = None

    @model_validator(mode="after")
    def _check_comment(self) -> "EngagementActionPayload":
        if self.action_kind == EngagementKind.COMMENT and not (self.comment_text or "").strip():
            raise ValueError("comment_text is required for comment actions")
        return self


class DirectMessagePayload(_PayloadBase):
    kind: Literal["direct_message"] = "direct_message"
    rule_id: str = ""
    target_id: str = Field(min_length=1)
    access_token: str = ""
    message_text: str = Field(min_length=1)


class FetchAnalyticsPayload(_PayloadBase):
    kind: Literal["fetch_analytics"] = "fetch_analytics"
    external_account_id: str = ""
    access_token: str = ""
    period: Literal["day", "week", "days_28"] = "days_28"


JobPayload = Annotated[
    Union[PublishPostPayload, EngagementActionPayload, DirectMessagePayload, FetchAnalyticsPayload],
    Field(discriminator="kind"),
]

PAYLOAD_MODELS: dict[JobType, type[_PayloadBase]] = {
    JobType.PUBLISH_POST: PublishPostPayload,
    JobType.ENGAGEMENT_ACTION: EngagementActionPayload,
    JobType.DIRECT_MESSAGE: DirectMessagePayload,
    JobType.FETCH_ANALYTICS: FetchAnalyticsPayload,
}

_payload_adapter: TypeAdapter = TypeAdapter(JobPayload)


def parse_job_type(job_type: Any) -> JobType:
    try:
        return JobType(job_type)
    except ValueError:
        raise JobValidationError(f"Unknown job type: {job_type!r}") from None


def parse_reference_type(reference_type: Any) -> Optional[ReferenceType]:
    if reference_type is None:
        return None
    try:
        return ReferenceType(reference_type)
    except ValueError:
        raise JobValidationError(f"Unknown reference type: {reference_type!r}") from None


def validate_payload(job_type: Any, payload: Any) -> JobPayload:
    """
    Validate ``payload`` against the variant for ``job_type``.

    Accepts a dict (snake_case or camelCase keys) or an already-built
    payload model. Raises JobValidationError on any mismatch.
    """
    job_type = parse_job_type(job_type)
    model = PAYLOAD_MODELS[job_type]

    if isinstance(payload, BaseModel):
        if not isinstance(payload, model):
            raise JobValidationError(
                f"Payload of type {type(payload).__name__} does not match job type {job_type.value}"
            )
        return payload

    if not isinstance(payload, dict):
        raise JobValidationError(f"Payload for {job_type.value} must be an object")

    data = dict(payload)
    kind = data.pop("kind", job_type.value)
    if kind != job_type.value:
        raise JobValidationError(f"Payload kind {kind!r} does not match job type {job_type.value}")

    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise JobValidationError(f"Invalid {job_type.value} payload: {e}") from e


def load_payload(data: dict[str, Any]) -> JobPayload:
    """Rebuild a stored payload (which always carries its ``kind``)."""
    return _payload_adapter.validate_python(data)


# ──────────────────────────────────────────────────────────────
#  Job — a durable unit of work
# ──────────────────────────────────────────────────────────────

class Job(BaseModel):
    id: str
    queue_name: str
    job_type: JobType
    entity_id: str
    payload: JobPayload
    status: JobStatus = JobStatus.PENDING
    priority: int = 0
    scheduled_for: Optional[datetime] = None
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    reference_type: Optional[ReferenceType] = None
    reference_id: Optional[str] = None
    worker_id: Optional[str] = None
    locked_at: Optional[datetime] = None
    lock_expiry: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobResult(BaseModel):
    """What a handler reports back. Handlers never raise."""
    success: bool
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    # Rate-limited: retry after this instant without counting a failure.
    defer_until: Optional[datetime] = None

    @classmethod
    def ok(cls, data: Optional[dict[str, Any]] = None) -> "JobResult":
        return cls(success=True, data=data or {})

    @classmethod
    def fail(cls, error: str, defer_until: Optional[datetime] = None) -> "JobResult":
        return cls(success=False, error=error, defer_until=defer_until)


# ──────────────────────────────────────────────────────────────
#  Rate limits
# ──────────────────────────────────────────────────────────────

class WindowLimits(BaseModel):
    daily: int
    hourly: int


class WindowCounts(BaseModel):
    daily: int
    hourly: int


class WindowResets(BaseModel):
    daily: datetime
    hourly: datetime


class RateLimitStatus(BaseModel):
    allowed: bool
    remaining: WindowCounts
    reset_times: WindowResets
    blocked_until: Optional[datetime] = None
    block_reason: Optional[str] = None
    # Limits were set per entity rather than taken from the defaults.
    custom_limits: bool = False


class DailyUsage(BaseModel):
    used: int
    limit: int
    remaining: int


DEFAULT_RATE_LIMITS: dict[str, WindowLimits] = {
    ActionType.LIKE.value: WindowLimits(daily=150, hourly=30),
    ActionType.COMMENT.value: WindowLimits(daily=30, hourly=10),
    ActionType.FOLLOW.value: WindowLimits(daily=50, hourly=15),
    ActionType.DM.value: WindowLimits(daily=20, hourly=5),
    ActionType.PUBLISH.value: WindowLimits(daily=25, hourly=10),
}

FALLBACK_RATE_LIMIT = WindowLimits(daily=50, hourly=15)
