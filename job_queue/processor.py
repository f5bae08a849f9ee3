"""
Job Processor — runs one claimed job against the social platform.

Dispatch is by JobType; every handler returns a JobResult and never raises.
Remote errors are reported with the platform's message verbatim.

Rate limiting:
  handler ──check_limit──▶ blocked? ──yes──▶ JobResult(defer_until=…)   (no remote call)
                                     └─no──▶ remote call ──ok──▶ record_action

  publish_post             → PUBLISH
  engagement like/comment/follow → LIKE / COMMENT / FOLLOW
  direct_message           → DM
  fetch_analytics          → not rate limited
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Awaitable, Callable, Optional

from channels.base import ExternalAPIError
from channels.graph_api import ERROR, EXPIRED, FINISHED, PUBLISHED, GraphAPIClient
from channels.media import validate_media_urls
from config.settings import PublishConfig
from models.schemas import (
    ActionType, EngagementKind, Job, JobResult, JobType, MediaType, RateLimitStatus,
)
from rate_limit.limiter import RateLimiter

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]

_ENGAGEMENT_ACTIONS = {
    EngagementKind.LIKE: ActionType.LIKE,
    EngagementKind.COMMENT: ActionType.COMMENT,
    EngagementKind.FOLLOW: ActionType.FOLLOW,
}

_VIDEO_EXTENSIONS = (".mp4", ".mov", ".m4v", ".mpeg", ".mpg")


def _defer_until(status: RateLimitStatus) -> datetime:
    if status.blocked_until is not None:
        return status.blocked_until
    # An exhausted daily window outlasts any hourly reset.
    if status.remaining.daily <= 0:
        return status.reset_times.daily
    return status.reset_times.hourly


class JobProcessor:
    """
    Usage:
        processor = JobProcessor(GraphAPIClient(), RateLimiter(db))
        result = await processor.process(job)
    """

    def __init__(
        self,
        graph: GraphAPIClient,
        rate_limiter: Optional[RateLimiter] = None,
        config: Optional[PublishConfig] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.graph = graph
        self.rate_limiter = rate_limiter
        self.config = config or PublishConfig()
        self._sleep = sleep
        self._handlers = {
            JobType.PUBLISH_POST: self._publish_post,
            JobType.ENGAGEMENT_ACTION: self._engagement_action,
            JobType.DIRECT_MESSAGE: self._direct_message,
            JobType.FETCH_ANALYTICS: self._fetch_analytics,
        }

    async def process(self, job: Job) -> JobResult:
        handler = self._handlers.get(job.job_type)
        if handler is None:
            return JobResult.fail(f"Unknown job type: {job.job_type}")

        log = logger.bind(job_id=job.id, job_type=job.job_type.value, entity_id=job.entity_id)
        log.info("job_processing", attempt=job.attempts + 1, max_attempts=job.max_attempts)
        try:
            result = await handler(job)
        except ExternalAPIError as e:
            log.warning("job_external_error", service=e.service, error=str(e), retryable=e.retryable)
            return JobResult.fail(str(e))
        except Exception as e:
            log.exception("job_handler_crashed", error=str(e))
            return JobResult.fail(f"{type(e).__name__}: {e}")

        if result.success:
            log.info("job_succeeded", data=result.data)
        elif result.defer_until is not None:
            log.info("job_rate_limited", until=result.defer_until.isoformat(), error=result.error)
        else:
            log.warning("job_handler_failed", error=result.error)
        return result

    # ── Rate limiting ───────────────────────────────────────

    async def _gate(self, job: Job, action: ActionType) -> Optional[JobResult]:
        """A deferral result if the entity is over its limit, else None."""
        if self.rate_limiter is None:
            return None
        status = await self.rate_limiter.check_limit(job.entity_id, action)
        if status.allowed:
            return None
        reason = status.block_reason or f"{action.value} limit reached"
        return JobResult.fail(f"Rate limited: {reason}", defer_until=_defer_until(status))

    async def _record(self, job: Job, action: ActionType) -> None:
        if self.rate_limiter is None:
            return
        try:
            await self.rate_limiter.record_action(job.entity_id, action)
        except Exception as e:
            # The remote action already happened; failing the job now would repeat it.
            logger.error("rate_limit_record_failed", job_id=job.id, entity_id=job.entity_id,
                         action_type=action.value, error=str(e))

    # ── Publish ─────────────────────────────────────────────

    async def _publish_post(self, job: Job) -> JobResult:
        p = job.payload
        if not p.access_token or not p.external_account_id:
            return JobResult.fail("Missing access token or account id for publishing")

        blocked = await self._gate(job, ActionType.PUBLISH)
        if blocked:
            return blocked

        kinds: list[Optional[str]] = []
        if self.config.validate_media:
            report = await validate_media_urls(self.graph, p.media_urls)
            if not report.valid:
                return JobResult.fail("Media validation failed: " + "; ".join(report.errors))
            kinds = [check.kind for check in report.results]

        # 1. container
        container_id = await self._create_container(p, kinds)

        # 2. wait for processing
        if p.media_type in (MediaType.VIDEO, MediaType.REELS):
            interval, max_checks = self.config.video_poll_interval_seconds, self.config.video_poll_attempts
        else:
            interval, max_checks = self.config.poll_interval_seconds, self.config.poll_attempts

        status, checks = await self._wait_for_container(container_id, p.access_token, interval, max_checks)
        if status in (ERROR, EXPIRED):
            return JobResult.fail(f"Media processing failed with status: {status}")
        if status not in (FINISHED, PUBLISHED):
            return JobResult.fail(
                f"Media processing did not finish in time (status {status} after {checks} checks)"
            )

        # 3. publish
        media_id = await self.graph.publish_container(p.external_account_id, container_id, p.access_token)
        await self._record(job, ActionType.PUBLISH)
        return JobResult.ok({
            "media_id": media_id,
            "container_id": container_id,
            "scheduled_post_id": p.scheduled_post_id,
        })

    async def _create_container(self, p, kinds: Optional[list] = None) -> str:
        if p.media_type != MediaType.CAROUSEL:
            return await self.graph.create_container(
                p.external_account_id, p.access_token,
                media_url=p.media_urls[0],
                media_type=p.media_type.value,
                caption=p.caption,
            )

        children = []
        kinds = kinds or []
        for i, url in enumerate(p.media_urls):
            # Pre-flight content type wins; the extension is only a fallback.
            kind = kinds[i] if i < len(kinds) and kinds[i] else None
            if kind is None:
                kind = "VIDEO" if url.lower().split("?")[0].endswith(_VIDEO_EXTENSIONS) else "IMAGE"
            children.append(await self.graph.create_container(
                p.external_account_id, p.access_token,
                media_url=url, media_type=kind, is_carousel_item=True,
            ))
        return await self.graph.create_container(
            p.external_account_id, p.access_token,
            media_type=MediaType.CAROUSEL.value,
            caption=p.caption,
            children=children,
        )

    async def _wait_for_container(
        self, container_id: str, access_token: str, interval: float, max_checks: int,
    ) -> tuple[str, int]:
        """Poll until a terminal status or the check budget runs out."""
        status = "IN_PROGRESS"
        checks = 0
        while checks < max_checks:
            await self._sleep(interval)
            checks += 1
            status = await self.graph.get_container_status(container_id, access_token)
            if status in (FINISHED, PUBLISHED, ERROR, EXPIRED):
                break
        logger.debug("container_poll_done", container_id=container_id, status=status, checks=checks)
        return status, checks

    # ── Engagement ──────────────────────────────────────────

    async def _engagement_action(self, job: Job) -> JobResult:
        p = job.payload
        action = _ENGAGEMENT_ACTIONS[p.action_kind]

        if p.action_kind == EngagementKind.COMMENT and not p.access_token:
            return JobResult.fail("Missing access token for comment")

        blocked = await self._gate(job, action)
        if blocked:
            return blocked

        if p.action_kind == EngagementKind.COMMENT:
            comment_id = await self.graph.post_comment(p.target_id, p.comment_text, p.access_token)
            await self._record(job, action)
            return JobResult.ok({"comment_id": comment_id, "target_id": p.target_id})

        # The platform API exposes no like/follow endpoint; the action is
        # recorded (and counted against the limits) but not executed.
        logger.info("engagement_recorded_only", job_id=job.id, action=p.action_kind.value,
                    target_id=p.target_id)
        await self._record(job, action)
        return JobResult.ok({
            "executed": False,
            "target_id": p.target_id,
            "message": f"{p.action_kind.value.capitalize()} action recorded (API limitations apply)",
        })

    # ── Direct message ──────────────────────────────────────

    async def _direct_message(self, job: Job) -> JobResult:
        p = job.payload
        if not p.access_token:
            return JobResult.fail("Missing access token for direct message")

        blocked = await self._gate(job, ActionType.DM)
        if blocked:
            return blocked

        message_id = await self.graph.send_direct_message(p.target_id, p.message_text, p.access_token)
        await self._record(job, ActionType.DM)
        return JobResult.ok({"message_id": message_id, "recipient_id": p.target_id})

    # ── Analytics ───────────────────────────────────────────

    async def _fetch_analytics(self, job: Job) -> JobResult:
        p = job.payload
        if not p.access_token or not p.external_account_id:
            return JobResult.ok({"skipped": True, "reason": "no credentials for analytics"})

        insights = await self.graph.get_account_insights(p.external_account_id, p.access_token, p.period)
        media = await self.graph.get_recent_media(p.external_account_id, p.access_token)

        likes = sum(int(m.get("like_count") or 0) for m in media)
        comments = sum(int(m.get("comments_count") or 0) for m in media)
        followers = insights.get("follower_count") or 0
        engagement_rate = 0.0
        if media and followers:
            engagement_rate = round((likes + comments) / len(media) / followers * 100, 2)

        return JobResult.ok({
            "insights": insights,
            "media_count": len(media),
            "total_likes": likes,
            "total_comments": comments,
            "engagement_rate": engagement_rate,
        })
