"""
Tests for JobProcessor against a mocked Graph API (httpx.MockTransport).

Covers:
  - Publish: container → poll → publish, carousel, timeouts, remote errors
  - Engagement, direct messages and analytics
  - Rate-limit gating and recording
  - Handler crashes converted to failed results
"""
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from channels.graph_api import GraphAPIClient
from config.settings import GraphAPIConfig, PublishConfig
from job_queue.processor import JobProcessor
from models.schemas import ActionType, Job, JobType, validate_payload

BASE = "https://graph.test/v21.0"
MSG_BASE = "https://ig.test/v21.0"


def make_job(job_type: JobType, payload: dict, entity_id: str = "f1") -> Job:
    now = datetime(2025, 3, 10, 12, 30, tzinfo=timezone.utc)
    return Job(
        id="job_1",
        queue_name="social-exchange",
        job_type=job_type,
        entity_id=entity_id,
        payload=validate_payload(job_type, {"entityId": entity_id, **payload}),
        created_at=now,
        updated_at=now,
    )


class FakeGraph:
    """Scripted Graph API: routes (method, path) to JSON responses and records requests."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], object] = {}
        self.statuses: list[str] = []

    def route(self, method: str, path: str, response):
        self.routes[(method, path)] = response

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "GET" and path.startswith("/v21.0/container_") and self.statuses:
            return httpx.Response(200, json={"status_code": self.statuses.pop(0)})
        response = self.routes.get((request.method, path))
        if response is None:
            return httpx.Response(404, json={"error": {"message": f"no route {path}", "code": 100}})
        if callable(response):
            return response(request)
        return httpx.Response(200, json=response)

    def paths(self, method: str = None) -> list[str]:
        return [r.url.path for r in self.requests if method is None or r.method == method]


@pytest.fixture
def fake_graph() -> FakeGraph:
    return FakeGraph()


@pytest.fixture
def graph(fake_graph) -> GraphAPIClient:
    config = GraphAPIConfig(base_url=BASE, messaging_base_url=MSG_BASE)
    return GraphAPIClient(config, transport=httpx.MockTransport(fake_graph.handler))


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def processor(graph, limiter, sleeps) -> JobProcessor:
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    config = PublishConfig(poll_interval_seconds=3, poll_attempts=10,
                           video_poll_interval_seconds=10, video_poll_attempts=20)
    return JobProcessor(graph, limiter, config, sleep=fake_sleep)


PUBLISH = {
    "scheduledPostId": "sp_1",
    "caption": "hello",
    "mediaUrls": ["https://cdn.example.com/a.jpg"],
    "accessToken": "tok",
    "externalAccountId": "acct_1",
}


# ──────────────────────────────────────────────────────────────
#  Publish
# ──────────────────────────────────────────────────────────────

class TestPublishPost:
    @pytest.mark.asyncio
    async def test_image_success(self, processor, fake_graph, limiter, sleeps):
        fake_graph.route("POST", "/v21.0/acct_1/media", {"id": "container_1"})
        fake_graph.route("POST", "/v21.0/acct_1/media_publish", {"id": "media_9"})
        fake_graph.statuses = ["IN_PROGRESS", "FINISHED"]

        result = await processor.process(make_job(JobType.PUBLISH_POST, PUBLISH))

        assert result.success is True
        assert result.data == {"media_id": "media_9", "container_id": "container_1",
                               "scheduled_post_id": "sp_1"}
        assert sleeps == [3, 3]

        create = fake_graph.requests[0]
        form = dict(httpx.QueryParams(create.content.decode()))
        assert form["image_url"] == "https://cdn.example.com/a.jpg"
        assert form["caption"] == "hello"
        assert form["access_token"] == "tok"

        publish = fake_graph.requests[-1]
        assert dict(httpx.QueryParams(publish.content.decode()))["creation_id"] == "container_1"

        status = await limiter.check_limit("f1", ActionType.PUBLISH)
        assert status.remaining.hourly == 9

    @pytest.mark.asyncio
    async def test_container_never_finishes(self, processor, fake_graph, sleeps):
        fake_graph.route("POST", "/v21.0/acct_1/media", {"id": "container_1"})
        fake_graph.statuses = ["IN_PROGRESS"] * 50

        result = await processor.process(make_job(JobType.PUBLISH_POST, PUBLISH))

        assert result.success is False
        assert "did not finish" in result.error
        assert "10 checks" in result.error
        assert len(sleeps) == 10
        assert "/v21.0/acct_1/media_publish" not in fake_graph.paths()

    @pytest.mark.asyncio
    async def test_container_error_stops_polling(self, processor, fake_graph, sleeps):
        fake_graph.route("POST", "/v21.0/acct_1/media", {"id": "container_1"})
        fake_graph.statuses = ["IN_PROGRESS", "ERROR", "FINISHED"]

        result = await processor.process(make_job(JobType.PUBLISH_POST, PUBLISH))

        assert result.success is False
        assert result.error == "Media processing failed with status: ERROR"
        assert len(sleeps) == 2

    @pytest.mark.asyncio
    async def test_video_uses_longer_polling(self, processor, fake_graph, sleeps):
        fake_graph.route("POST", "/v21.0/acct_1/media", {"id": "container_1"})
        fake_graph.route("POST", "/v21.0/acct_1/media_publish", {"id": "media_9"})
        fake_graph.statuses = ["FINISHED"]

        payload = {**PUBLISH, "mediaUrls": ["https://cdn.example.com/v.mp4"], "mediaType": "REELS"}
        result = await processor.process(make_job(JobType.PUBLISH_POST, payload))

        assert result.success is True
        assert sleeps == [10]
        form = dict(httpx.QueryParams(fake_graph.requests[0].content.decode()))
        assert form["video_url"] == "https://cdn.example.com/v.mp4"
        assert form["media_type"] == "REELS"

    @pytest.mark.asyncio
    async def test_remote_error_message_verbatim(self, processor, fake_graph):
        fake_graph.route("POST", "/v21.0/acct_1/media", lambda req: httpx.Response(
            400, json={"error": {"message": "Invalid OAuth access token.", "code": 190}},
        ))

        result = await processor.process(make_job(JobType.PUBLISH_POST, PUBLISH))

        assert result.success is False
        assert result.error == "Invalid OAuth access token."
        assert result.defer_until is None

    @pytest.mark.asyncio
    async def test_carousel_creates_children_then_parent(self, processor, fake_graph):
        created = []

        def create(req):
            form = dict(httpx.QueryParams(req.content.decode()))
            created.append(form)
            return httpx.Response(200, json={"id": f"container_{len(created)}"})

        fake_graph.route("POST", "/v21.0/acct_1/media", create)
        fake_graph.route("POST", "/v21.0/acct_1/media_publish", {"id": "media_9"})
        fake_graph.statuses = ["FINISHED"]

        payload = {**PUBLISH, "mediaType": "CAROUSEL",
                   "mediaUrls": ["https://cdn.example.com/a.jpg", "https://cdn.example.com/b.mp4"]}
        result = await processor.process(make_job(JobType.PUBLISH_POST, payload))

        assert result.success is True
        assert result.data["container_id"] == "container_3"
        assert created[0]["is_carousel_item"] == "true" and "image_url" in created[0]
        assert created[1]["media_type"] == "VIDEO" and "video_url" in created[1]
        assert created[2]["media_type"] == "CAROUSEL"
        assert created[2]["children"] == "container_1,container_2"
        assert created[2]["caption"] == "hello"

    @pytest.mark.asyncio
    async def test_missing_credentials(self, processor, fake_graph):
        payload = {**PUBLISH, "accessToken": ""}
        result = await processor.process(make_job(JobType.PUBLISH_POST, payload))
        assert result.success is False
        assert "Missing access token" in result.error
        assert fake_graph.requests == []

    @pytest.mark.asyncio
    async def test_rate_limited_publish_defers_without_remote_call(self, processor, fake_graph, limiter):
        await limiter.set_custom_limits("f1", ActionType.PUBLISH, hourly=1)
        await limiter.record_action("f1", ActionType.PUBLISH)

        result = await processor.process(make_job(JobType.PUBLISH_POST, PUBLISH))

        assert result.success is False
        assert result.error.startswith("Rate limited")
        assert result.defer_until == datetime(2025, 3, 10, 13, 0, tzinfo=timezone.utc)
        assert fake_graph.requests == []


class TestMediaValidation:
    @pytest.mark.asyncio
    async def test_rejects_http_url_before_container(self, graph, limiter, fake_graph):
        async def no_sleep(_):
            pass

        processor = JobProcessor(graph, limiter, PublishConfig(validate_media=True), sleep=no_sleep)
        payload = {**PUBLISH, "mediaUrls": ["http://cdn.example.com/a.jpg"]}

        result = await processor.process(make_job(JobType.PUBLISH_POST, payload))

        assert result.success is False
        assert result.error == "Media validation failed: Item 1: Media URL must use HTTPS"
        assert fake_graph.requests == []

    @pytest.mark.asyncio
    async def test_head_checks_content_type(self, graph, limiter, fake_graph):
        async def no_sleep(_):
            pass

        fake_graph.route("HEAD", "/a.gif", lambda req: httpx.Response(
            200, headers={"content-type": "image/gif", "content-length": "100"},
        ))
        processor = JobProcessor(graph, limiter, PublishConfig(validate_media=True), sleep=no_sleep)
        payload = {**PUBLISH, "mediaUrls": ["https://cdn.example.com/a.gif"]}

        result = await processor.process(make_job(JobType.PUBLISH_POST, payload))

        assert result.success is False
        assert "Unsupported media type: image/gif" in result.error

    @pytest.mark.asyncio
    async def test_carousel_child_type_from_content_type(self, graph, limiter, fake_graph):
        async def no_sleep(_):
            pass

        created = []

        def create(req):
            form = dict(httpx.QueryParams(req.content.decode()))
            created.append(form)
            return httpx.Response(200, json={"id": f"container_{len(created)}"})

        fake_graph.route("HEAD", "/a.jpg", lambda req: httpx.Response(
            200, headers={"content-type": "image/jpeg", "content-length": "100"},
        ))
        fake_graph.route("HEAD", "/v/abc123", lambda req: httpx.Response(
            200, headers={"content-type": "video/mp4", "content-length": "1000"},
        ))
        fake_graph.route("POST", "/v21.0/acct_1/media", create)
        fake_graph.route("POST", "/v21.0/acct_1/media_publish", {"id": "media_9"})
        fake_graph.statuses = ["FINISHED"]
        processor = JobProcessor(graph, limiter, PublishConfig(validate_media=True), sleep=no_sleep)
        payload = {**PUBLISH, "mediaType": "CAROUSEL",
                   "mediaUrls": ["https://cdn.example.com/a.jpg", "https://cdn.example.com/v/abc123"]}

        result = await processor.process(make_job(JobType.PUBLISH_POST, payload))

        assert result.success is True
        assert created[0]["image_url"] == "https://cdn.example.com/a.jpg"
        assert created[1]["media_type"] == "VIDEO"
        assert created[1]["video_url"] == "https://cdn.example.com/v/abc123"


# ──────────────────────────────────────────────────────────────
#  Engagement / DM
# ──────────────────────────────────────────────────────────────

class TestEngagement:
    @pytest.mark.asyncio
    async def test_comment_posts_and_records(self, processor, fake_graph, limiter):
        fake_graph.route("POST", "/v21.0/media_7/comments", {"id": "comment_1"})
        job = make_job(JobType.ENGAGEMENT_ACTION, {
            "targetId": "media_7", "actionKind": "comment",
            "commentText": "Great shot!", "accessToken": "tok",
        })

        result = await processor.process(job)

        assert result.success is True
        assert result.data == {"comment_id": "comment_1", "target_id": "media_7"}
        form = dict(httpx.QueryParams(fake_graph.requests[0].content.decode()))
        assert form["message"] == "Great shot!"
        assert (await limiter.check_limit("f1", ActionType.COMMENT)).remaining.hourly == 9

    @pytest.mark.asyncio
    async def test_like_recorded_not_executed(self, processor, fake_graph, limiter):
        job = make_job(JobType.ENGAGEMENT_ACTION, {"targetId": "media_7", "actionKind": "like"})

        result = await processor.process(job)

        assert result.success is True
        assert result.data["executed"] is False
        assert result.data["message"] == "Like action recorded (API limitations apply)"
        assert fake_graph.requests == []
        assert (await limiter.check_limit("f1", ActionType.LIKE)).remaining.daily == 149


class TestDirectMessage:
    @pytest.mark.asyncio
    async def test_sends_json_with_bearer(self, processor, fake_graph, dm_payload):
        fake_graph.route("POST", "/v21.0/me/messages", {"message_id": "mid_1", "recipient_id": "user_42"})

        result = await processor.process(make_job(JobType.DIRECT_MESSAGE, dm_payload))

        assert result.success is True
        assert result.data == {"message_id": "mid_1", "recipient_id": "user_42"}
        req = fake_graph.requests[0]
        assert req.url.host == "ig.test"
        assert req.headers["authorization"] == "Bearer tok"
        assert json.loads(req.content) == {
            "recipient": {"id": "user_42"},
            "message": {"text": "Thanks for the follow!"},
        }

    @pytest.mark.asyncio
    async def test_blocked_dm_defers_until_reset(self, processor, fake_graph, limiter, dm_payload):
        for _ in range(5):
            await limiter.record_action("f1", ActionType.DM)

        result = await processor.process(make_job(JobType.DIRECT_MESSAGE, dm_payload))

        assert result.success is False
        assert result.error == "Rate limited: Hourly limit reached"
        assert result.defer_until == datetime(2025, 3, 10, 13, 0, tzinfo=timezone.utc)
        assert fake_graph.requests == []

    @pytest.mark.asyncio
    async def test_missing_token(self, processor, dm_payload):
        result = await processor.process(make_job(JobType.DIRECT_MESSAGE, {**dm_payload, "accessToken": ""}))
        assert result.success is False
        assert result.error == "Missing access token for direct message"


# ──────────────────────────────────────────────────────────────
#  Analytics
# ──────────────────────────────────────────────────────────────

class TestAnalytics:
    @pytest.mark.asyncio
    async def test_skipped_without_credentials(self, processor, fake_graph):
        result = await processor.process(make_job(JobType.FETCH_ANALYTICS, {}))
        assert result.success is True
        assert result.data["skipped"] is True
        assert fake_graph.requests == []

    @pytest.mark.asyncio
    async def test_engagement_rate(self, processor, fake_graph):
        fake_graph.route("GET", "/v21.0/acct_1/insights", {"data": [
            {"name": "reach", "values": [{"value": 10}, {"value": 900}]},
            {"name": "follower_count", "values": [{"value": 1000}]},
        ]})
        fake_graph.route("GET", "/v21.0/acct_1/media", {"data": [
            {"id": "m1", "like_count": 30, "comments_count": 5},
            {"id": "m2", "like_count": 10, "comments_count": 5},
        ]})
        job = make_job(JobType.FETCH_ANALYTICS, {"externalAccountId": "acct_1", "accessToken": "tok"})

        result = await processor.process(job)

        assert result.success is True
        assert result.data["insights"] == {"reach": 900, "follower_count": 1000}
        assert result.data["media_count"] == 2
        assert result.data["total_likes"] == 40
        assert result.data["total_comments"] == 10
        # (40 + 10) / 2 posts / 1000 followers
        assert result.data["engagement_rate"] == 2.5


# ──────────────────────────────────────────────────────────────
#  Crash conversion
# ──────────────────────────────────────────────────────────────

class TestCrashes:
    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_failure(self, processor, graph, dm_payload):
        graph.send_direct_message = AsyncMock(side_effect=RuntimeError("boom"))

        result = await processor.process(make_job(JobType.DIRECT_MESSAGE, dm_payload))

        assert result.success is False
        assert result.error == "RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_without_rate_limiter(self, graph, fake_graph, dm_payload):
        fake_graph.route("POST", "/v21.0/me/messages", {"message_id": "mid_1"})
        processor = JobProcessor(graph)
        result = await processor.process(make_job(JobType.DIRECT_MESSAGE, dm_payload))
        assert result.success is True
