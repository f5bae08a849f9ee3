"""Tests for job payload validation and the shared data models."""
from datetime import datetime, timezone

import pytest

from models.schemas import (
    DirectMessagePayload, EngagementActionPayload, JobResult, JobType, JobValidationError,
    MediaType, PublishPostPayload, load_payload, parse_job_type, validate_payload,
)


class TestJobType:
    @pytest.mark.parametrize("raw", ["publish_post", "PublishPost", "PUBLISH_POST", JobType.PUBLISH_POST])
    def test_aliases(self, raw):
        assert parse_job_type(raw) == JobType.PUBLISH_POST

    def test_unknown(self):
        with pytest.raises(JobValidationError, match="Unknown job type"):
            parse_job_type("schedule_story")


class TestPublishPayload:
    def test_camel_case_accepted(self):
        p = validate_payload("publish_post", {
            "entityId": "f1", "mediaUrls": ["https://x/a.jpg"], "externalAccountId": "acct",
        })
        assert isinstance(p, PublishPostPayload)
        assert p.entity_id == "f1"
        assert p.external_account_id == "acct"
        assert p.media_type == MediaType.IMAGE

    def test_snake_case_accepted(self):
        p = validate_payload("publish_post", {"entity_id": "f1", "media_urls": ["https://x/a.jpg"]})
        assert p.media_urls == ["https://x/a.jpg"]

    def test_unknown_field_rejected(self):
        with pytest.raises(JobValidationError):
            validate_payload("publish_post", {"entityId": "f1", "mediaUrls": ["u"], "hashtags": ["x"]})

    def test_entity_required(self):
        with pytest.raises(JobValidationError):
            validate_payload("publish_post", {"entityId": "", "mediaUrls": ["u"]})

    def test_single_media_types_take_one_url(self):
        with pytest.raises(JobValidationError, match="exactly one"):
            validate_payload("publish_post", {"entityId": "f1", "mediaUrls": ["a", "b"]})

    def test_carousel_needs_two(self):
        with pytest.raises(JobValidationError, match="at least two"):
            validate_payload("publish_post", {"entityId": "f1", "mediaUrls": ["a"], "mediaType": "CAROUSEL"})

    def test_carousel_max_ten(self):
        with pytest.raises(JobValidationError):
            validate_payload("publish_post", {
                "entityId": "f1", "mediaUrls": [f"u{i}" for i in range(11)], "mediaType": "CAROUSEL",
            })

    def test_blank_url_rejected(self):
        with pytest.raises(JobValidationError):
            validate_payload("publish_post", {"entityId": "f1", "mediaUrls": ["  "]})

    def test_kind_mismatch(self):
        with pytest.raises(JobValidationError, match="does not match"):
            validate_payload("publish_post", {"kind": "direct_message", "entityId": "f1", "mediaUrls": ["u"]})

    def test_model_instance_of_wrong_type(self):
        dm = DirectMessagePayload(entity_id="f1", target_id="u", message_text="hi")
        with pytest.raises(JobValidationError):
            validate_payload("publish_post", dm)

    def test_non_dict_rejected(self):
        with pytest.raises(JobValidationError, match="must be an object"):
            validate_payload("publish_post", ["u"])


class TestEngagementPayload:
    def test_comment_requires_text(self):
        with pytest.raises(JobValidationError, match="comment_text"):
            validate_payload("engagement_action", {"entityId": "f1", "targetId": "m", "actionKind": "comment"})

    def test_like_without_text(self):
        p = validate_payload("engagement_action", {"entityId": "f1", "targetId": "m", "actionKind": "like"})
        assert isinstance(p, EngagementActionPayload)
        assert p.comment_text is None

    def test_unknown_kind(self):
        with pytest.raises(JobValidationError):
            validate_payload("engagement_action", {"entityId": "f1", "targetId": "m", "actionKind": "repost"})


class TestStoredPayload:
    def test_round_trip_through_stored_form(self):
        p = validate_payload("fetch_analytics", {"entityId": "f1", "period": "week"})
        stored = p.model_dump(mode="json")
        assert stored["kind"] == "fetch_analytics"
        assert load_payload(stored) == p

    def test_bad_period(self):
        with pytest.raises(JobValidationError):
            validate_payload("fetch_analytics", {"entityId": "f1", "period": "month"})


class TestJobResult:
    def test_ok(self):
        r = JobResult.ok()
        assert r.success is True and r.data == {} and r.error is None

    def test_fail_with_defer(self):
        until = datetime(2025, 3, 11, tzinfo=timezone.utc)
        r = JobResult.fail("Rate limited: Daily limit reached", defer_until=until)
        assert r.success is False
        assert r.defer_until == until
        assert r.data is None
