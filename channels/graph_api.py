"""
Graph API Client — the social platform's HTTP API.

Publishing is a three-step container protocol:
1. create_container()   → POST /{account}/media           → container id
2. get_container_status() → GET /{container}?fields=status_code
                            (IN_PROGRESS … FINISHED | ERROR | EXPIRED)
3. publish_container()  → POST /{account}/media_publish    → media id

Everything else (comments, messages, insights) is a single request.

Any response body carrying ``error`` raises GraphAPIError with the remote
message. Connection-level failures are retried a few times here; remote
errors are not, the job retry policy owns those.

API Docs: https://developers.facebook.com/docs/instagram-platform
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import GraphAPIError
from config.settings import GraphAPIConfig

logger = structlog.get_logger()

# Container status codes
FINISHED = "FINISHED"
PUBLISHED = "PUBLISHED"
IN_PROGRESS = "IN_PROGRESS"
ERROR = "ERROR"
EXPIRED = "EXPIRED"

ACCOUNT_METRICS = (
    "impressions", "reach", "profile_views",
    "website_clicks", "email_contacts", "follower_count",
)


class GraphAPIClient:
    """Async client for publishing, engagement, messaging and insights."""

    def __init__(
        self,
        config: Optional[GraphAPIConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or GraphAPIConfig()
        self.base_url = self.config.base_url.rstrip("/")
        self.messaging_base_url = self.config.messaging_base_url.rstrip("/")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def _request(self, method: str, url: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        resp = await client.request(method, url, **kwargs)

        try:
            data = resp.json()
        except ValueError:
            data = None

        if isinstance(data, dict) and data.get("error"):
            err = data["error"] if isinstance(data["error"], dict) else {"message": str(data["error"])}
            logger.error("graph_api_error",
                         status=resp.status_code,
                         code=err.get("code"),
                         message=err.get("message"),
                         path=httpx.URL(url).path)
            raise GraphAPIError(
                err.get("message") or "Unknown Graph API error",
                status_code=resp.status_code,
                code=err.get("code"),
                body=data,
            )

        if resp.status_code >= 400:
            logger.error("graph_api_http_error",
                         status=resp.status_code,
                         body=resp.text[:500],
                         path=httpx.URL(url).path)
            raise GraphAPIError(f"HTTP {resp.status_code}: {resp.text[:200]}",
                                status_code=resp.status_code)

        if not isinstance(data, dict):
            raise GraphAPIError("Unexpected non-JSON response", status_code=resp.status_code)
        return data

    async def head(self, url: str) -> httpx.Response:
        """Plain HEAD against an arbitrary URL (media pre-flight)."""
        client = await self._get_client()
        return await client.head(url, follow_redirects=True, timeout=10.0)

    # ── Publishing ──────────────────────────────────────────

    async def create_container(
        self,
        account_id: str,
        access_token: str,
        media_url: Optional[str] = None,
        media_type: str = "IMAGE",
        caption: str = "",
        children: Optional[list[str]] = None,
        is_carousel_item: bool = False,
    ) -> str:
        """
        Create a media container and return its id.

        IMAGE uses ``image_url``; VIDEO / REELS use ``video_url`` plus
        ``media_type``; CAROUSEL takes the ids of already-created children.
        """
        # Container creation is form-encoded, not JSON
        form: dict[str, str] = {"access_token": access_token}
        if media_type == "CAROUSEL":
            form["media_type"] = "CAROUSEL"
            form["children"] = ",".join(children or [])
        elif media_type in ("VIDEO", "REELS"):
            form["video_url"] = media_url or ""
            form["media_type"] = "VIDEO" if is_carousel_item else media_type
        else:
            form["image_url"] = media_url or ""

        if is_carousel_item:
            form["is_carousel_item"] = "true"
        elif caption:
            form["caption"] = caption

        logger.info("graph_create_container", account_id=account_id,
                    media_type=media_type, carousel_item=is_carousel_item)
        data = await self._request("POST", f"{self.base_url}/{account_id}/media", data=form)
        container_id = data.get("id")
        if not container_id:
            raise GraphAPIError("Container creation returned no id", body=data)
        return str(container_id)

    async def get_container_status(self, container_id: str, access_token: str) -> str:
        data = await self._request(
            "GET",
            f"{self.base_url}/{container_id}",
            params={"fields": "status_code", "access_token": access_token},
        )
        return str(data.get("status_code") or IN_PROGRESS)

    async def publish_container(self, account_id: str, container_id: str, access_token: str) -> str:
        logger.info("graph_publish_container", account_id=account_id, container_id=container_id)
        data = await self._request(
            "POST",
            f"{self.base_url}/{account_id}/media_publish",
            data={"access_token": access_token, "creation_id": container_id},
        )
        media_id = data.get("id")
        if not media_id:
            raise GraphAPIError("Publish returned no media id", body=data)
        return str(media_id)

    # ── Engagement / messaging ──────────────────────────────

    async def post_comment(self, media_id: str, message: str, access_token: str) -> str:
        data = await self._request(
            "POST",
            f"{self.base_url}/{media_id}/comments",
            data={"access_token": access_token, "message": message},
        )
        return str(data.get("id", ""))

    async def send_direct_message(self, recipient_id: str, text: str, access_token: str) -> str:
        # The messaging endpoint takes JSON with a bearer token
        data = await self._request(
            "POST",
            f"{self.messaging_base_url}/me/messages",
            json={"recipient": {"id": recipient_id}, "message": {"text": text}},
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return str(data.get("message_id", ""))

    # ── Insights ────────────────────────────────────────────

    async def get_account_insights(
        self,
        account_id: str,
        access_token: str,
        period: str = "days_28",
        metrics: tuple[str, ...] = ACCOUNT_METRICS,
    ) -> dict[str, Any]:
        """Return ``{metric_name: latest_value}``."""
        data = await self._request(
            "GET",
            f"{self.base_url}/{account_id}/insights",
            params={"metric": ",".join(metrics), "period": period, "access_token": access_token},
        )
        insights: dict[str, Any] = {}
        for metric in data.get("data", []):
            name = metric.get("name")
            if not name:
                continue
            values = metric.get("values") or []
            if values:
                insights[name] = values[-1].get("value")
            else:
                insights[name] = (metric.get("total_value") or {}).get("value")
        return insights

    async def get_recent_media(self, account_id: str, access_token: str, limit: int = 25) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            f"{self.base_url}/{account_id}/media",
            params={
                "fields": "id,like_count,comments_count,timestamp",
                "limit": str(limit),
                "access_token": access_token,
            },
        )
        return list(data.get("data", []))
