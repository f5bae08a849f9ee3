"""
Media URL pre-flight for publishing.

The platform fetches media itself, so a bad URL only surfaces minutes later
as a container in ERROR. Checking up front gives a clear, immediate error:

  - HTTPS only
  - publicly reachable host (no localhost, loopback or private ranges)
  - HEAD succeeds with a supported content type
  - image ≤ 8 MB, video ≤ 100 MB (when Content-Length is sent)
  - at most 10 items per post
"""
from __future__ import annotations

import asyncio
import ipaddress
import structlog
from dataclasses import dataclass, field
from typing import Optional, Protocol
from urllib.parse import urlparse

import httpx

logger = structlog.get_logger()

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp")
ALLOWED_VIDEO_TYPES = ("video/mp4", "video/quicktime", "video/mpeg")
MAX_IMAGE_BYTES = 8 * 1024 * 1024
MAX_VIDEO_BYTES = 100 * 1024 * 1024
MAX_ITEMS = 10


class HeadClient(Protocol):
    async def head(self, url: str) -> httpx.Response: ...


@dataclass
class MediaCheck:
    url: str
    valid: bool
    error: Optional[str] = None
    content_type: Optional[str] = None
    content_length: Optional[int] = None
    kind: Optional[str] = None           # "IMAGE" | "VIDEO"


@dataclass
class MediaReport:
    valid: bool
    results: list[MediaCheck] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def _is_private_host(hostname: str) -> bool:
    if hostname in ("localhost",) or hostname.endswith(".localhost") or hostname.endswith(".local"):
        return True
    try:
        addr = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved


def check_url_shape(url: str) -> Optional[str]:
    """Static checks. Returns an error string, or None if the URL looks publishable."""
    if not url or not isinstance(url, str):
        return "Media URL is required"
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.hostname:
        return "Invalid URL format"
    if parsed.scheme != "https":
        return "Media URL must use HTTPS"
    if _is_private_host(parsed.hostname.lower()):
        return "Media URL must be publicly accessible (no localhost or private IPs)"
    return None


async def validate_media_url(client: HeadClient, url: str) -> MediaCheck:
    error = check_url_shape(url)
    if error:
        return MediaCheck(url=url, valid=False, error=error)

    try:
        resp = await client.head(url)
    except httpx.TimeoutException:
        return MediaCheck(url=url, valid=False,
                          error="Media URL request timed out. URL must respond quickly.")
    except httpx.HTTPError as e:
        return MediaCheck(url=url, valid=False, error=f"Cannot reach media URL: {e}")

    if resp.status_code >= 400:
        return MediaCheck(url=url, valid=False,
                          error=f"Media URL returned HTTP {resp.status_code}. URL must be publicly accessible.")

    content_type = resp.headers.get("content-type", "").lower()
    try:
        length = int(resp.headers.get("content-length", "0"))
    except ValueError:
        length = 0

    is_image = any(t in content_type for t in ALLOWED_IMAGE_TYPES)
    is_video = any(t in content_type for t in ALLOWED_VIDEO_TYPES)
    if not is_image and not is_video:
        return MediaCheck(url=url, valid=False, content_type=content_type,
                          error=f"Unsupported media type: {content_type or 'unknown'}. Supported: JPEG, PNG, WEBP, MP4, MOV")

    if is_image and length > MAX_IMAGE_BYTES:
        return MediaCheck(url=url, valid=False, content_type=content_type, content_length=length,
                          error=f"Image too large: {length / 1024 / 1024:.1f}MB. Maximum is 8MB.")
    if is_video and length > MAX_VIDEO_BYTES:
        return MediaCheck(url=url, valid=False, content_type=content_type, content_length=length,
                          error=f"Video too large: {length / 1024 / 1024:.1f}MB. Maximum is 100MB.")

    return MediaCheck(url=url, valid=True, content_type=content_type,
                      content_length=length or None,
                      kind="IMAGE" if is_image else "VIDEO")


async def validate_media_urls(client: HeadClient, urls: list[str]) -> MediaReport:
    if not urls:
        return MediaReport(valid=False, errors=["At least one media URL is required"])
    if len(urls) > MAX_ITEMS:
        return MediaReport(valid=False, errors=[f"Maximum {MAX_ITEMS} items in a carousel post"])

    results = await asyncio.gather(*(validate_media_url(client, url) for url in urls))
    errors = [f"Item {i + 1}: {r.error}" for i, r in enumerate(results) if r.error]
    if errors:
        logger.warning("media_validation_failed", count=len(urls), errors=errors)
    return MediaReport(valid=not errors, results=list(results), errors=errors)
