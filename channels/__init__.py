"""Clients for the third-party social platform the workers act on."""
from channels.base import ExternalAPIError, GraphAPIError
from channels.graph_api import GraphAPIClient
from channels.media import validate_media_urls

__all__ = [
    "ExternalAPIError", "GraphAPIError",
    "GraphAPIClient", "validate_media_urls",
]
