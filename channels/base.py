"""
External collaborator errors.

Provides:
- ExternalAPIError: base for any failed remote call
- GraphAPIError: the social platform API answered with an error body/status

Handlers catch these and turn them into a failed JobResult whose ``error``
is the exception message, verbatim.
"""
from __future__ import annotations

from typing import Any, Optional


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ExternalAPIError(Exception):
    """Base exception for all remote operations."""

    def __init__(self, message: str, service: str = "", retryable: bool = False):
        self.service = service
        self.retryable = retryable
        super().__init__(message)


# Graph API error codes that mean "slow down", not "this request is wrong".
_THROTTLE_CODES = {4, 17, 32, 613}


class GraphAPIError(ExternalAPIError):
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
        body: Optional[dict[str, Any]] = None,
    ):
        self.status_code = status_code
        self.code = code
        self.body = body or {}
        retryable = (status_code is not None and status_code >= 500) or code in _THROTTLE_CODES
        super().__init__(message, service="graph_api", retryable=retryable)
