# probegate/errors.py
"""
Error taxonomy for the probe gateway.

Every failure the gateway knows how to describe is one of these. Anything
else is an unexpected error: it is logged server-side and surfaced to the
client as a generic 500 with no internal detail.

    ValidationError     400  malformed / oversized / disallowed input
    SsrfRejection       400  target is (or resolves to) an internal address
    UnknownToolError    400  legacy selector names no known tool
    RateLimitExceeded   429  authoritative limiter rejected the request
    UpstreamFailure     502  non-zero exit, unparseable output, non-2xx API
    UpstreamTimeout     504  external tool or API exceeded its bound
"""

from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    """Base class for all failures the gateway reports to the client."""

    status_code: int = 500
    kind: str = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def public_message(self) -> str:
        return self.message


class ValidationError(GatewayError):
    status_code = 400
    kind = "validation"


class SsrfRejection(ValidationError):
    """Target points at a blocked address. The message never names the address."""

    kind = "ssrf"


class UnknownToolError(GatewayError):
    status_code = 400
    kind = "unknown_tool"

    def __init__(self, tool: Optional[str]):
        super().__init__(f"Unknown tool: {tool}")
        self.tool = tool


class RateLimitExceeded(GatewayError):
    status_code = 429
    kind = "rate_limited"

    def __init__(self, message: str, retry_after: Optional[int] = None, scope: str = "minute"):
        super().__init__(message)
        self.retry_after = retry_after
        self.scope = scope


class UpstreamFailure(GatewayError):
    status_code = 502
    kind = "upstream_failure"


class UpstreamTimeout(GatewayError):
    status_code = 504
    kind = "upstream_timeout"
