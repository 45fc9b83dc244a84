# probegate/gateway.py
"""
ProbeGateway: the single request pipeline every tool goes through.

    Received → Validating → (Rejected | CacheCheck)
             → (CacheHit → Responding | CacheMiss → RateCheck)
             → (RateRejected | Executing) → CacheWrite → Responding

Guarantees:
    - nothing external runs for a request that fails validation or the
      rate check
    - cache hits do not spend rate budget
    - a successful execution is cached before the response is built
    - failed executions are never cached
    - unexpected exceptions become a generic 500; details stay in the log

Concurrent identical requests may both miss and both execute; the later
cache write wins. Results are idempotent within the TTL so this only
costs an extra probe.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from probegate.cache import ResultCache
from probegate.errors import (
    GatewayError,
    RateLimitExceeded,
    SsrfRejection,
    UpstreamFailure,
    UpstreamTimeout,
    ValidationError,
)
from probegate.executor import ExternalProbeExecutor
from probegate.models import GatewayResponse, ProbeRequest, ProbeResult, RateDecision
from probegate.ratelimit import RateLimiter
from probegate.security.validation import HostInputValidator
from probegate.tools.registry import get_descriptor

logger = logging.getLogger(__name__)

MINUTE_LIMIT_MESSAGE = "Too many requests. Please slow down."
DAILY_LIMIT_MESSAGE = "Daily limit reached. Please try again tomorrow."
INTERNAL_ERROR_MESSAGE = "Internal server error"

FAILURE_STATUS = {
    ValidationError.kind: ValidationError.status_code,
    SsrfRejection.kind: SsrfRejection.status_code,
    UpstreamFailure.kind: UpstreamFailure.status_code,
    UpstreamTimeout.kind: UpstreamTimeout.status_code,
}


def success_body(data: Any) -> Dict[str, Any]:
    return {"error": False, "data": data}


def error_body(message: str, **extra) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": True, "message": message}
    body.update(extra)
    return body


def rate_limit_error(decision: RateDecision) -> RateLimitExceeded:
    if decision.scope == "day":
        return RateLimitExceeded(DAILY_LIMIT_MESSAGE, retry_after=None, scope="day")
    return RateLimitExceeded(MINUTE_LIMIT_MESSAGE, retry_after=decision.retry_after, scope="minute")


def error_response(error: GatewayError) -> GatewayResponse:
    """Render a typed failure as the client-facing envelope."""
    headers: Dict[str, str] = {}
    if isinstance(error, RateLimitExceeded):
        if error.retry_after is not None:
            headers["Retry-After"] = str(error.retry_after)
            body = error_body(error.public_message, retryAfter=error.retry_after)
        else:
            body = error_body(error.public_message)
    else:
        body = error_body(error.public_message)
    return GatewayResponse(status_code=error.status_code, body=body, headers=headers)


class ProbeGateway:
    """
    Wires validator, cache, limiter and executor together.

    Services are constructed once at startup (see probegate.extensions) and
    passed in; the gateway holds no state of its own.
    """

    def __init__(
        self,
        validator: HostInputValidator,
        cache: ResultCache,
        limiter: RateLimiter,
        executor: ExternalProbeExecutor,
    ):
        self.validator = validator
        self.cache = cache
        self.limiter = limiter
        self.executor = executor

    def handle(self, request: ProbeRequest) -> GatewayResponse:
        try:
            return self._handle(request)
        except GatewayError as e:
            if isinstance(e, RateLimitExceeded):
                logger.info("Rate limited (%s) on %s", e.scope, request.tool)
            return error_response(e)
        except Exception:
            logger.exception("Unhandled error while running tool %r", request.tool)
            return GatewayResponse(status_code=500, body=error_body(INTERNAL_ERROR_MESSAGE))

    def _handle(self, request: ProbeRequest) -> GatewayResponse:
        # ── Validating ──
        descriptor = get_descriptor(request.tool)
        target, extras = self.validator.bind_request(
            descriptor, request.params, request.client_identity,
        )
        cache_params = {"target": target.value}
        cache_params.update(extras)
        cacheable = descriptor.cache_ttl > 0

        # ── CacheCheck ──
        if cacheable:
            cached: Optional[ProbeResult] = self.cache.get(descriptor.name, cache_params)
            if cached is not None:
                return GatewayResponse(200, success_body(cached.payload), {"X-Cache": "HIT"})

        # ── RateCheck ──
        decision = self.limiter.consume(request.client_identity)
        if not decision.allowed:
            raise rate_limit_error(decision)

        # ── Executing ──
        result = self.executor.execute(descriptor, target, extras)
        if not result.succeeded:
            status = FAILURE_STATUS.get(result.error_kind, 502)
            return GatewayResponse(status, error_body(result.message or descriptor.failure_message))

        # ── CacheWrite ──
        if cacheable:
            self.cache.set(descriptor.name, cache_params, result, descriptor.cache_ttl)

        headers = {"X-Cache": "MISS"}
        if decision.remaining is not None:
            headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return GatewayResponse(200, success_body(result.payload), headers)
