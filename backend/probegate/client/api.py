# probegate/client/api.py
"""
Python client for the gateway's legacy entry point (POST /?tool=<name>).

Call order for call(tool, data):
    1. local result cache (per-tool durations)
    2. advisory rate estimate; refuse locally when the budget is spent
    3. record the call, POST it
    4. 429 → resync the estimator with the server's retryAfter, raise
    5. non-2xx or {"error": true} → raise
    6. cache and return "data"
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx

from probegate.cache import make_cache_key
from probegate.client.estimator import ClientRateEstimator

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 40.0
DEFAULT_CACHE_SECONDS = 300

# Seconds a successful result stays in the client cache
CACHE_DURATIONS = {
    "dns": 3600,
    "whois": 86400,
    "ssl": 3600,
    "port": 300,
    "ping": 60,
    "isp": 86400,
    "mac": 2592000,
    "metadata": 3600,
    "redirect": 3600,
    "urlstatus": 300,
}

# Never cached client-side: the request itself is sensitive
UNCACHED_TOOLS = frozenset({"breachcheck"})


class GatewayClientError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ClientRateLimited(GatewayClientError):
    """Refused locally by the estimator, or by the server with a 429."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[int] = None,
        scope: str = "minute",
        status_code: Optional[int] = None,
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after
        self.scope = scope


def _json_body(resp: httpx.Response) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class GatewayClient:
    """
    Args:
        base_url:        Gateway root, e.g. "https://api.ducktyped.xyz"
        estimator:       Advisory limiter (defaults to the tool table budgets)
        cache_durations: Per-tool client cache lifetimes in seconds
        transport:       Optional httpx transport (tests)
        clock:           Monotonic clock for the client cache
    """

    def __init__(
        self,
        base_url: str,
        *,
        estimator: Optional[ClientRateEstimator] = None,
        cache_durations: Optional[Mapping[str, int]] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
        clock=time.monotonic,
    ):
        self.estimator = estimator or ClientRateEstimator()
        self.cache_durations = dict(CACHE_DURATIONS if cache_durations is None else cache_durations)
        self._clock = clock
        self._cache: Dict[str, Tuple[float, Any]] = {}
        self._http = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )
        self.available: Optional[bool] = None

    # ── Lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "GatewayClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── Health ───────────────────────────────────────────────────

    def health(self) -> bool:
        """True when /health answers {"data": {"status": "ok"}}."""
        try:
            resp = self._http.get("/health")
        except httpx.HTTPError as e:
            logger.warning("Gateway health check failed: %s", e)
            self.available = False
            return False

        body = _json_body(resp)
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        self.available = resp.status_code == 200 and data.get("status") == "ok"
        return self.available

    # ── Cache ────────────────────────────────────────────────────

    def _cache_get(self, tool: str, key: str) -> Optional[Any]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        max_age = self.cache_durations.get(tool, DEFAULT_CACHE_SECONDS)
        if self._clock() - stored_at > max_age:
            del self._cache[key]
            return None
        return value

    def _cache_set(self, tool: str, key: str, value: Any) -> None:
        if tool in UNCACHED_TOOLS:
            return
        self._cache[key] = (self._clock(), value)

    def clear_cache(self) -> int:
        count = len(self._cache)
        self._cache.clear()
        return count

    # ── Calls ────────────────────────────────────────────────────

    def call(self, tool: str, data: Optional[Mapping[str, Any]] = None) -> Any:
        payload = dict(data or {})
        key = make_cache_key(tool, payload)

        if tool not in UNCACHED_TOOLS:
            cached = self._cache_get(tool, key)
            if cached is not None:
                logger.debug("Using cached response for %s", tool)
                return cached

        decision = self.estimator.predict(tool)
        if not decision.allowed:
            if decision.scope == "day":
                raise ClientRateLimited(
                    f"Daily limit reached for {tool.upper()}. Please try again tomorrow.", scope="day",
                )
            raise ClientRateLimited(
                f"Rate limit reached. Try again in {decision.retry_after} seconds.",
                retry_after=decision.retry_after,
            )

        self.estimator.record(tool)
        warning = self.estimator.warning(tool)
        if warning:
            logger.warning("Rate limit warning: %s", warning)

        try:
            resp = self._http.post("/", params={"tool": tool}, json=payload)
        except httpx.TimeoutException as e:
            raise GatewayClientError(f"Request to {tool} timed out") from e
        except httpx.HTTPError as e:
            raise GatewayClientError(f"Request failed: {type(e).__name__}") from e

        body = _json_body(resp)

        if resp.status_code == 429:
            retry_after = body.get("retryAfter")
            if retry_after is not None:
                try:
                    retry_after = int(retry_after)
                except (TypeError, ValueError):
                    retry_after = None
            # A minute-scope 429 always carries retryAfter; without it the
            # server refused for the day
            self.estimator.sync(tool, retry_after)
            raise ClientRateLimited(
                body.get("message") or "Rate limit exceeded. Please wait a moment.",
                retry_after=retry_after,
                scope="minute" if retry_after is not None else "day",
                status_code=429,
            )

        if not resp.is_success:
            raise GatewayClientError(
                body.get("message") or f"Request failed: {resp.status_code}", resp.status_code,
            )

        if body.get("error"):
            raise GatewayClientError(body.get("message") or "Unknown error occurred", resp.status_code)

        result = body.get("data")
        self._cache_set(tool, key, result)
        return result
