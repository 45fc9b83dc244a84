# probegate/models.py
"""
Data structures that flow through the gateway.

ProbeRequest is created at the HTTP boundary and dies with the exchange.
ProbeResult is produced by the executor and cached by value. ToolDescriptor
is static configuration, read-only at request time.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


def now_utc() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class TargetKind(str, Enum):
    HOST = "host"
    URL = "url"
    IP = "ip"
    MAC = "mac"
    EMAIL = "email"
    SECRET = "secret"
    NETWORK = "network"


class InvocationKind(str, Enum):
    COMMAND = "command"     # OS-level binary (whois, openssl, ping, traceroute, nmap)
    HTTP_API = "http_api"   # fixed, allow-listed third-party API
    HTTP = "http"           # fetch of a validated user-supplied URL
    RESOLVER = "resolver"   # in-process DNS / socket probe
    LOCAL = "local"         # pure computation, no I/O


class InputKind(str, Enum):
    DOMAIN = "domain"       # bare host, narrow sanitizer only (queried, never contacted)
    HOST = "host"           # bare host, sanitizer + SSRF policy (contacted directly)
    URL = "url"             # full URL, SSRF policy
    IP = "ip"
    PUBLIC_IP = "public_ip"
    IP_OR_AUTO = "ip_or_auto"
    MAC = "mac"
    EMAIL = "email"
    SECRET = "secret"
    SUBNET = "subnet"


# ---------------------------------------------------------------------------
# Request / target / decision
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProbeRequest:
    tool: str
    params: Mapping[str, str]
    client_identity: str


@dataclass(frozen=True)
class NormalizedTarget:
    """Canonical form of user input, produced only by the validator."""
    kind: TargetKind
    value: str


@dataclass(frozen=True)
class SsrfDecision:
    allowed: bool
    reason: str = ""


# ---------------------------------------------------------------------------
# Static tool configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RateLimitPolicy:
    per_minute: int
    per_day: int


@dataclass(frozen=True)
class ToolDescriptor:
    """
    Static description of one reconnaissance tool.

    Fields:
        name:            Legacy selector name (e.g. "dns", "whois")
        path:            Tool-scoped endpoint path
        invocation_kind: How the executor reaches the outside world
        timeout:         Overall deadline for one execution, seconds
        cache_ttl:       Result TTL in seconds; 0 disables caching
        rate_limit:      Advisory per-tool budget mirrored by the client, if any
        input_kind:      Which validator binds the primary input
        input_field:     Body key holding the primary input
        extra_params:    Optional secondary body keys accepted by the tool
        failure_message: Client-facing message when execution fails
    """
    name: str
    path: str
    invocation_kind: InvocationKind
    timeout: float
    cache_ttl: int
    input_kind: InputKind
    input_field: str
    rate_limit: Optional[RateLimitPolicy] = None
    extra_params: Tuple[str, ...] = ()
    failure_message: str = "Probe failed"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ProbeResult:
    """
    Standardized output of one tool execution.

    Exactly one of payload / error_kind is meaningful, selected by succeeded.
    """
    tool: str
    succeeded: bool
    payload: Any = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def ok(cls, tool: str, payload: Any) -> "ProbeResult":
        return cls(tool=tool, succeeded=True, payload=payload)

    @classmethod
    def failed(cls, tool: str, error_kind: str, message: str) -> "ProbeResult":
        return cls(tool=tool, succeeded=False, error_kind=error_kind, message=message)


@dataclass
class RateDecision:
    allowed: bool
    scope: Optional[str] = None         # "minute" | "day" when rejected
    retry_after: Optional[int] = None   # seconds, minute-scope rejections only
    remaining: Optional[int] = None


@dataclass
class GatewayResponse:
    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
