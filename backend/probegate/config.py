# probegate/config.py
"""
Gateway configuration, read from environment variables.

    PROBEGATE_ENV         "production" enables production logging / CORS defaults
    ALLOWED_ORIGIN        single allowed CORS origin (original deployment style)
    CORS_ORIGINS          comma-separated list, takes precedence over ALLOWED_ORIGIN
    MAX_CONTENT_LENGTH    global request body limit in bytes (default 1 MiB)
    RATE_LIMIT_MAX        requests per window per client (default 30)
    RATE_LIMIT_WINDOW     window length in seconds (default 60)
    RATE_LIMIT_DAILY      requests per day per client, 0 disables (default 2000)
    TRUST_PROXY_HEADERS   honour X-Real-IP / CF-Connecting-IP (default false)
    IPINFO_TOKEN          optional; without it ISP lookups fall back to ip-api.com
    VIRUSTOTAL_API_KEY    optional; without it URL status omits reputation data
    ADMIN_TOKEN           bearer token for /admin endpoints; unset disables them
    LOG_LEVEL             overrides the environment-derived log level

Settings are read when load_settings() is called, not at import time.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

DEFAULT_ORIGIN = "https://ducktyped.xyz"
DEV_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


@dataclass
class GatewaySettings:
    production: bool = False
    cors_origins: List[str] = field(default_factory=lambda: list(DEV_ORIGINS))
    max_content_length: int = 1024 * 1024
    rate_limit_max: int = 30
    rate_limit_window: int = 60
    rate_limit_daily: int = 2000
    trust_proxy_headers: bool = False
    ipinfo_token: Optional[str] = None
    virustotal_api_key: Optional[str] = None
    admin_token: Optional[str] = None
    log_level: Optional[str] = None


def load_settings() -> GatewaySettings:
    production = (os.getenv("PROBEGATE_ENV", "").strip().lower() == "production")

    cors_env = _env_str("CORS_ORIGINS")
    if cors_env:
        origins = [o.strip() for o in cors_env.split(",") if o.strip()]
    elif _env_str("ALLOWED_ORIGIN"):
        origins = [_env_str("ALLOWED_ORIGIN")]
    elif production:
        origins = [DEFAULT_ORIGIN]
    else:
        origins = list(DEV_ORIGINS)

    return GatewaySettings(
        production=production,
        cors_origins=origins,
        max_content_length=_env_int("MAX_CONTENT_LENGTH", 1024 * 1024, minimum=1),
        rate_limit_max=_env_int("RATE_LIMIT_MAX", 30, minimum=1),
        rate_limit_window=_env_int("RATE_LIMIT_WINDOW", 60, minimum=1),
        rate_limit_daily=_env_int("RATE_LIMIT_DAILY", 2000),
        trust_proxy_headers=_env_bool("TRUST_PROXY_HEADERS", False),
        ipinfo_token=_env_str("IPINFO_TOKEN"),
        virustotal_api_key=_env_str("VIRUSTOTAL_API_KEY"),
        admin_token=_env_str("ADMIN_TOKEN"),
        log_level=_env_str("LOG_LEVEL"),
    )
