# probegate/extensions.py
"""
Process-wide services, built once per app and stored on app.extensions.

Nothing in here survives a restart: the cache and the rate buckets live in
memory for the lifetime of the process.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from flask import current_app

from probegate.cache import ResultCache
from probegate.config import GatewaySettings
from probegate.executor import ExternalProbeExecutor
from probegate.gateway import ProbeGateway
from probegate.ratelimit import RateLimiter
from probegate.security.ssrf import Resolver, SsrfPolicy
from probegate.security.validation import HostInputValidator

EXTENSION_KEY = "probegate"


@dataclass
class GatewayServices:
    settings: GatewaySettings
    validator: HostInputValidator
    cache: ResultCache
    limiter: RateLimiter
    executor: ExternalProbeExecutor
    gateway: ProbeGateway


def init_extensions(
    app,
    settings: GatewaySettings,
    executor: Optional[ExternalProbeExecutor] = None,
    resolver: Optional[Resolver] = None,
    clock: Callable[[], float] = time.monotonic,
) -> GatewayServices:
    validator = HostInputValidator(SsrfPolicy(resolver=resolver))
    cache = ResultCache(clock=clock)
    limiter = RateLimiter(
        points=settings.rate_limit_max,
        window=settings.rate_limit_window,
        daily_limit=settings.rate_limit_daily,
        clock=clock,
    )
    if executor is None:
        executor = ExternalProbeExecutor(validator, settings)

    services = GatewayServices(
        settings=settings,
        validator=validator,
        cache=cache,
        limiter=limiter,
        executor=executor,
        gateway=ProbeGateway(validator, cache, limiter, executor),
    )
    app.extensions[EXTENSION_KEY] = services
    return services


def get_services() -> GatewayServices:
    return current_app.extensions[EXTENSION_KEY]


def get_gateway() -> ProbeGateway:
    return get_services().gateway
