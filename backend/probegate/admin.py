# probegate/admin.py
"""
Operator endpoints, protected by a static bearer token (ADMIN_TOKEN).

    POST /admin/cache/clear   drop every cached result
    GET  /admin/stats         cache, limiter and tool-table counters

With ADMIN_TOKEN unset the endpoints answer 404, as if absent.
"""

from __future__ import annotations

import hmac
import logging
from functools import wraps
from typing import Callable, Optional

from flask import Blueprint, jsonify, request

from probegate.extensions import get_services
from probegate.tools.registry import all_descriptors, count_by_invocation

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def get_bearer_token() -> Optional[str]:
    auth = request.headers.get("Authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip()
    return None


def require_admin_token(fn: Callable):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        expected = get_services().settings.admin_token
        if not expected:
            return jsonify(error=True, message="Endpoint not found"), 404

        token = get_bearer_token()
        if not token:
            return jsonify(error=True, message="missing Authorization: Bearer <token>"), 401
        if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
            logger.warning("Rejected admin request from %s", request.remote_addr)
            return jsonify(error=True, message="invalid token"), 401

        return fn(*args, **kwargs)

    return wrapper


@admin_bp.post("/cache/clear")
@require_admin_token
def clear_cache():
    cleared = get_services().cache.clear()
    return jsonify(error=False, data={"cleared": cleared}), 200


@admin_bp.get("/stats")
@require_admin_token
def stats():
    services = get_services()
    return jsonify(error=False, data={
        "cache": services.cache.stats(),
        "rateLimiter": services.limiter.stats(),
        "tools": {
            "total": len(all_descriptors()),
            "byInvocation": count_by_invocation(),
        },
    }), 200
