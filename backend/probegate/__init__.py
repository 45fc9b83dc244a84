# probegate/__init__.py
"""
App factory.

    - Logging configured once: INFO in production, DEBUG otherwise
      (LOG_LEVEL overrides)
    - CORS origins from CORS_ORIGINS / ALLOWED_ORIGIN
    - Global request body limit (MAX_CONTENT_LENGTH, default 1 MiB)
    - JSON envelope for every error: {"error": true, "message": ...}
    - Services (cache, limiter, validator, executor, gateway) built once
      and attached to app.extensions["probegate"]
"""

from __future__ import annotations

import logging
import traceback
from typing import Optional

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from probegate.config import GatewaySettings, load_settings
from probegate.extensions import init_extensions
from probegate.models import now_utc

__version__ = "2.0.0"
API_VERSION = "2.0"

error_logger = logging.getLogger("probegate.errors")


def _configure_logging(settings: GatewaySettings) -> None:
    default_level = logging.INFO if settings.production else logging.DEBUG
    level = logging.getLevelName((settings.log_level or "").upper()) if settings.log_level else default_level
    if not isinstance(level, int):
        level = default_level

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S" if settings.production else "%H:%M:%S",
    )
    logging.getLogger("probegate").setLevel(level)

    # Werkzeug logs every request
    logging.getLogger("werkzeug").setLevel(logging.INFO)
    # Quieten noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _error(message: str, status: int):
    return jsonify(error=True, message=message), status


def create_app(
    settings: Optional[GatewaySettings] = None,
    *,
    executor=None,
    resolver=None,
    clock=None,
) -> Flask:
    """
    Build the Flask app.

    Args:
        settings: Explicit settings; read from the environment when omitted
        executor: Replacement ExternalProbeExecutor (tests)
        resolver: Replacement SSRF resolver, host → list of addresses (tests)
        clock:    Monotonic clock shared by cache and limiter (tests)
    """
    settings = settings or load_settings()
    app = Flask(__name__)

    # ── Logging ──────────────────────────────────────────────────────
    _configure_logging(settings)
    app.logger.setLevel(logging.getLogger("probegate").level)

    # ── CORS ─────────────────────────────────────────────────────────
    CORS(app, resources={
        r"/*": {
            "origins": settings.cors_origins,
            "allow_headers": ["Content-Type", "Authorization"],
            "methods": ["GET", "POST", "OPTIONS"],
            "max_age": 86400,
        }
    })

    # ── Limits ───────────────────────────────────────────────────────
    app.config["MAX_CONTENT_LENGTH"] = settings.max_content_length
    app.json.sort_keys = False

    # ── Services ─────────────────────────────────────────────────────
    service_kwargs = {"executor": executor, "resolver": resolver}
    if clock is not None:
        service_kwargs["clock"] = clock
    init_extensions(app, settings, **service_kwargs)

    # ── Blueprints ───────────────────────────────────────────────────
    from probegate.admin import admin_bp
    from probegate.routes import probes_bp

    app.register_blueprint(probes_bp)
    app.register_blueprint(admin_bp)

    # ── Global Error Handlers ────────────────────────────────────────
    # Clean JSON for all errors; tracebacks stay in the server log.

    @app.errorhandler(400)
    def bad_request(e):
        return _error("The request was malformed or invalid.", 400)

    @app.errorhandler(404)
    def not_found(e):
        return _error("Endpoint not found", 404)

    @app.errorhandler(405)
    def method_not_allowed(e):
        return _error("This HTTP method is not allowed for this endpoint.", 405)

    @app.errorhandler(413)
    def payload_too_large(e):
        return _error("The request body exceeds the maximum allowed size.", 413)

    @app.errorhandler(429)
    def rate_limited(e):
        return _error("Too many requests. Please slow down.", 429)

    @app.errorhandler(500)
    def internal_error(e):
        error_logger.error("500 Internal Server Error:\n%s", traceback.format_exc())
        return _error("Internal server error", 500)

    @app.errorhandler(Exception)
    def catch_all(e):
        """Catch-all for any unhandled exception; tracebacks never reach the client."""
        if isinstance(e, HTTPException):
            return _error(e.description or e.name, e.code or 500)
        error_logger.error("Unhandled exception: %s\n%s", str(e), traceback.format_exc())
        return _error("Internal server error", 500)

    # ─────────────────────────────────────────────────────────────────

    # Liveness; clients gate gateway-backed tools on this
    @app.get("/health")
    def health():
        return jsonify(error=False, data={
            "status": "ok",
            "timestamp": now_utc().isoformat(),
            "version": API_VERSION,
        }), 200

    return app
