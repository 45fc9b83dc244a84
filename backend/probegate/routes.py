# probegate/routes.py
"""
Probe API routes.

Two ways in, one pipeline:
    POST <tool path>      one endpoint per tool (see probegate.tools)
    POST /?tool=<name>    legacy selector, mapped through LEGACY_TOOL_ROUTES

Both build a ProbeRequest and hand it to ProbeGateway.handle().
"""

from __future__ import annotations

import logging
from typing import Dict

from flask import Blueprint, jsonify, request

from probegate.errors import UnknownToolError
from probegate.extensions import get_gateway, get_services
from probegate.gateway import error_response
from probegate.models import GatewayResponse, ProbeRequest
from probegate.tools.registry import all_descriptors

logger = logging.getLogger(__name__)

probes_bp = Blueprint("probes", __name__)

# Legacy selector → tool path
LEGACY_TOOL_ROUTES = {
    "dns": "/api/network/dns",
    "whois": "/api/security/whois",
    "ssl": "/api/security/ssl",
    "port": "/api/network/port-scan",
    "ping": "/api/network/ping",
    "http-latency": "/api/network/http-latency",
    "isp": "/api/network/isp",
    "mac": "/api/network/mac",
    "smtp": "/api/email/smtp-check",
    "urlstatus": "/api/web/url-status",
    "redirect": "/api/web/redirects",
    "metadata": "/api/web/metadata",
    "traceroute": "/api/network/traceroute",
    "reversedns": "/api/network/reverse-dns",
    "subnet": "/api/network/subnet",
    "secheaders": "/api/security/security-headers",
    "breachcheck": "/api/security/breach-check",
    "blacklist": "/api/email/blacklist",
    "techdetect": "/api/web/tech-detect",
    "robots": "/api/web/robots",
    "headers": "/api/web/headers",
    "emailvalidate": "/api/email/validate",
}

_TOOL_BY_PATH = {d.path: d.name for d in all_descriptors()}


# ═══════════════════════════════════════════════════════════════
# REQUEST HELPERS
# ═══════════════════════════════════════════════════════════════

def client_identity() -> str:
    """Address the rate limiter keys on: proxy header if trusted, else peer."""
    if get_services().settings.trust_proxy_headers:
        for header in ("X-Real-IP", "CF-Connecting-IP"):
            value = (request.headers.get(header) or "").strip()
            if value:
                return value
    return request.remote_addr or "unknown"


def request_params() -> Dict[str, str]:
    """
    Flatten the body to a string→string mapping.

    JSON scalars are stringified; nested objects, lists, booleans and nulls
    are dropped so they can never reach a validator.
    """
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = request.form.to_dict() if request.form else {}

    params: Dict[str, str] = {}
    for key, value in body.items():
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, (str, int, float)):
            params[str(key)] = str(value)
    return params


def _to_flask(resp: GatewayResponse):
    out = jsonify(resp.body)
    out.status_code = resp.status_code
    for name, value in resp.headers.items():
        out.headers[name] = value
    return out


def _run(tool_name: str):
    probe = ProbeRequest(tool=tool_name, params=request_params(), client_identity=client_identity())
    return _to_flask(get_gateway().handle(probe))


# ═══════════════════════════════════════════════════════════════
# PER-TOOL ENDPOINTS
# ═══════════════════════════════════════════════════════════════

def _make_view(tool_name: str):
    def view():
        return _run(tool_name)
    view.__name__ = f"probe_{tool_name.replace('-', '_')}"
    return view


for _descriptor in all_descriptors():
    probes_bp.add_url_rule(
        _descriptor.path,
        endpoint=_descriptor.name,
        view_func=_make_view(_descriptor.name),
        methods=["POST"],
    )


# ═══════════════════════════════════════════════════════════════
# LEGACY ENTRY POINT
# ═══════════════════════════════════════════════════════════════

@probes_bp.post("/")
def legacy_dispatch():
    """POST /?tool=dns: older clients select the tool by name."""
    tool = request.args.get("tool")
    path = LEGACY_TOOL_ROUTES.get(tool) if tool else None
    if path is None:
        return _to_flask(error_response(UnknownToolError(tool)))
    return _run(_TOOL_BY_PATH[path])
