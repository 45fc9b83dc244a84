# probegate/tools/registry.py
"""
Static tool table.

Each Tool member carries its ToolDescriptor; ADAPTERS maps every member to
the coroutine that implements it. A Tool without an adapter is an import
error, so a new tool cannot be registered half-way.
"""

from __future__ import annotations

from collections import Counter
from enum import Enum
from typing import Dict, List

from probegate.errors import UnknownToolError
from probegate.executor import Adapter
from probegate.models import InputKind, InvocationKind, RateLimitPolicy, ToolDescriptor
from probegate.tools import (
    cert_lookup,
    connectivity_check,
    dns_lookup,
    email_security,
    header_check,
    ip_intel,
    web_inspect,
    whois_lookup,
)

_C = InvocationKind.COMMAND
_API = InvocationKind.HTTP_API
_HTTP = InvocationKind.HTTP
_DNS = InvocationKind.RESOLVER
_LOCAL = InvocationKind.LOCAL

HOUR = 3600
DAY = 86400


class Tool(Enum):
    # ── Network ──────────────────────────────────────────────────
    DNS = ToolDescriptor(
        "dns", "/api/network/dns", _DNS, 15, HOUR, InputKind.DOMAIN, "domain",
        rate_limit=RateLimitPolicy(60, 2000), extra_params=("dkimSelector",),
        failure_message="DNS lookup failed",
    )
    PORT = ToolDescriptor(
        "port", "/api/network/port-scan", _C, 25, 300, InputKind.HOST, "host",
        rate_limit=RateLimitPolicy(80, 12000), extra_params=("ports",),
        failure_message="Port scan failed or timed out",
    )
    HTTP_LATENCY = ToolDescriptor(
        "http-latency", "/api/network/http-latency", _HTTP, 15, 0, InputKind.URL, "host",
        failure_message="HTTP latency check failed",
    )
    PING = ToolDescriptor(
        "ping", "/api/network/ping", _C, 18, 60, InputKind.HOST, "host",
        failure_message="Ping failed or host unreachable",
    )
    TRACEROUTE = ToolDescriptor(
        "traceroute", "/api/network/traceroute", _C, 35, 300, InputKind.HOST, "host",
        failure_message="Traceroute failed",
    )
    ISP = ToolDescriptor(
        "isp", "/api/network/isp", _API, 8, DAY, InputKind.IP_OR_AUTO, "ip",
        rate_limit=RateLimitPolicy(60, 1500),
        failure_message="ISP lookup failed",
    )
    MAC = ToolDescriptor(
        "mac", "/api/network/mac", _API, 8, 30 * DAY, InputKind.MAC, "mac",
        rate_limit=RateLimitPolicy(45, 1500),
        failure_message="MAC lookup failed",
    )
    REVERSE_DNS = ToolDescriptor(
        "reversedns", "/api/network/reverse-dns", _DNS, 10, HOUR, InputKind.PUBLIC_IP, "ip",
        failure_message="Reverse DNS lookup failed",
    )
    SUBNET = ToolDescriptor(
        "subnet", "/api/network/subnet", _LOCAL, 2, 0, InputKind.SUBNET, "ip",
        extra_params=("cidr",),
        failure_message="Subnet calculation failed",
    )

    # ── Security ─────────────────────────────────────────────────
    WHOIS = ToolDescriptor(
        "whois", "/api/security/whois", _C, 18, DAY, InputKind.DOMAIN, "domain",
        rate_limit=RateLimitPolicy(60, 1500),
        failure_message="WHOIS lookup failed",
    )
    SSL = ToolDescriptor(
        "ssl", "/api/security/ssl", _C, 15, HOUR, InputKind.HOST, "domain",
        rate_limit=RateLimitPolicy(80, 12000),
        failure_message="SSL check failed",
    )
    SECURITY_HEADERS = ToolDescriptor(
        "secheaders", "/api/security/security-headers", _HTTP, 15, HOUR, InputKind.URL, "url",
        failure_message="Security headers check failed",
    )
    BREACH_CHECK = ToolDescriptor(
        "breachcheck", "/api/security/breach-check", _API, 8, 0, InputKind.SECRET, "password",
        failure_message="Breach check failed",
    )

    # ── Email ────────────────────────────────────────────────────
    EMAIL_VALIDATE = ToolDescriptor(
        "emailvalidate", "/api/email/validate", _DNS, 10, HOUR, InputKind.EMAIL, "email",
        failure_message="Email validation failed",
    )
    SMTP = ToolDescriptor(
        "smtp", "/api/email/smtp-check", _DNS, 20, 300, InputKind.DOMAIN, "domain",
        failure_message="SMTP check failed",
    )
    BLACKLIST = ToolDescriptor(
        "blacklist", "/api/email/blacklist", _DNS, 15, HOUR, InputKind.PUBLIC_IP, "ip",
        failure_message="Blacklist check failed",
    )

    # ── Web ──────────────────────────────────────────────────────
    HEADERS = ToolDescriptor(
        "headers", "/api/web/headers", _HTTP, 15, 300, InputKind.URL, "url",
        failure_message="Failed to fetch headers",
    )
    REDIRECT = ToolDescriptor(
        "redirect", "/api/web/redirects", _HTTP, 30, HOUR, InputKind.URL, "url",
        failure_message="Redirect check failed",
    )
    METADATA = ToolDescriptor(
        "metadata", "/api/web/metadata", _HTTP, 15, HOUR, InputKind.URL, "url",
        failure_message="Metadata extraction failed",
    )
    TECH_DETECT = ToolDescriptor(
        "techdetect", "/api/web/tech-detect", _HTTP, 15, HOUR, InputKind.URL, "url",
        failure_message="Technology detection failed",
    )
    ROBOTS = ToolDescriptor(
        "robots", "/api/web/robots", _HTTP, 15, HOUR, InputKind.URL, "url",
        failure_message="Robots analysis failed",
    )
    URL_STATUS = ToolDescriptor(
        "urlstatus", "/api/web/url-status", _HTTP, 25, 300, InputKind.URL, "url",
        failure_message="URL check failed",
    )

    @property
    def descriptor(self) -> ToolDescriptor:
        return self.value


ADAPTERS: Dict[Tool, Adapter] = {
    Tool.DNS: dns_lookup.run_dns_lookup,
    Tool.PORT: connectivity_check.run_port_scan,
    Tool.HTTP_LATENCY: web_inspect.run_http_latency,
    Tool.PING: connectivity_check.run_ping,
    Tool.TRACEROUTE: connectivity_check.run_traceroute,
    Tool.ISP: ip_intel.run_isp_lookup,
    Tool.MAC: ip_intel.run_mac_lookup,
    Tool.REVERSE_DNS: dns_lookup.run_reverse_dns,
    Tool.SUBNET: ip_intel.run_subnet,
    Tool.WHOIS: whois_lookup.run_whois_lookup,
    Tool.SSL: cert_lookup.run_cert_lookup,
    Tool.SECURITY_HEADERS: header_check.run_security_headers,
    Tool.BREACH_CHECK: ip_intel.run_breach_check,
    Tool.EMAIL_VALIDATE: email_security.run_email_validate,
    Tool.SMTP: email_security.run_smtp_check,
    Tool.BLACKLIST: email_security.run_blacklist,
    Tool.HEADERS: header_check.run_header_inspect,
    Tool.REDIRECT: web_inspect.run_redirect_trace,
    Tool.METADATA: web_inspect.run_metadata,
    Tool.TECH_DETECT: web_inspect.run_tech_detect,
    Tool.ROBOTS: web_inspect.run_robots,
    Tool.URL_STATUS: web_inspect.run_url_status,
}

_missing = [tool.name for tool in Tool if tool not in ADAPTERS]
if _missing:
    raise RuntimeError(f"Tools registered without an adapter: {', '.join(_missing)}")

_BY_NAME: Dict[str, Tool] = {tool.value.name: tool for tool in Tool}


def get_tool(name) -> Tool:
    tool = _BY_NAME.get(name) if isinstance(name, str) else None
    if tool is None:
        raise UnknownToolError(name)
    return tool


def get_descriptor(name) -> ToolDescriptor:
    return get_tool(name).value


def get_adapter(name) -> Adapter:
    return ADAPTERS[get_tool(name)]


def all_descriptors() -> List[ToolDescriptor]:
    return [tool.value for tool in Tool]


def count_by_invocation() -> Dict[str, int]:
    """Number of registered tools per InvocationKind, for operator stats."""
    counts = Counter(d.invocation_kind.value for d in all_descriptors())
    return {kind.value: counts.get(kind.value, 0) for kind in InvocationKind}
