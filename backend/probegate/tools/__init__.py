# probegate/tools/__init__.py
"""
Reconnaissance tool adapters.

Each adapter is a coroutine taking a ProbeContext and returning a JSON-ready
payload. Adapters never see raw request input: the gateway binds and
validates it first, and the executor supplies every outbound call.

Endpoints (one per tool, all POST):
    /api/network/{dns, port-scan, http-latency, ping, traceroute, isp,
                  mac, reverse-dns, subnet}
    /api/security/{whois, ssl, security-headers, breach-check}
    /api/email/{validate, smtp-check, blacklist}
    /api/web/{headers, redirects, metadata, tech-detect, robots, url-status}
"""

from probegate.tools.registry import Tool, all_descriptors, get_descriptor, get_tool

__all__ = ["Tool", "all_descriptors", "get_descriptor", "get_tool"]
