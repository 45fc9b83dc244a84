# probegate/tools/whois_lookup.py
"""
WHOIS Lookup tool.

Runs the system `whois` client for a domain and lifts the common fields
(registrar, dates, nameservers, status) out of the free-form response.
Registries disagree on field names, so each field tries several labels.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from probegate.errors import UpstreamFailure
from probegate.executor import ProbeContext, parse_safely

logger = logging.getLogger(__name__)

TIMEOUT = 15

FIELD_LABELS = {
    "registrar": ["Registrar", "Sponsoring Registrar"],
    "createdDate": ["Creation Date", "Created", "Registration Date"],
    "expiryDate": ["Registry Expiry Date", "Expiry Date", "Expiration Date", "Registry Expiry"],
    "updatedDate": ["Updated Date", "Last Updated"],
    "registrant": ["Registrant Organization", "Registrant Name"],
}

NAME_SERVER_RE = re.compile(r"Name Server:\s*(.+)", re.IGNORECASE)
STATUS_RE = re.compile(r"Status:\s*(.+)", re.IGNORECASE)
NOT_FOUND_RE = re.compile(r"^(No match for|NOT FOUND|No Data Found|Domain not found)", re.IGNORECASE | re.MULTILINE)


def _field(text: str, labels: List[str]) -> Optional[str]:
    for label in labels:
        match = re.search(rf"^\s*{re.escape(label)}:[ \t]*(.+)$", text, re.IGNORECASE | re.MULTILINE)
        if match:
            return match.group(1).strip()
    return None


def parse_whois(raw: str) -> Dict[str, Any]:
    result: Dict[str, Any] = {key: _field(raw, labels) for key, labels in FIELD_LABELS.items()}

    # Same nameserver often appears once per registry/registrar block
    seen = set()
    name_servers = []
    for match in NAME_SERVER_RE.finditer(raw):
        ns = match.group(1).strip().lower().rstrip(".")
        if ns and ns not in seen:
            seen.add(ns)
            name_servers.append(ns)
    result["nameServers"] = name_servers

    result["status"] = list(dict.fromkeys(m.group(1).strip() for m in STATUS_RE.finditer(raw)))
    result["found"] = not NOT_FOUND_RE.search(raw)
    return result


async def run_whois_lookup(ctx: ProbeContext) -> Dict[str, Any]:
    domain = ctx.target.value
    out = await ctx.executor.run_command(["whois", domain], TIMEOUT)
    if not out.output.strip():
        raise UpstreamFailure(f"whois returned no data (exit status {out.returncode})")

    result: Dict[str, Any] = {"domain": domain}
    result.update(parse_safely(parse_whois, out.output, "whois"))
    result["raw"] = out.output
    return result
