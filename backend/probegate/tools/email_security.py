# probegate/tools/email_security.py
"""
Email tools.

    emailvalidate  syntax, MX presence, disposable-domain check
    smtp           banner grab from the lowest-priority MX on port 25
    blacklist      DNSBL lookups across eight public zones
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict, List

import dns.reversename

from probegate.errors import SsrfRejection, UpstreamFailure, UpstreamTimeout
from probegate.executor import ProbeContext, gather_isolated
from probegate.security.validation import email_syntax_ok
from probegate.tools.dns_lookup import format_rdata

logger = logging.getLogger(__name__)

SMTP_PORT = 25
SMTP_TIMEOUT = 8
MAX_BANNER_LINES = 10

DISPOSABLE_DOMAINS = frozenset({
    "tempmail.com",
    "throwaway.email",
    "guerrillamail.com",
    "mailinator.com",
    "yopmail.com",
    "tempinbox.com",
    "fakeinbox.com",
    "sharklasers.com",
})

DNSBL_ZONES = [
    ("Spamhaus ZEN", "zen.spamhaus.org"),
    ("Barracuda", "b.barracudacentral.org"),
    ("SpamCop", "bl.spamcop.net"),
    ("SORBS", "dnsbl.sorbs.net"),
    ("UCEPROTECT-1", "dnsbl-1.uceprotect.net"),
    ("Composite BL", "cbl.abuseat.org"),
    ("Invaluement", "dnsbl.invaluement.com"),
    ("JustSpam", "dnsbl.justspam.org"),
]


async def _mx_records(ctx: ProbeContext, domain: str) -> List[Dict[str, Any]]:
    answers = await ctx.executor.resolve(domain, "MX")
    records = [format_rdata("MX", r) for r in answers]
    return sorted(records, key=lambda r: r["priority"])


# ═══════════════════════════════════════════════════════════════
# EMAIL VALIDATION
# ═══════════════════════════════════════════════════════════════

async def run_email_validate(ctx: ProbeContext) -> Dict[str, Any]:
    email = ctx.target.value
    domain = email.rsplit("@", 1)[1]

    checks: Dict[str, Dict[str, Any]] = {"syntax": {"pass": email_syntax_ok(email)}}

    mx = (await gather_isolated({"mx": _mx_records(ctx, domain)}))["mx"]
    if mx:
        checks["mx"] = {"pass": True, "records": mx}
    else:
        checks["mx"] = {"pass": False, "error": "No MX records found"}

    checks["disposable"] = {"pass": domain not in DISPOSABLE_DOMAINS}

    return {
        "email": email,
        "checks": checks,
        "valid": all(c["pass"] for c in checks.values()),
    }


# ═══════════════════════════════════════════════════════════════
# SMTP BANNER
# ═══════════════════════════════════════════════════════════════

async def read_banner(reader: asyncio.StreamReader, timeout: float) -> str:
    """Read a (possibly multi-line "220-") greeting up to its final line."""
    lines = []
    for _ in range(MAX_BANNER_LINES):
        raw = await asyncio.wait_for(reader.readline(), timeout)
        if not raw:
            break
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        lines.append(line)
        if len(line) < 4 or line[3] != "-":
            break
    return "\n".join(lines)


async def run_smtp_check(ctx: ProbeContext) -> Dict[str, Any]:
    domain = ctx.target.value
    mx = await _mx_records(ctx, domain)
    if not mx:
        return {"domain": domain, "reachable": False, "error": "No MX records"}

    mx_host = mx[0]["exchange"]
    decision = ctx.executor.validator.policy.check_host(mx_host)
    if not decision.allowed:
        raise SsrfRejection(decision.reason)

    try:
        reader, writer = await ctx.executor.connect(mx_host, SMTP_PORT, SMTP_TIMEOUT)
    except (UpstreamFailure, UpstreamTimeout) as e:
        return {"domain": domain, "mxHost": mx_host, "reachable": False, "error": e.public_message}

    try:
        banner = await read_banner(reader, SMTP_TIMEOUT)
        writer.write(b"QUIT\r\n")
        await writer.drain()
    except asyncio.TimeoutError:
        return {"domain": domain, "mxHost": mx_host, "reachable": False, "error": "Timeout"}
    except OSError as e:
        return {"domain": domain, "mxHost": mx_host, "reachable": False, "error": str(e) or "Connection reset"}
    finally:
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()

    return {
        "domain": domain,
        "mxHost": mx_host,
        "reachable": banner.startswith("220"),
        "banner": banner,
    }


# ═══════════════════════════════════════════════════════════════
# DNSBL
# ═══════════════════════════════════════════════════════════════

def dnsbl_query_prefix(ip: str) -> str:
    """Reversed-octet (IPv4) or reversed-nibble (IPv6) label for DNSBL queries."""
    name = dns.reversename.from_address(ip).to_text(omit_final_dot=True)
    for suffix in (".in-addr.arpa", ".ip6.arpa"):
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


async def _zone_listing(ctx: ProbeContext, prefix: str, zone: str) -> List[str]:
    answers = await ctx.executor.resolve(f"{prefix}.{zone}", "A")
    return [r.address for r in answers]


async def run_blacklist(ctx: ProbeContext) -> Dict[str, Any]:
    ip = ctx.target.value
    prefix = dnsbl_query_prefix(ip)

    answers = await gather_isolated(
        {zone: _zone_listing(ctx, prefix, zone) for _, zone in DNSBL_ZONES},
        default=None,
    )

    results = []
    for name, zone in DNSBL_ZONES:
        codes = answers[zone]
        if codes is None:
            results.append({"name": name, "zone": zone, "listed": None, "error": "Lookup failed"})
        else:
            results.append({"name": name, "zone": zone, "listed": bool(codes), "response": codes})

    return {
        "ip": ip,
        "results": results,
        "listedCount": sum(1 for r in results if r["listed"]),
        "totalChecked": len(DNSBL_ZONES),
    }
