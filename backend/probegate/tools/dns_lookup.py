# probegate/tools/dns_lookup.py
"""
DNS Lookup and Reverse DNS tools.

Forward lookup queries the major record types for a domain in parallel and
derives SPF, DMARC and DKIM views from the TXT answers.

Record types queried: A, AAAA, MX, NS, TXT, SOA, CNAME, CAA
DKIM selectors probed: default, google, selector1, selector2, k1, k2, mail,
dkim (plus the caller's own selector, probed first)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from probegate.executor import ProbeContext, gather_isolated

logger = logging.getLogger(__name__)

RECORD_TYPES = ["A", "AAAA", "MX", "NS", "TXT", "SOA", "CNAME", "CAA"]
DKIM_SELECTORS = ["default", "google", "selector1", "selector2", "k1", "k2", "mail", "dkim"]


def format_rdata(rtype: str, rdata) -> Any:
    """Render one dnspython rdata as JSON-friendly data."""
    if rtype in ("A", "AAAA"):
        return rdata.address
    if rtype == "MX":
        return {"exchange": str(rdata.exchange).rstrip("."), "priority": rdata.preference}
    if rtype in ("NS", "CNAME"):
        return str(rdata.target).rstrip(".")
    if rtype == "TXT":
        return "".join(_text(s) for s in rdata.strings)
    if rtype == "SOA":
        return {
            "nsname": str(rdata.mname).rstrip("."),
            "hostmaster": str(rdata.rname).rstrip("."),
            "serial": rdata.serial,
            "refresh": rdata.refresh,
            "retry": rdata.retry,
            "expire": rdata.expire,
            "minttl": rdata.minimum,
        }
    if rtype == "CAA":
        return {"critical": rdata.flags, "tag": _text(rdata.tag), "value": _text(rdata.value)}
    return str(rdata)


def _text(value) -> str:
    return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else str(value)


async def _query(ctx: ProbeContext, name: str, rtype: str) -> List[Any]:
    answers = await ctx.executor.resolve(name, rtype)
    return [format_rdata(rtype, r) for r in answers]


async def run_dns_lookup(ctx: ProbeContext) -> Dict[str, Any]:
    domain = ctx.target.value

    selectors = list(DKIM_SELECTORS)
    own = ctx.params.get("dkimSelector")
    if own:
        selectors = [own] + [s for s in selectors if s != own]

    tasks = {rtype: _query(ctx, domain, rtype) for rtype in RECORD_TYPES}
    tasks["_dmarc"] = _query(ctx, f"_dmarc.{domain}", "TXT")
    for sel in selectors:
        tasks[f"dkim:{sel}"] = _query(ctx, f"{sel}._domainkey.{domain}", "TXT")

    answers = await gather_isolated(tasks, default=[])

    results: Dict[str, Any] = {rtype: answers[rtype] for rtype in RECORD_TYPES}
    results["SPF"] = [t for t in results["TXT"] if t.startswith("v=spf1")]
    results["DMARC"] = [t for t in answers["_dmarc"] if t.startswith("v=DMARC1")]
    results["DKIM"] = {
        sel: answers[f"dkim:{sel}"] for sel in selectors if answers[f"dkim:{sel}"]
    }
    results["issues"] = analyse_mail_records(results)
    return results


def analyse_mail_records(records: Dict[str, Any]) -> List[Dict[str, str]]:
    """Flag missing or permissive SPF / DMARC policies."""
    issues = []

    spf = records.get("SPF", [])
    if not spf:
        issues.append({"severity": "high", "title": "No SPF record found"})
    elif len(spf) > 1:
        issues.append({"severity": "medium", "title": "Multiple SPF records found"})
    elif "+all" in spf[0]:
        issues.append({"severity": "high", "title": "SPF uses +all (permissive)"})
    elif "~all" in spf[0]:
        issues.append({"severity": "low", "title": "SPF uses ~all (softfail)"})

    dmarc = records.get("DMARC", [])
    if not dmarc:
        issues.append({"severity": "high", "title": "No DMARC record found"})
    elif "p=none" in dmarc[0].replace(" ", ""):
        issues.append({"severity": "medium", "title": "DMARC policy set to none"})

    if not records.get("CAA"):
        issues.append({"severity": "low", "title": "No CAA records found"})

    return issues


async def run_reverse_dns(ctx: ProbeContext) -> Dict[str, Any]:
    ip = ctx.target.value
    hostnames = await ctx.executor.reverse(ip)
    result: Dict[str, Any] = {"ip": ip, "hostnames": hostnames}
    if not hostnames:
        result["error"] = "No reverse DNS record found"
    return result
