# probegate/tools/header_check.py
"""
HTTP Header tools.

    secheaders  weighted score over nine security headers, graded A+ to F
    headers     raw response headers of a single request, no redirects

The score is the weight of present headers over the total weight, rounded
to a whole percentage.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping

from probegate.executor import ProbeContext

logger = logging.getLogger(__name__)

TIMEOUT = 10
HEADERS_BODY_LIMIT = 64 * 1024

# (header, weight, recommendation)
SECURITY_HEADERS = [
    ("Strict-Transport-Security", 20,
     "Add HSTS header: Strict-Transport-Security: max-age=31536000; includeSubDomains"),
    ("Content-Security-Policy", 25,
     "Add CSP header to prevent XSS and injection attacks"),
    ("X-Content-Type-Options", 10,
     "Add: X-Content-Type-Options: nosniff"),
    ("X-Frame-Options", 10,
     "Add: X-Frame-Options: DENY or SAMEORIGIN"),
    ("X-XSS-Protection", 5,
     "Add: X-XSS-Protection: 1; mode=block"),
    ("Referrer-Policy", 10,
     "Add: Referrer-Policy: strict-origin-when-cross-origin"),
    ("Permissions-Policy", 10,
     "Add Permissions-Policy to control browser features"),
    ("X-Permitted-Cross-Domain-Policies", 5,
     "Add: X-Permitted-Cross-Domain-Policies: none"),
    ("Cross-Origin-Opener-Policy", 5,
     "Add: Cross-Origin-Opener-Policy: same-origin"),
]

# (minimum percentage, grade), highest first
GRADE_THRESHOLDS = [(90, "A+"), (80, "A"), (70, "B"), (60, "C"), (40, "D")]


def grade_for(percentage: int) -> str:
    for minimum, grade in GRADE_THRESHOLDS:
        if percentage >= minimum:
            return grade
    return "F"


def grade_security_headers(headers: Mapping[str, str]) -> Dict[str, Any]:
    """
    Score a lower-cased header mapping.

    X-Content-Type-Options only counts when set to "nosniff"; every other
    header counts when present and non-empty.
    """
    checks: Dict[str, Dict[str, Any]] = {}
    score = 0
    max_score = 0

    for name, weight, recommendation in SECURITY_HEADERS:
        value = headers.get(name.lower())
        if name == "X-Content-Type-Options":
            present = (value or "").strip().lower() == "nosniff"
        else:
            present = bool(value)
        checks[name] = {
            "present": present,
            "value": value or None,
            "weight": weight,
            "recommendation": recommendation,
        }
        max_score += weight
        if present:
            score += weight

    percentage = round(score * 100 / max_score)
    return {"grade": grade_for(percentage), "score": percentage, "checks": checks}


def missing_headers(checks: Mapping[str, Dict[str, Any]]) -> List[str]:
    return [name for name, check in checks.items() if not check["present"]]


async def run_security_headers(ctx: ProbeContext) -> Dict[str, Any]:
    url = ctx.target.value
    resp = await ctx.executor.fetch(url, timeout=TIMEOUT, max_redirects=5, max_bytes=HEADERS_BODY_LIMIT)

    graded = grade_security_headers(resp.headers)
    return {
        "url": url,
        "finalUrl": resp.final_url,
        "statusCode": resp.status_code,
        "grade": graded["grade"],
        "score": graded["score"],
        "checks": graded["checks"],
        "missing": missing_headers(graded["checks"]),
        "allHeaders": resp.headers,
    }


async def run_header_inspect(ctx: ProbeContext) -> Dict[str, Any]:
    url = ctx.target.value
    resp = await ctx.executor.fetch(
        url, timeout=TIMEOUT, follow_redirects=False, max_bytes=HEADERS_BODY_LIMIT,
    )
    return {
        "url": url,
        "statusCode": resp.status_code,
        "statusText": resp.reason,
        "headers": resp.headers,
        "headerCount": len(resp.headers),
    }
