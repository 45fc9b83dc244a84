# probegate/tools/cert_lookup.py
"""
SSL/TLS Certificate tool.

Fetches the leaf certificate with `openssl s_client` and parses it with the
cryptography library. Port 443 only.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID

from probegate.errors import UpstreamFailure
from probegate.executor import ProbeContext, parse_safely
from probegate.models import now_utc
from probegate.security.ssrf import parse_ip

logger = logging.getLogger(__name__)

TIMEOUT = 10
EXPIRING_SOON_DAYS = 30

PEM_RE = re.compile(
    r"-----BEGIN CERTIFICATE-----\s.+?-----END CERTIFICATE-----",
    re.DOTALL,
)


def _first(name: x509.Name, oid) -> Optional[str]:
    attrs = name.get_attributes_for_oid(oid)
    return attrs[0].value if attrs else None


def _colon_hex(digest: bytes) -> str:
    return ":".join(f"{b:02X}" for b in digest)


def parse_certificate(raw: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Parse the first PEM certificate found in s_client output."""
    match = PEM_RE.search(raw)
    if not match:
        raise ValueError("no certificate in output")

    cert = x509.load_pem_x509_certificate(match.group(0).encode("ascii"))
    now = now or now_utc()

    not_before = cert.not_valid_before_utc
    not_after = cert.not_valid_after_utc
    days_remaining = math.ceil((not_after - now).total_seconds() / 86400)

    sans: List[str] = []
    try:
        san_ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        sans = san_ext.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        pass

    return {
        "subject": _first(cert.subject, NameOID.COMMON_NAME),
        "issuer": _first(cert.issuer, NameOID.ORGANIZATION_NAME) or _first(cert.issuer, NameOID.COMMON_NAME),
        "issuerCn": _first(cert.issuer, NameOID.COMMON_NAME),
        "sans": sans,
        "validFrom": not_before.isoformat(),
        "validTo": not_after.isoformat(),
        "daysRemaining": days_remaining,
        "isExpired": days_remaining < 0,
        "isExpiringSoon": days_remaining < EXPIRING_SOON_DAYS,
        "isSelfSigned": cert.issuer == cert.subject,
        "serial": format(cert.serial_number, "X"),
        "fingerprint": _colon_hex(cert.fingerprint(hashes.SHA1())),
        "fingerprintSha256": _colon_hex(cert.fingerprint(hashes.SHA256())),
    }


def hostname_matches(domain: str, names: List[str]) -> bool:
    domain = domain.lower()
    for name in (n.lower() for n in names):
        if name == domain:
            return True
        if name.startswith("*.") and domain.endswith(name[1:]) and domain.count(".") == name.count("."):
            return True
    return False


async def run_cert_lookup(ctx: ProbeContext) -> Dict[str, Any]:
    domain = ctx.target.value
    is_ip = parse_ip(domain) is not None
    connect = f"[{domain}]:443" if ":" in domain else f"{domain}:443"

    argv = ["openssl", "s_client", "-connect", connect]
    if not is_ip:
        argv += ["-servername", domain]

    out = await ctx.executor.run_command(argv, TIMEOUT)
    if "BEGIN CERTIFICATE" not in out.output:
        raise UpstreamFailure("no certificate presented on port 443")

    result: Dict[str, Any] = {"domain": domain}
    result.update(parse_safely(parse_certificate, out.output, "certificate"))
    if "parseError" not in result:
        names = result["sans"] or ([result["subject"]] if result["subject"] else [])
        result["hostnameMatch"] = hostname_matches(domain, names)
    return result
