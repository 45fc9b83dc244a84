# probegate/security/validation.py
"""
Input validation: the single place where raw client input becomes a target.

Two layers:
    validate_url()   full URL normalisation + SSRF policy, for tools that
                     fetch a user-supplied URL.
    sanitize_host()  narrow sanitizer for values that end up as OS-command
                     arguments: only [a-z0-9.-:] survive, never a leading '-'.

Tool adapters never parse host/URL input themselves; the gateway binds every
request through bind_request() before anything else runs.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from probegate.errors import SsrfRejection, ValidationError
from probegate.models import InputKind, NormalizedTarget, TargetKind, ToolDescriptor
from probegate.security.ssrf import SsrfPolicy, is_blocked_ip, parse_ip

logger = logging.getLogger(__name__)

MAX_HOST_LENGTH = 253
MAX_URL_LENGTH = 2048
MAX_SECRET_LENGTH = 1024
MAX_EMAIL_LENGTH = 254

ALLOWED_SCHEMES = ("http", "https")
DEFAULT_SCHEME = "https"

SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.\-]*):")
HTTP_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
CONTROL_RE = re.compile(r"[\x00-\x20\x7f]")
HOST_STRIP_RE = re.compile(r"[^a-z0-9.\-:]")
PORTS_RE = re.compile(r"^[0-9,\-]+$")
MAC_CLEAN_RE = re.compile(r"[^0-9A-F]")
SELECTOR_RE = re.compile(r"^[a-z0-9](?:[a-z0-9._-]{0,62})$")
EMAIL_RE = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-zA-Z0-9-]+(?:\.[a-zA-Z0-9-]+)*$")

DEFAULT_PORTS = "21,22,25,53,80,110,143,443,993,995,3306,3389,5432,8080,8443"
MAX_PORT_ITEMS = 100


# ═══════════════════════════════════════════════════════════════
# NARROW HOST SANITIZER (command-argument safe)
# ═══════════════════════════════════════════════════════════════

def sanitize_host(raw) -> Optional[str]:
    """
    Reduce input to a bare host safe for interpolation into argv.

    Strips scheme, path, query and fragment, then drops every character
    outside alphanumerics, dots, hyphens and colons. Leading hyphens are
    removed so the value can never be parsed as a command-line option.
    Returns None for empty or over-long results.
    """
    if not isinstance(raw, str):
        return None
    cleaned = raw.strip().lower()
    cleaned = re.sub(r"^[a-z][a-z0-9+.\-]*://", "", cleaned)
    cleaned = re.split(r"[/?#\\]", cleaned, maxsplit=1)[0]
    if "@" in cleaned:
        cleaned = cleaned.rsplit("@", 1)[1]
    cleaned = HOST_STRIP_RE.sub("", cleaned)
    cleaned = cleaned.lstrip("-.")
    if not cleaned or len(cleaned) > MAX_HOST_LENGTH:
        return None
    return cleaned


# ═══════════════════════════════════════════════════════════════
# VALIDATOR
# ═══════════════════════════════════════════════════════════════

class HostInputValidator:
    """Turns raw strings into NormalizedTargets, enforcing the SSRF policy."""

    def __init__(self, policy: Optional[SsrfPolicy] = None):
        self.policy = policy or SsrfPolicy()

    # ── Full URL ─────────────────────────────────────────────────

    def validate_url(
        self,
        raw,
        require_scheme: bool = False,
        max_length: int = MAX_URL_LENGTH,
    ) -> NormalizedTarget:
        """
        Validate a URL for safe server-side fetching.

        Steps, in order: presence, length, scheme defaulting, parsing,
        scheme allow-list, hostname blocklist, literal-IP range check, then
        resolution of the hostname with every address checked.

        Raises:
            ValidationError: malformed, oversized or disallowed input
            SsrfRejection:   target is or resolves to an internal address
        """
        if not raw or not isinstance(raw, str):
            raise ValidationError("URL required")

        trimmed = raw.strip()
        if not trimmed:
            raise ValidationError("URL required")
        if len(trimmed) > max_length:
            raise ValidationError(f"URL too long (max {max_length} characters)")
        if CONTROL_RE.search(trimmed):
            raise ValidationError("Invalid URL format")

        url_str = trimmed
        if not HTTP_SCHEME_RE.match(url_str):
            scheme_match = SCHEME_RE.match(url_str)
            if scheme_match and url_str[scheme_match.end():].startswith("//"):
                raise ValidationError("Only http:// and https:// URLs are allowed")
            if require_scheme:
                raise ValidationError("URL must start with http:// or https://")
            url_str = f"{DEFAULT_SCHEME}://{url_str}"
            if len(url_str) > max_length:
                raise ValidationError(f"URL too long (max {max_length} characters)")

        try:
            parsed = urlsplit(url_str)
            hostname = parsed.hostname
            parsed.port  # raises ValueError on a malformed port
        except ValueError:
            raise ValidationError("Invalid URL format")

        if parsed.scheme.lower() not in ALLOWED_SCHEMES:
            raise ValidationError("Only http:// and https:// URLs are allowed")
        if not hostname:
            raise ValidationError("Invalid URL format")

        self._enforce_policy(hostname)

        normalized = urlunsplit((
            parsed.scheme.lower(),
            parsed.netloc,
            parsed.path,
            parsed.query,
            parsed.fragment,
        ))
        return NormalizedTarget(TargetKind.URL, normalized)

    # ── Bare host ────────────────────────────────────────────────

    def validate_host(self, raw, check_ssrf: bool = True) -> NormalizedTarget:
        """Sanitize to a bare host; optionally enforce the SSRF policy on it."""
        if not raw or not isinstance(raw, str) or not raw.strip():
            raise ValidationError("Host required")
        if len(raw.strip()) > MAX_URL_LENGTH:
            raise ValidationError("Host too long")

        host = sanitize_host(raw)
        if host is None:
            raise ValidationError("Invalid host")

        # host:port -> host, except for IPv6 literals
        if host.count(":") == 1:
            host = host.split(":", 1)[0]
            if not host:
                raise ValidationError("Invalid host")
        host = host.rstrip(".")
        if not host:
            raise ValidationError("Invalid host")

        if check_ssrf:
            self._enforce_policy(host)
        return NormalizedTarget(TargetKind.HOST, host)

    def _enforce_policy(self, hostname: str) -> None:
        decision = self.policy.check_host(hostname)
        if not decision.allowed:
            logger.warning("SSRF rejection: %s", decision.reason)
            raise SsrfRejection(decision.reason)

    # ── Other subjects ───────────────────────────────────────────

    def validate_ip(self, raw, public_only: bool = False) -> NormalizedTarget:
        value = raw.strip() if isinstance(raw, str) else ""
        if not value:
            raise ValidationError("IP address required")
        addr = parse_ip(value)
        if addr is None:
            raise ValidationError("Invalid IP address")
        if public_only and is_blocked_ip(str(addr)):
            raise SsrfRejection("Lookups on private or reserved IP addresses are not allowed")
        return NormalizedTarget(TargetKind.IP, str(addr))

    def validate_public_ip(self, raw) -> NormalizedTarget:
        """For tools that query about an address (DNSBL, PTR) rather than contact it."""
        return self.validate_ip(raw, public_only=True)

    def validate_mac(self, raw) -> NormalizedTarget:
        value = raw.strip().upper() if isinstance(raw, str) else ""
        cleaned = MAC_CLEAN_RE.sub("", value)
        if len(cleaned) < 6 or len(cleaned) > 12 or len(cleaned) % 2:
            raise ValidationError("Invalid MAC address")
        pairs = [cleaned[i:i + 2] for i in range(0, len(cleaned), 2)]
        return NormalizedTarget(TargetKind.MAC, ":".join(pairs))

    def validate_email(self, raw) -> NormalizedTarget:
        value = raw.strip().lower() if isinstance(raw, str) else ""
        if not value or "@" not in value:
            raise ValidationError("Invalid email")
        if len(value) > MAX_EMAIL_LENGTH:
            raise ValidationError("Email too long")
        domain = value.rsplit("@", 1)[1]
        if sanitize_host(domain) != domain:
            raise ValidationError("Invalid email")
        return NormalizedTarget(TargetKind.EMAIL, value)

    def validate_secret(self, raw) -> NormalizedTarget:
        if not isinstance(raw, str) or not raw:
            raise ValidationError("Password required")
        if len(raw) > MAX_SECRET_LENGTH:
            raise ValidationError("Password too long")
        return NormalizedTarget(TargetKind.SECRET, raw)

    def validate_subnet_ip(self, raw) -> NormalizedTarget:
        value = raw.strip() if isinstance(raw, str) else ""
        try:
            addr = ipaddress.IPv4Address(value)
        except ValueError:
            raise ValidationError("IP and CIDR required")
        return NormalizedTarget(TargetKind.NETWORK, str(addr))

    # ── Binding ──────────────────────────────────────────────────

    def bind_request(
        self,
        descriptor: ToolDescriptor,
        params: Mapping[str, str],
        client_identity: str = "",
    ) -> Tuple[NormalizedTarget, Dict[str, str]]:
        """
        Bind a tool's request body to a NormalizedTarget plus canonical extras.

        The returned extras dict only contains keys the tool declares, so
        unrelated body fields never reach an adapter or the cache key.
        """
        raw = params.get(descriptor.input_field)
        kind = descriptor.input_kind

        if kind == InputKind.URL:
            target = self.validate_url(raw)
        elif kind == InputKind.HOST:
            target = self.validate_host(raw, check_ssrf=True)
        elif kind == InputKind.DOMAIN:
            target = self.validate_host(raw, check_ssrf=False)
        elif kind == InputKind.IP:
            target = self.validate_ip(raw)
        elif kind == InputKind.PUBLIC_IP:
            target = self.validate_public_ip(raw)
        elif kind == InputKind.IP_OR_AUTO:
            if not raw or raw.strip().lower() == "auto":
                raw = client_identity
            target = self.validate_ip(raw)
        elif kind == InputKind.MAC:
            target = self.validate_mac(raw)
        elif kind == InputKind.EMAIL:
            target = self.validate_email(raw)
        elif kind == InputKind.SECRET:
            target = self.validate_secret(raw)
        elif kind == InputKind.SUBNET:
            target = self.validate_subnet_ip(raw)
        else:
            raise ValidationError(f"Unsupported input for tool {descriptor.name}")

        extras: Dict[str, str] = {}
        for name in descriptor.extra_params:
            validator = EXTRA_PARAM_VALIDATORS[name]
            value = validator(params.get(name))
            if value is not None:
                extras[name] = value
        return target, extras


# ═══════════════════════════════════════════════════════════════
# SECONDARY PARAMETERS
# ═══════════════════════════════════════════════════════════════

def validate_ports(raw) -> Optional[str]:
    """Port list in nmap syntax: numbers, commas and ranges only."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return DEFAULT_PORTS
    value = str(raw).strip().replace(" ", "")
    if not PORTS_RE.match(value):
        raise ValidationError("Invalid port format")
    items = [s for s in value.split(",") if s]
    if not items or len(items) > MAX_PORT_ITEMS:
        raise ValidationError("Invalid port format")
    for item in items:
        bounds = item.split("-")
        if len(bounds) > 2 or not all(bounds):
            raise ValidationError("Invalid port format")
        numbers = [int(b) for b in bounds]
        if any(n < 1 or n > 65535 for n in numbers):
            raise ValidationError("Ports must be between 1 and 65535")
        if len(numbers) == 2 and numbers[0] > numbers[1]:
            raise ValidationError("Invalid port range")
    return ",".join(items)


def validate_cidr_bits(raw) -> Optional[str]:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise ValidationError("IP and CIDR required")
    try:
        bits = int(str(raw).strip().lstrip("/"))
    except ValueError:
        raise ValidationError("CIDR must be 0-32")
    if bits < 0 or bits > 32:
        raise ValidationError("CIDR must be 0-32")
    return str(bits)


def validate_dkim_selector(raw) -> Optional[str]:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    value = str(raw).strip().lower()
    if not SELECTOR_RE.match(value):
        raise ValidationError("Invalid DKIM selector")
    return value


def email_syntax_ok(address: str) -> bool:
    return bool(EMAIL_RE.match(address or ""))


EXTRA_PARAM_VALIDATORS = {
    "ports": validate_ports,
    "cidr": validate_cidr_bits,
    "dkimSelector": validate_dkim_selector,
}
