# probegate/security/ssrf.py
"""
SSRF policy: which destinations the gateway must never reach.

A static ruleset (blocked networks + blocked hostnames) plus a
resolver-backed check that a hostname does not resolve to a blocked address.
Every resolved address is tested, not just the first one: a public-looking
name with a single private A record is enough to reach the internal network.

Decisions are computed fresh on every call and never cached, since a name
can change its resolution between two requests.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
from typing import Callable, Iterable, List, Optional, Union

from probegate.models import SsrfDecision

logger = logging.getLogger(__name__)

Resolver = Callable[[str], List[str]]

# ═══════════════════════════════════════════════════════════════
# BLOCKLISTS
# ═══════════════════════════════════════════════════════════════

BLOCKED_NETWORKS = [
    ipaddress.ip_network("0.0.0.0/8"),         # "This" network
    ipaddress.ip_network("10.0.0.0/8"),         # Private (RFC 1918)
    ipaddress.ip_network("100.64.0.0/10"),      # Carrier-grade NAT
    ipaddress.ip_network("127.0.0.0/8"),        # Loopback
    ipaddress.ip_network("169.254.0.0/16"),     # Link-local / cloud metadata
    ipaddress.ip_network("172.16.0.0/12"),      # Private (RFC 1918)
    ipaddress.ip_network("192.0.0.0/24"),       # IETF protocol assignments
    ipaddress.ip_network("192.0.2.0/24"),       # TEST-NET-1
    ipaddress.ip_network("192.168.0.0/16"),     # Private (RFC 1918)
    ipaddress.ip_network("198.18.0.0/15"),      # Benchmarking
    ipaddress.ip_network("198.51.100.0/24"),    # TEST-NET-2
    ipaddress.ip_network("203.0.113.0/24"),     # TEST-NET-3
    ipaddress.ip_network("224.0.0.0/4"),        # Multicast
    ipaddress.ip_network("240.0.0.0/4"),        # Reserved
    ipaddress.ip_network("255.255.255.255/32"), # Broadcast
    # IPv6
    ipaddress.ip_network("::/128"),             # Unspecified
    ipaddress.ip_network("::1/128"),            # Loopback
    ipaddress.ip_network("fc00::/7"),           # Unique local
    ipaddress.ip_network("fe80::/10"),          # Link-local
]

BLOCKED_HOSTNAMES = frozenset({
    "localhost",
    "localhost.localdomain",
    "ip6-localhost",
    "ip6-loopback",
    "metadata",
    "metadata.google",
    "metadata.google.internal",                 # GCP metadata
    "instance-data",
    "instance-data.ec2.internal",               # AWS metadata alias
})

REASON_BLOCKED_HOSTNAME = "This hostname is not allowed"
REASON_PRIVATE_ADDRESS = "Private/internal address not allowed"
REASON_RESOLVES_PRIVATE = "This domain resolves to a private/internal address"


def parse_ip(value: str) -> Optional[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]:
    """Parse a literal IPv4/IPv6 address (brackets and zone ids tolerated)."""
    candidate = (value or "").strip().strip("[]")
    if "%" in candidate:
        candidate = candidate.split("%", 1)[0]
    try:
        return ipaddress.ip_address(candidate)
    except ValueError:
        return None


# IPv6 prefixes whose low 32 bits carry an IPv4 address (6to4 uses
# IPv6Address.sixtofour)
IPV4_COMPATIBLE = ipaddress.ip_network("::/96")        # deprecated ::a.b.c.d
NAT64_PREFIX = ipaddress.ip_network("64:ff9b::/96")    # RFC 6052 well-known prefix


def embedded_ipv4(addr: ipaddress.IPv6Address) -> Optional[ipaddress.IPv4Address]:
    """The IPv4 address an IPv6 address wraps, if it uses one of the embedding forms."""
    if addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    if addr.sixtofour is not None:
        return addr.sixtofour
    if addr in NAT64_PREFIX or (addr in IPV4_COMPATIBLE and int(addr) > 1):
        return ipaddress.IPv4Address(int(addr) & 0xFFFFFFFF)
    return None


def is_blocked_ip(ip: str) -> bool:
    """Check if an IP address falls within blocked/private ranges."""
    addr = parse_ip(ip)
    if addr is None:
        return False
    # ::ffff:a.b.c.d, ::a.b.c.d, 64:ff9b::a.b.c.d and 2002:AABB:CCDD:: are
    # tested as the IPv4 address they wrap
    if addr.version == 6:
        wrapped = embedded_ipv4(addr)
        if wrapped is not None:
            addr = wrapped
    return any(addr in network for network in BLOCKED_NETWORKS if addr.version == network.version)


def system_resolver(host: str) -> List[str]:
    """Resolve a hostname to every address the system resolver returns."""
    results = socket.getaddrinfo(host, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    return list(dict.fromkeys(addr[4][0] for addr in results))


class SsrfPolicy:
    """
    Static ruleset plus a resolver-backed rebinding check.

    The resolver is injectable so tests (and deployments with a pinned
    resolver) can control what a name resolves to.
    """

    def __init__(
        self,
        resolver: Optional[Resolver] = None,
        blocked_hostnames: Iterable[str] = BLOCKED_HOSTNAMES,
    ):
        self._resolve = resolver or system_resolver
        self.blocked_hostnames = frozenset(h.lower() for h in blocked_hostnames)

    def is_blocked_hostname(self, hostname: str) -> bool:
        return hostname.lower().rstrip(".") in self.blocked_hostnames

    def check_host(self, hostname: str) -> SsrfDecision:
        """
        Decide whether the gateway may contact this host.

        Resolution failure is allowed through: the downstream probe then
        fails naturally and visibly instead of being masked as a policy hit.
        """
        host = (hostname or "").strip().lower().rstrip(".")
        if not host:
            return SsrfDecision(False, REASON_BLOCKED_HOSTNAME)

        if self.is_blocked_hostname(host):
            return SsrfDecision(False, REASON_BLOCKED_HOSTNAME)

        if parse_ip(host) is not None:
            if is_blocked_ip(host):
                return SsrfDecision(False, REASON_PRIVATE_ADDRESS)
            return SsrfDecision(True, "public address")

        try:
            addresses = self._resolve(host)
        except (socket.gaierror, socket.herror, OSError, UnicodeError) as e:
            logger.debug("SSRF check: resolution failed for a target (%s), deferring", type(e).__name__)
            return SsrfDecision(True, "unresolved")

        if any(is_blocked_ip(ip) for ip in addresses):
            return SsrfDecision(False, REASON_RESOLVES_PRIVATE)

        return SsrfDecision(True, "resolves to public addresses")
