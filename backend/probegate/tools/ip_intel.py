# probegate/tools/ip_intel.py
"""
IP / MAC / password intelligence.

    isp          ipinfo.io when IPINFO_TOKEN is set, ip-api.com otherwise
    mac          OUI vendor via api.macvendors.com
    breachcheck  Have I Been Pwned range API (k-anonymity)
    subnet       IPv4 subnet arithmetic, no I/O

The breach check sends only the first five hex characters of the SHA-1
digest. The password itself never leaves this module, is never logged and,
with a TTL of 0, is never part of a cache key.
"""

from __future__ import annotations

import hashlib
import ipaddress
import logging
from typing import Any, Dict
from urllib.parse import quote

from probegate.errors import UpstreamFailure
from probegate.executor import ProbeContext

logger = logging.getLogger(__name__)

API_TIMEOUT = 5


# ═══════════════════════════════════════════════════════════════
# ISP
# ═══════════════════════════════════════════════════════════════

async def run_isp_lookup(ctx: ProbeContext) -> Dict[str, Any]:
    ip = ctx.target.value
    token = ctx.settings.ipinfo_token

    if token:
        resp = await ctx.executor.api_request(
            f"https://ipinfo.io/{ip}", params={"token": token}, timeout=API_TIMEOUT,
        )
        data = dict(resp.data)
        data["source"] = "ipinfo.io"
        return data

    resp = await ctx.executor.api_request(f"http://ip-api.com/json/{ip}", timeout=API_TIMEOUT)
    data = dict(resp.data)
    if data.get("status") == "fail":
        raise UpstreamFailure(f"ip-api.com: {data.get('message') or 'lookup failed'}")
    data["source"] = "ip-api.com"
    return data


# ═══════════════════════════════════════════════════════════════
# MAC VENDOR
# ═══════════════════════════════════════════════════════════════

async def run_mac_lookup(ctx: ProbeContext) -> Dict[str, Any]:
    mac = ctx.target.value
    resp = await ctx.executor.api_request(
        f"https://api.macvendors.com/{quote(mac)}",
        timeout=API_TIMEOUT,
        expect="text",
        allow_status=(404,),
    )
    vendor = resp.data.strip() if resp.status_code == 200 else ""
    return {"mac": mac, "vendor": vendor or "Unknown vendor"}


# ═══════════════════════════════════════════════════════════════
# PASSWORD BREACH CHECK
# ═══════════════════════════════════════════════════════════════

def password_hash_parts(password: str):
    digest = hashlib.sha1(password.encode("utf-8")).hexdigest().upper()
    return digest[:5], digest[5:]


def breach_count(range_body: str, suffix: str) -> int:
    """Find `suffix` in a range response of SUFFIX:COUNT lines."""
    for line in range_body.splitlines():
        candidate, _, count = line.strip().partition(":")
        if candidate.upper() == suffix:
            try:
                return int(count)
            except ValueError:
                return 0
    return 0


async def run_breach_check(ctx: ProbeContext) -> Dict[str, Any]:
    prefix, suffix = password_hash_parts(ctx.target.value)
    resp = await ctx.executor.api_request(
        f"https://api.pwnedpasswords.com/range/{prefix}",
        headers={"Add-Padding": "true"},
        timeout=API_TIMEOUT,
        expect="text",
    )
    count = breach_count(resp.data, suffix)
    if count:
        message = f"This password has appeared in {count:,} data breaches."
    else:
        message = "This password has not been found in any known data breaches."
    return {"breached": count > 0, "count": count, "message": message}


# ═══════════════════════════════════════════════════════════════
# SUBNET CALCULATOR
# ═══════════════════════════════════════════════════════════════

def _ip_class(first_octet: int) -> str:
    if first_octet < 128:
        return "A"
    if first_octet < 192:
        return "B"
    if first_octet < 224:
        return "C"
    return "D/E"


def calculate_subnet(ip: str, cidr: int) -> Dict[str, Any]:
    addr = ipaddress.IPv4Address(ip)
    network = ipaddress.IPv4Network(f"{ip}/{cidr}", strict=False)

    if cidr >= 31:
        first_host = network.network_address
        last_host = network.broadcast_address
        total_hosts = 1 if cidr == 32 else 2
    else:
        first_host = network.network_address + 1
        last_host = network.broadcast_address - 1
        total_hosts = network.num_addresses - 2

    octets = addr.packed
    return {
        "network": str(network.network_address),
        "broadcast": str(network.broadcast_address),
        "netmask": str(network.netmask),
        "firstHost": str(first_host),
        "lastHost": str(last_host),
        "totalHosts": total_hosts,
        "cidr": cidr,
        "wildcardMask": str(network.hostmask),
        "ipClass": _ip_class(octets[0]),
        "isPrivate": (
            octets[0] == 10
            or (octets[0] == 172 and 16 <= octets[1] <= 31)
            or (octets[0] == 192 and octets[1] == 168)
        ),
    }


async def run_subnet(ctx: ProbeContext) -> Dict[str, Any]:
    return calculate_subnet(ctx.target.value, int(ctx.params["cidr"]))
