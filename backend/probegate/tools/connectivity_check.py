# probegate/tools/connectivity_check.py
"""
Connectivity tools backed by OS binaries.

    port        nmap TCP scan, XML output analysed by python-nmap
    ping        4 ICMP echoes, summary line parsed
    traceroute  ICMP traceroute, up to 20 hops

Hosts reaching this module have passed the narrow sanitizer and the SSRF
policy, so they are safe to place in argv as-is.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List

import nmap

from probegate.errors import UpstreamFailure
from probegate.executor import ProbeContext, parse_safely
from probegate.models import now_utc
from probegate.security.validation import DEFAULT_PORTS

logger = logging.getLogger(__name__)

NMAP_TIMEOUT = 20
PING_TIMEOUT = 15
TRACEROUTE_TIMEOUT = 30

RTT_RE = re.compile(r"=\s*([\d.]+)/([\d.]+)/([\d.]+)")
LOSS_RE = re.compile(r"([\d.]+)% packet loss")
PACKETS_RE = re.compile(r"(\d+) packets transmitted, (\d+) (?:packets )?received")
HOP_RE = re.compile(r"^\s*(\d+)\s+(.+)")
HOP_IP_RE = re.compile(r"\(([0-9a-fA-F.:]+)\)")
HOP_TIME_RE = re.compile(r"([\d.]+)\s+ms")


# ═══════════════════════════════════════════════════════════════
# PORT SCAN
# ═══════════════════════════════════════════════════════════════

def parse_nmap_xml(raw: str) -> Dict[str, Any]:
    """Map python-nmap's analysis of an ``-oX`` document onto the port payload."""
    scanner = nmap.PortScanner()
    scan = scanner.analyse_nmap_xml_scan(nmap_xml_output=raw).get("scan", {})
    if not scan:
        return {"hostState": "unknown", "address": None, "ports": []}

    address = next(iter(scan))
    host = scan[address]
    ports: List[Dict[str, Any]] = []
    for proto in host.all_protocols():
        for port in sorted(host[proto]):
            port_info = host[proto][port]
            ports.append({
                "port": int(port),
                "protocol": proto,
                "state": port_info.get("state", "unknown"),
                "service": port_info.get("name", "") or None,
            })

    return {
        "hostState": host.get("status", {}).get("state", "unknown"),
        "address": address,
        "ports": ports,
    }


async def run_port_scan(ctx: ProbeContext) -> Dict[str, Any]:
    host = ctx.target.value
    ports = ctx.params.get("ports") or DEFAULT_PORTS

    argv = [
        "nmap", "-p", ports,
        "-T4", "--max-retries", "1", "--host-timeout", "15s",
        "-oX", "-",
        host,
    ]
    out = await ctx.executor.run_command(argv, NMAP_TIMEOUT)
    if out.returncode != 0:
        raise UpstreamFailure(f"nmap exited with status {out.returncode}")

    result: Dict[str, Any] = {"host": host, "scanTime": now_utc().isoformat()}
    result.update(parse_safely(parse_nmap_xml, out.output, "nmap"))
    return result


# ═══════════════════════════════════════════════════════════════
# PING
# ═══════════════════════════════════════════════════════════════

def parse_ping(raw: str) -> Dict[str, Any]:
    stats: Dict[str, Any] = {}

    rtt = RTT_RE.search(raw)
    if rtt:
        stats["min"] = float(rtt.group(1))
        stats["avg"] = float(rtt.group(2))
        stats["max"] = float(rtt.group(3))

    loss = LOSS_RE.search(raw)
    if loss:
        stats["packetLoss"] = float(loss.group(1))

    packets = PACKETS_RE.search(raw)
    if packets:
        stats["transmitted"] = int(packets.group(1))
        stats["received"] = int(packets.group(2))

    if not stats:
        raise ValueError("no ping summary in output")
    return stats


async def run_ping(ctx: ProbeContext) -> Dict[str, Any]:
    host = ctx.target.value
    out = await ctx.executor.run_command(["ping", "-c", "4", "-W", "3", host], PING_TIMEOUT)

    # exit 1: ran fine, nothing answered
    if out.returncode not in (0, 1):
        raise UpstreamFailure("host could not be resolved or reached")

    result: Dict[str, Any] = {"host": host, "reachable": out.returncode == 0}
    result.update(parse_safely(parse_ping, out.output, "ping"))
    result["raw"] = out.output
    return result


# ═══════════════════════════════════════════════════════════════
# TRACEROUTE
# ═══════════════════════════════════════════════════════════════

def parse_traceroute(raw: str) -> Dict[str, Any]:
    hops = []
    for line in raw.splitlines()[1:]:  # header
        match = HOP_RE.match(line)
        if not match:
            continue
        data = match.group(2)
        first = data.split()[0]
        ip = HOP_IP_RE.search(data)
        hops.append({
            "hop": int(match.group(1)),
            "ip": ip.group(1) if ip else None,
            "hostname": None if first == "*" else first,
            "times": [float(t) for t in HOP_TIME_RE.findall(data)],
            "timeout": "* * *" in data,
        })
    return {"hops": hops}


async def run_traceroute(ctx: ProbeContext) -> Dict[str, Any]:
    host = ctx.target.value
    out = await ctx.executor.run_command(
        ["traceroute", "-I", "-m", "20", "-w", "2", host], TRACEROUTE_TIMEOUT,
    )
    if out.returncode != 0:
        raise UpstreamFailure(f"traceroute exited with status {out.returncode}")

    result: Dict[str, Any] = {"host": host}
    result.update(parse_safely(parse_traceroute, out.output, "traceroute"))
    result["raw"] = out.output
    return result
