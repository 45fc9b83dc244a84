import asyncio

import dns.rdata
import dns.rdataclass
import dns.rdatatype
import httpx
import pytest

from probegate.config import GatewaySettings
from probegate.errors import SsrfRejection, UpstreamFailure, UpstreamTimeout
from probegate.executor import CommandOutput, ExternalProbeExecutor, ProbeContext
from probegate.models import NormalizedTarget, TargetKind
from probegate.tools import connectivity_check, dns_lookup, email_security, ip_intel, web_inspect
from probegate.tools.registry import get_descriptor


class ScriptedExecutor:
    """Stands in for ExternalProbeExecutor's I/O helpers."""

    def __init__(self, validator, commands=None, records=None):
        self.validator = validator
        self.commands = commands or {}
        self.records = records or {}
        self.argv = []

    async def run_command(self, argv, timeout):
        self.argv.append(argv)
        output, returncode = self.commands[argv[0]]
        return CommandOutput(argv=argv, output=output, returncode=returncode, duration_seconds=0.1)

    async def resolve(self, name, rtype):
        outcome = self.records.get((name, rtype), [])
        if isinstance(outcome, Exception):
            raise outcome
        return [dns.rdata.from_text(dns.rdataclass.IN, dns.rdatatype.from_text(rtype), t) for t in outcome]


def context(tool, value, executor, kind=TargetKind.HOST, params=None, settings=None):
    return ProbeContext(
        descriptor=get_descriptor(tool),
        target=NormalizedTarget(kind, value),
        params=params or {},
        executor=executor,
        settings=settings or GatewaySettings(),
    )


def run(coro):
    return asyncio.run(coro)


# ── Commands ─────────────────────────────────────────────────────


PORT_SCAN_XML = (
    '<nmaprun><host><status state="up" reason="syn-ack"/>'
    '<address addr="93.184.216.34" addrtype="ipv4"/>'
    '<ports><port protocol="tcp" portid="22"><state state="open" reason="syn-ack"/>'
    '<service name="ssh"/></port></ports></host>'
    '<runstats><finished timestr="Tue Nov 14 22:13:20 2023" elapsed="0.52"/>'
    '<hosts up="1" down="0" total="1"/></runstats></nmaprun>'
)


def test_port_scan_argv_and_result(validator, nmap_offline):
    ex = ScriptedExecutor(validator, commands={"nmap": (PORT_SCAN_XML, 0)})
    result = run(connectivity_check.run_port_scan(context("port", "example.com", ex, params={"ports": "22"})))

    assert ex.argv[0][:3] == ["nmap", "-p", "22"]
    assert ex.argv[0][-1] == "example.com"
    assert result["host"] == "example.com"
    assert result["hostState"] == "up"
    assert result["address"] == "93.184.216.34"
    assert result["ports"] == [{"port": 22, "protocol": "tcp", "state": "open", "service": "ssh"}]


def test_port_scan_garbled_output_keeps_raw(validator, nmap_offline):
    ex = ScriptedExecutor(validator, commands={"nmap": ("not xml", 0)})
    result = run(connectivity_check.run_port_scan(context("port", "example.com", ex)))
    assert result["raw"] == "not xml"
    assert result["parseError"] == "could not parse nmap output"


def test_ping_unreachable_is_a_result_not_an_error(validator):
    output = "--- example.com ping statistics ---\n4 packets transmitted, 0 received, 100% packet loss, time 3060ms\n"
    ex = ScriptedExecutor(validator, commands={"ping": (output, 1)})
    result = run(connectivity_check.run_ping(context("ping", "example.com", ex)))
    assert result["reachable"] is False
    assert result["packetLoss"] == 100.0


def test_ping_unknown_host_fails(validator):
    ex = ScriptedExecutor(validator, commands={"ping": ("ping: example.invalid: Name or service not known", 2)})
    with pytest.raises(UpstreamFailure):
        run(connectivity_check.run_ping(context("ping", "example.invalid", ex)))


def test_whois_empty_output_fails(validator):
    from probegate.tools import whois_lookup

    ex = ScriptedExecutor(validator, commands={"whois": ("", 1)})
    with pytest.raises(UpstreamFailure):
        run(whois_lookup.run_whois_lookup(context("whois", "example.com", ex)))


def test_cert_lookup_without_certificate(validator):
    from probegate.tools import cert_lookup

    ex = ScriptedExecutor(validator, commands={"openssl": ("connect: Connection refused\n", 1)})
    with pytest.raises(UpstreamFailure):
        run(cert_lookup.run_cert_lookup(context("ssl", "example.com", ex)))
    assert ex.argv[0] == ["openssl", "s_client", "-connect", "example.com:443", "-servername", "example.com"]


# ── DNS ──────────────────────────────────────────────────────────


def test_dns_lookup_isolates_failed_record_types(validator):
    ex = ScriptedExecutor(validator, records={
        ("example.com", "A"): ["93.184.216.34"],
        ("example.com", "MX"): ["10 mail.example.com."],
        ("example.com", "TXT"): ['"v=spf1 -all"', '"google-site-verification=abc"'],
        ("example.com", "AAAA"): UpstreamTimeout("DNS query for AAAA timed out"),
        ("_dmarc.example.com", "TXT"): ['"v=DMARC1; p=reject"'],
        ("s1._domainkey.example.com", "TXT"): ['"v=DKIM1; k=rsa; p=MIGf"'],
    })
    result = run(dns_lookup.run_dns_lookup(context("dns", "example.com", ex, params={"dkimSelector": "s1"})))

    assert result["A"] == ["93.184.216.34"]
    assert result["AAAA"] == []
    assert result["MX"] == [{"exchange": "mail.example.com", "priority": 10}]
    assert result["SPF"] == ["v=spf1 -all"]
    assert result["DMARC"] == ["v=DMARC1; p=reject"]
    assert result["DKIM"] == {"s1": ["v=DKIM1; k=rsa; p=MIGf"]}
    assert [i["title"] for i in result["issues"]] == ["No CAA records found"]


def test_reverse_dns_without_records():
    class Reverse:
        async def reverse(self, ip):
            return []

    result = run(dns_lookup.run_reverse_dns(context("reversedns", "8.8.8.8", Reverse(), kind=TargetKind.IP)))
    assert result == {"ip": "8.8.8.8", "hostnames": [], "error": "No reverse DNS record found"}


# ── Email ────────────────────────────────────────────────────────


def test_email_validate(validator):
    ex = ScriptedExecutor(validator, records={
        ("example.com", "MX"): ["20 backup.example.com.", "10 mail.example.com."],
    })
    result = run(email_security.run_email_validate(
        context("emailvalidate", "user@example.com", ex, kind=TargetKind.EMAIL),
    ))
    assert result["valid"] is True
    assert [r["exchange"] for r in result["checks"]["mx"]["records"]] == ["mail.example.com", "backup.example.com"]

    result = run(email_security.run_email_validate(
        context("emailvalidate", "user@mailinator.com", ex, kind=TargetKind.EMAIL),
    ))
    assert result["valid"] is False
    assert result["checks"]["disposable"]["pass"] is False
    assert result["checks"]["mx"] == {"pass": False, "error": "No MX records found"}


def test_smtp_check_without_mx(validator):
    ex = ScriptedExecutor(validator)
    result = run(email_security.run_smtp_check(context("smtp", "example.com", ex)))
    assert result == {"domain": "example.com", "reachable": False, "error": "No MX records"}


def test_smtp_check_refuses_internal_mx():
    from probegate.security.ssrf import SsrfPolicy
    from probegate.security.validation import HostInputValidator

    internal = HostInputValidator(SsrfPolicy(resolver=lambda h: ["10.1.1.1"]))
    ex = ScriptedExecutor(internal, records={("example.com", "MX"): ["10 mx.example.com."]})
    with pytest.raises(SsrfRejection):
        run(email_security.run_smtp_check(context("smtp", "example.com", ex)))


def test_blacklist_reports_listed_and_failed_zones(validator):
    ex = ScriptedExecutor(validator, records={
        ("4.3.2.1.zen.spamhaus.org", "A"): ["127.0.0.2"],
        ("4.3.2.1.bl.spamcop.net", "A"): UpstreamTimeout("DNS query for A timed out"),
    })
    result = run(email_security.run_blacklist(context("blacklist", "1.2.3.4", ex, kind=TargetKind.IP)))

    by_zone = {r["zone"]: r for r in result["results"]}
    assert by_zone["zen.spamhaus.org"]["listed"] is True
    assert by_zone["zen.spamhaus.org"]["response"] == ["127.0.0.2"]
    assert by_zone["bl.spamcop.net"] == {"name": "SpamCop", "zone": "bl.spamcop.net", "listed": None, "error": "Lookup failed"}
    assert by_zone["cbl.abuseat.org"]["listed"] is False
    assert result["listedCount"] == 1
    assert result["totalChecked"] == 8


# ── HTTP ─────────────────────────────────────────────────────────


def http_executor(validator, handler, settings=None):
    return ExternalProbeExecutor(validator, settings=settings, transport=httpx.MockTransport(handler))


def test_redirect_trace_stops_at_blocked_hop(validator):
    def handler(request):
        if request.url.path == "/a":
            return httpx.Response(301, headers={"Location": "/b"})
        return httpx.Response(302, headers={"Location": "http://127.0.0.1/admin"})

    ex = http_executor(validator, handler)
    result = run(web_inspect.run_redirect_trace(context("redirect", "https://example.com/a", ex, kind=TargetKind.URL)))

    assert result["originalUrl"] == "https://example.com/a"
    assert result["finalUrl"] == "https://example.com/b"
    assert result["hops"] == 1
    assert [h["statusCode"] for h in result["chain"]] == [301, 302]
    assert result["blocked"] == "Private/internal address not allowed"


def test_robots_with_sitemap(validator):
    def handler(request):
        if request.url.path == "/robots.txt":
            return httpx.Response(200, text="User-agent: *\nDisallow: /private\nSitemap: /sitemap.xml\n")
        return httpx.Response(200, text="<urlset><url><loc>https://example.com/</loc></url></urlset>")

    ex = http_executor(validator, handler)
    result = run(web_inspect.run_robots(context("robots", "https://example.com/some/page", ex, kind=TargetKind.URL)))

    assert result["baseUrl"] == "https://example.com"
    assert result["summary"]["disallowRules"] == 1
    assert result["sitemap"] == {
        "url": "https://example.com/sitemap.xml",
        "urlCount": 1,
        "sampleUrls": ["https://example.com/"],
    }


def test_robots_sitemap_pointing_inward_is_not_fetched(validator):
    fetched = []

    def handler(request):
        fetched.append(request.url.path)
        return httpx.Response(200, text="Sitemap: http://192.168.0.10/sitemap.xml\n")

    ex = http_executor(validator, handler)
    result = run(web_inspect.run_robots(context("robots", "https://example.com", ex, kind=TargetKind.URL)))
    assert fetched == ["/robots.txt"]
    assert result["sitemap"]["error"] == "Private/internal address not allowed"


def test_metadata_error_status_fails(validator):
    ex = http_executor(validator, lambda request: httpx.Response(404, text="gone"))
    with pytest.raises(UpstreamFailure):
        run(web_inspect.run_metadata(context("metadata", "https://example.com", ex, kind=TargetKind.URL)))


def test_http_latency_reports_timeouts_inline(validator):
    def handler(request):
        raise httpx.ConnectTimeout("slow", request=request)

    ex = http_executor(validator, handler)
    result = run(web_inspect.run_http_latency(context("http-latency", "https://example.com", ex, kind=TargetKind.URL)))
    assert result == {"host": "example.com", "url": "https://example.com", "error": "Request timed out (>10s)"}


def test_url_status_without_virustotal_key(validator):
    ex = http_executor(validator, lambda request: httpx.Response(200, headers={"Server": "nginx"}, text="ok"))
    result = run(web_inspect.run_url_status(context("urlstatus", "https://example.com", ex, kind=TargetKind.URL)))
    assert result["statusCode"] == 200
    assert result["server"] == "nginx"
    assert result["virusTotal"] is None


def test_breach_check_sends_only_the_hash_prefix(validator):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, text="1E4C9B93F3F0682250B6CF8331B7EE68FD8:3861493\r\nABCDEF:0\r\n")

    ex = http_executor(validator, handler)
    result = run(ip_intel.run_breach_check(context("breachcheck", "password", ex, kind=TargetKind.SECRET)))

    assert str(seen[0].url) == "https://api.pwnedpasswords.com/range/5BAA6"
    assert seen[0].headers["Add-Padding"] == "true"
    assert result == {
        "breached": True,
        "count": 3861493,
        "message": "This password has appeared in 3,861,493 data breaches.",
    }


def test_isp_lookup_prefers_ipinfo_with_token(validator):
    def handler(request):
        assert request.url.host == "ipinfo.io"
        assert request.url.params["token"] == "tok"
        return httpx.Response(200, json={"ip": "8.8.8.8", "org": "AS15169 Google LLC"})

    ex = http_executor(validator, handler)
    settings = GatewaySettings(ipinfo_token="tok")
    result = run(ip_intel.run_isp_lookup(context("isp", "8.8.8.8", ex, kind=TargetKind.IP, settings=settings)))
    assert result["source"] == "ipinfo.io"
    assert result["org"] == "AS15169 Google LLC"


def test_isp_lookup_fallback_failure(validator):
    ex = http_executor(validator, lambda request: httpx.Response(200, json={"status": "fail", "message": "reserved range"}))
    with pytest.raises(UpstreamFailure) as exc:
        run(ip_intel.run_isp_lookup(context("isp", "8.8.8.8", ex, kind=TargetKind.IP)))
    assert "reserved range" in exc.value.message


def test_mac_lookup_unknown_vendor(validator):
    ex = http_executor(validator, lambda request: httpx.Response(404, text='{"errors":{"detail":"Not Found"}}'))
    result = run(ip_intel.run_mac_lookup(context("mac", "00:1A:2B", ex, kind=TargetKind.MAC)))
    assert result == {"mac": "00:1A:2B", "vendor": "Unknown vendor"}
