import asyncio
import ssl
import sys
import time

import dns.exception
import dns.resolver
import httpx
import pytest

from probegate.errors import SsrfRejection, UpstreamFailure, UpstreamTimeout
from probegate.executor import ExternalProbeExecutor, gather_isolated, parse_safely
from probegate.models import NormalizedTarget, TargetKind
from probegate.tools.registry import ADAPTERS, Tool, get_descriptor


def make_executor(validator, handler=None, dns_resolver=None):
    transport = httpx.MockTransport(handler) if handler else None
    return ExternalProbeExecutor(validator, transport=transport, dns_resolver=dns_resolver)


# ── Commands ─────────────────────────────────────────────────────


def test_run_command_collects_output(validator):
    ex = make_executor(validator)
    out = asyncio.run(ex.run_command([sys.executable, "-c", "print('hello')"], 10))
    assert out.returncode == 0
    assert out.output.strip() == "hello"
    assert out.argv[0] == sys.executable


def late_writer(marker, delay=1.5):
    """argv for a child that sleeps and then leaves a marker file behind."""
    code = f"import pathlib, time; time.sleep({delay}); pathlib.Path({str(marker)!r}).write_text('alive')"
    return [sys.executable, "-c", code]


def test_run_command_kills_on_deadline(validator, tmp_path):
    marker = tmp_path / "marker"
    ex = make_executor(validator)
    with pytest.raises(UpstreamTimeout):
        asyncio.run(ex.run_command(late_writer(marker), 0.3))

    time.sleep(2)
    assert not marker.exists()


def test_execute_deadline_kills_running_command(validator, monkeypatch, tmp_path):
    marker = tmp_path / "marker"

    async def long_command(ctx):
        await ctx.executor.run_command(late_writer(marker), 30)
        return {}

    monkeypatch.setitem(ADAPTERS, Tool.SUBNET, long_command)
    ex = make_executor(validator)
    result = ex.execute(get_descriptor("subnet"), NormalizedTarget(TargetKind.NETWORK, "192.168.1.10"), {}, timeout=0.3)
    assert result.error_kind == "upstream_timeout"

    time.sleep(2)
    assert not marker.exists()


def test_run_command_missing_binary(validator):
    ex = make_executor(validator)
    with pytest.raises(UpstreamFailure) as exc:
        asyncio.run(ex.run_command(["definitely-not-a-real-binary-xyz"], 5))
    assert "not available" in exc.value.message


# ── Helpers ──────────────────────────────────────────────────────


def test_gather_isolated_keeps_successful_subprobes():
    async def ok():
        return ["1.2.3.4"]

    async def boom():
        raise UpstreamFailure("nope")

    result = asyncio.run(gather_isolated({"A": ok(), "MX": boom()}, default=[]))
    assert result == {"A": ["1.2.3.4"], "MX": []}


def test_gather_isolated_default_is_copied():
    async def boom():
        raise ValueError("x")

    result = asyncio.run(gather_isolated({"a": boom(), "b": boom()}, default=[]))
    result["a"].append(1)
    assert result["b"] == []


def test_parse_safely_falls_back_to_raw():
    def parser(raw):
        raise ValueError("unexpected layout")

    assert parse_safely(parser, "garbage", "ping") == {
        "raw": "garbage",
        "parseError": "could not parse ping output",
    }
    assert parse_safely(lambda raw: {"ok": raw}, "x", "ping") == {"ok": "x"}


# ── Allow-listed APIs ────────────────────────────────────────────


def test_api_request_refuses_hosts_off_the_allow_list(validator):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={})

    ex = make_executor(validator, handler)
    with pytest.raises(UpstreamFailure):
        asyncio.run(ex.api_request("https://evil.example/steal"))
    assert calls == []


def test_api_request_json_and_status_handling(validator):
    def handler(request):
        if request.url.host == "ip-api.com":
            return httpx.Response(200, json={"isp": "Google LLC"})
        if request.url.host == "api.macvendors.com":
            return httpx.Response(404, text="Not Found")
        return httpx.Response(500, text="oops")

    ex = make_executor(validator, handler)
    resp = asyncio.run(ex.api_request("http://ip-api.com/json/8.8.8.8"))
    assert resp.data == {"isp": "Google LLC"}

    resp = asyncio.run(ex.api_request(
        "https://api.macvendors.com/00%3A1A%3A2B", expect="text", allow_status=(404,),
    ))
    assert resp.status_code == 404

    with pytest.raises(UpstreamFailure) as exc:
        asyncio.run(ex.api_request("https://ipinfo.io/8.8.8.8"))
    assert "HTTP 500" in exc.value.message


def test_api_request_malformed_json(validator):
    ex = make_executor(validator, lambda request: httpx.Response(200, text="<html>"))
    with pytest.raises(UpstreamFailure):
        asyncio.run(ex.api_request("https://ipinfo.io/8.8.8.8"))


def test_api_request_timeout(validator):
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    ex = make_executor(validator, handler)
    with pytest.raises(UpstreamTimeout):
        asyncio.run(ex.api_request("https://ipinfo.io/8.8.8.8"))


# ── User URL fetches ─────────────────────────────────────────────


def test_fetch_follows_public_redirects(validator):
    def handler(request):
        if request.url.path == "/old":
            return httpx.Response(301, headers={"Location": "/new"})
        return httpx.Response(200, headers={"Server": "nginx"}, text="done")

    ex = make_executor(validator, handler)
    resp = asyncio.run(ex.fetch("https://example.com/old"))
    assert resp.status_code == 200
    assert resp.final_url == "https://example.com/new"
    assert resp.redirected
    assert [h["statusCode"] for h in resp.hops] == [301, 200]
    assert resp.headers["server"] == "nginx"
    assert resp.text == "done"


def test_fetch_rejects_redirect_into_blocked_range(validator):
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(302, headers={"Location": "http://169.254.169.254/latest/meta-data"})

    ex = make_executor(validator, handler)
    with pytest.raises(SsrfRejection):
        asyncio.run(ex.fetch("https://example.com/"))
    assert seen == ["https://example.com/"]


def test_fetch_redirect_limit(validator):
    ex = make_executor(validator, lambda request: httpx.Response(302, headers={"Location": "/loop"}))
    with pytest.raises(UpstreamFailure) as exc:
        asyncio.run(ex.fetch("https://example.com/", max_redirects=3))
    assert "Too many redirects" in exc.value.message


def test_fetch_truncates_large_bodies(validator):
    ex = make_executor(validator, lambda request: httpx.Response(200, content=b"x" * 5000))
    resp = asyncio.run(ex.fetch("https://example.com/", max_bytes=1000))
    assert resp.truncated
    assert len(resp.text) == 1000


def test_fetch_connect_error(validator):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    ex = make_executor(validator, handler)
    with pytest.raises(UpstreamFailure) as exc:
        asyncio.run(ex.fetch("https://example.com/"))
    assert exc.value.message == "Host unreachable or DNS failed"


def test_fetch_reports_certificate_failures(validator):
    def handler(request):
        cause = ssl.SSLCertVerificationError(1, "[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed")
        raise httpx.ConnectError(str(cause), request=request) from cause

    ex = make_executor(validator, handler)
    with pytest.raises(UpstreamFailure) as exc:
        asyncio.run(ex.fetch("https://self-signed.example/"))
    assert exc.value.message == "TLS certificate verification failed"


def test_fetch_verifies_certificates_by_default(validator, monkeypatch):
    seen = []
    real_client = httpx.AsyncClient

    class RecordingClient(real_client):
        def __init__(self, *args, **kwargs):
            seen.append(kwargs.get("verify"))
            super().__init__(*args, **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", RecordingClient)
    ex = make_executor(validator, lambda request: httpx.Response(200, text="ok"))
    asyncio.run(ex.fetch("https://example.com/"))
    asyncio.run(ex.fetch("https://example.com/", verify=False))
    assert seen == [True, False]


# ── DNS ──────────────────────────────────────────────────────────


class FakeResolver:
    def __init__(self, outcome):
        self.outcome = outcome

    async def resolve(self, name, rtype):
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


@pytest.mark.parametrize("error", [dns.resolver.NXDOMAIN(), dns.resolver.NoAnswer()])
def test_resolve_nothing_found_is_empty(validator, error):
    ex = make_executor(validator, dns_resolver=lambda: FakeResolver(error))
    assert asyncio.run(ex.resolve("example.com", "A")) == []


def test_resolve_timeout_is_typed(validator):
    ex = make_executor(validator, dns_resolver=lambda: FakeResolver(dns.exception.Timeout()))
    with pytest.raises(UpstreamTimeout):
        asyncio.run(ex.resolve("example.com", "A"))


# ── execute() ────────────────────────────────────────────────────


def subnet_target():
    return NormalizedTarget(TargetKind.NETWORK, "192.168.1.10")


def test_execute_runs_the_adapter(validator):
    ex = make_executor(validator)
    result = ex.execute(get_descriptor("subnet"), subnet_target(), {"cidr": "24"})
    assert result.succeeded
    assert result.payload["network"] == "192.168.1.0"
    assert result.payload["totalHosts"] == 254


def test_execute_deadline_becomes_timeout_result(validator, monkeypatch):
    async def slow(ctx):
        await asyncio.sleep(5)

    monkeypatch.setitem(ADAPTERS, Tool.SUBNET, slow)
    ex = make_executor(validator)
    result = ex.execute(get_descriptor("subnet"), subnet_target(), {}, timeout=0.05)
    assert not result.succeeded
    assert result.error_kind == "upstream_timeout"
    assert result.message == "Subnet calculation failed: timed out after 0.05s"


def test_execute_typed_failures(validator, monkeypatch):
    async def failing(ctx):
        raise UpstreamFailure("exit status 2")

    async def blocked(ctx):
        raise SsrfRejection("This domain resolves to a private/internal address")

    ex = make_executor(validator)

    monkeypatch.setitem(ADAPTERS, Tool.SUBNET, failing)
    result = ex.execute(get_descriptor("subnet"), subnet_target(), {})
    assert (result.error_kind, result.message) == ("upstream_failure", "Subnet calculation failed: exit status 2")

    monkeypatch.setitem(ADAPTERS, Tool.SUBNET, blocked)
    result = ex.execute(get_descriptor("subnet"), subnet_target(), {})
    assert (result.error_kind, result.message) == ("ssrf", "This domain resolves to a private/internal address")


def test_execute_unexpected_errors_propagate(validator, monkeypatch):
    async def broken(ctx):
        raise KeyError("bug")

    monkeypatch.setitem(ADAPTERS, Tool.SUBNET, broken)
    with pytest.raises(KeyError):
        make_executor(validator).execute(get_descriptor("subnet"), subnet_target(), {})
