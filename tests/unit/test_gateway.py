import pytest

from probegate.cache import ResultCache
from probegate.gateway import ProbeGateway
from probegate.models import ProbeRequest, ProbeResult
from probegate.ratelimit import RateLimiter


class FakeExecutor:
    """Records executions and answers with a canned result per tool."""

    def __init__(self, outcome=None):
        self.calls = []
        self.outcome = outcome

    def execute(self, descriptor, target, params, timeout=None):
        self.calls.append((descriptor.name, target.value, dict(params)))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        if callable(self.outcome):
            return self.outcome(descriptor, target, params)
        return ProbeResult.ok(descriptor.name, {"target": target.value, "n": len(self.calls)})


def make_gateway(validator, clock, executor=None, points=30, daily=0):
    executor = executor or FakeExecutor()
    limiter = RateLimiter(points=points, window=60, daily_limit=daily, clock=clock)
    gateway = ProbeGateway(validator, ResultCache(clock=clock), limiter, executor)
    return gateway, executor, limiter


def probe(tool, client="203.0.113.9", **params):
    return ProbeRequest(tool=tool, params=params, client_identity=client)


def test_repeated_lookup_executes_once(validator, clock):
    gateway, executor, _ = make_gateway(validator, clock, points=60)

    responses = [gateway.handle(probe("dns", domain="example.com")) for _ in range(5)]

    assert len(executor.calls) == 1
    assert responses[0].headers["X-Cache"] == "MISS"
    assert [r.headers["X-Cache"] for r in responses[1:]] == ["HIT"] * 4
    assert all(r.status_code == 200 for r in responses)
    assert all(r.body == {"error": False, "data": {"target": "example.com", "n": 1}} for r in responses)


def test_cache_entry_expires_after_ttl(validator, clock):
    gateway, executor, _ = make_gateway(validator, clock)
    gateway.handle(probe("ping", host="example.com"))
    clock.advance(61)
    assert gateway.handle(probe("ping", host="example.com")).headers["X-Cache"] == "MISS"
    assert len(executor.calls) == 2


def test_cache_hit_does_not_spend_rate_budget(validator, clock):
    gateway, executor, limiter = make_gateway(validator, clock, points=1)
    first = gateway.handle(probe("whois", domain="example.com"))
    assert first.headers["X-RateLimit-Remaining"] == "0"

    second = gateway.handle(probe("whois", domain="example.com"))
    assert second.status_code == 200
    assert second.headers["X-Cache"] == "HIT"
    assert limiter.peek("203.0.113.9").consumed_in_window == 1


def test_minute_limit_carries_retry_after(validator, clock):
    gateway, executor, _ = make_gateway(validator, clock, points=2)
    gateway.handle(probe("dns", domain="a.example"))
    gateway.handle(probe("dns", domain="b.example"))
    clock.advance(20)

    resp = gateway.handle(probe("dns", domain="c.example"))
    assert resp.status_code == 429
    assert resp.body == {"error": True, "message": "Too many requests. Please slow down.", "retryAfter": 40}
    assert resp.headers["Retry-After"] == "40"
    assert len(executor.calls) == 2


def test_daily_limit_has_no_retry_after(validator, clock):
    gateway, executor, _ = make_gateway(validator, clock, points=30, daily=1)
    assert gateway.handle(probe("subnet", ip="10.0.0.1", cidr="24")).status_code == 200

    resp = gateway.handle(probe("subnet", ip="10.0.0.1", cidr="24"))
    assert resp.status_code == 429
    assert resp.body == {"error": True, "message": "Daily limit reached. Please try again tomorrow."}
    assert "Retry-After" not in resp.headers
    assert len(executor.calls) == 1


def test_validation_failure_runs_nothing(validator, clock):
    gateway, executor, limiter = make_gateway(validator, clock)
    resp = gateway.handle(probe("dns"))
    assert resp.status_code == 400
    assert resp.body == {"error": True, "message": "Host required"}
    assert executor.calls == []
    assert limiter.peek("203.0.113.9") is None


def test_internal_url_is_rejected_before_execution(validator, clock):
    gateway, executor, _ = make_gateway(validator, clock)
    resp = gateway.handle(probe("secheaders", url="http://169.254.169.254/latest/meta-data"))
    assert resp.status_code == 400
    assert resp.body["message"] == "Private/internal address not allowed"
    assert executor.calls == []


def test_unknown_tool(validator, clock):
    gateway, _, _ = make_gateway(validator, clock)
    resp = gateway.handle(probe("nope"))
    assert resp.status_code == 400
    assert resp.body == {"error": True, "message": "Unknown tool: nope"}


@pytest.mark.parametrize(
    "kind,status",
    [("upstream_failure", 502), ("upstream_timeout", 504), ("ssrf", 400), ("validation", 400)],
)
def test_failures_are_mapped_and_never_cached(validator, clock, kind, status):
    executor = FakeExecutor(lambda d, t, p: ProbeResult.failed(d.name, kind, "Port scan failed or timed out"))
    gateway, _, _ = make_gateway(validator, clock, executor=executor)

    for _ in range(2):
        resp = gateway.handle(probe("port", host="example.com"))
        assert resp.status_code == status
        assert resp.body == {"error": True, "message": "Port scan failed or timed out"}
    assert len(executor.calls) == 2


def test_unexpected_error_is_a_generic_500(validator, clock):
    gateway, _, _ = make_gateway(validator, clock, executor=FakeExecutor(RuntimeError("secret detail")))
    resp = gateway.handle(probe("dns", domain="example.com"))
    assert resp.status_code == 500
    assert resp.body == {"error": True, "message": "Internal server error"}


def test_uncached_tool_always_executes(validator, clock):
    gateway, executor, _ = make_gateway(validator, clock)
    for _ in range(3):
        resp = gateway.handle(probe("breachcheck", password="hunter2"))
        assert resp.headers["X-Cache"] == "MISS"
    assert len(executor.calls) == 3


def test_extras_are_part_of_the_cache_key(validator, clock):
    gateway, executor, _ = make_gateway(validator, clock)
    gateway.handle(probe("port", host="example.com", ports="22"))
    gateway.handle(probe("port", host="example.com", ports="80"))
    gateway.handle(probe("port", host="example.com", ports="22"))
    assert [c[2] for c in executor.calls] == [{"ports": "22"}, {"ports": "80"}]
