import pytest

from probegate import create_app
from probegate.config import GatewaySettings, load_settings
from probegate.models import ProbeResult
from probegate.routes import LEGACY_TOOL_ROUTES
from probegate.tools.registry import all_descriptors


class RecordingExecutor:
    def __init__(self):
        self.calls = []

    def execute(self, descriptor, target, params, timeout=None):
        self.calls.append((descriptor.name, target.value))
        return ProbeResult.ok(descriptor.name, {"target": target.value})


def public_resolver(host):
    return ["93.184.216.34"]


@pytest.fixture
def executor():
    return RecordingExecutor()


def make_app(executor, clock, **overrides):
    settings = GatewaySettings(rate_limit_max=3, rate_limit_daily=0, admin_token="s3cret")
    for key, value in overrides.items():
        setattr(settings, key, value)
    return create_app(settings, executor=executor, resolver=public_resolver, clock=clock)


@pytest.fixture
def client(executor, clock):
    return make_app(executor, clock).test_client()


def test_health(client):
    resp = client.get("/health")
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["error"] is False
    assert body["data"]["status"] == "ok"
    assert body["data"]["version"] == "2.0"


def test_every_legacy_name_maps_to_a_tool_path():
    paths = {d.path for d in all_descriptors()}
    assert set(LEGACY_TOOL_ROUTES.values()) <= paths


def test_tool_endpoint_and_cache_header(client, executor):
    first = client.post("/api/network/dns", json={"domain": "example.com"})
    second = client.post("/api/network/dns", json={"domain": "example.com"})

    assert first.status_code == 200
    assert first.get_json() == {"error": False, "data": {"target": "example.com"}}
    assert first.headers["X-Cache"] == "MISS"
    assert second.headers["X-Cache"] == "HIT"
    assert executor.calls == [("dns", "example.com")]


def test_legacy_selector_shares_the_pipeline(client, executor):
    client.post("/api/security/whois", json={"domain": "example.com"})
    resp = client.post("/?tool=whois", json={"domain": "example.com"})
    assert resp.status_code == 200
    assert resp.headers["X-Cache"] == "HIT"
    assert len(executor.calls) == 1


@pytest.mark.parametrize("query,message", [("?tool=bogus", "Unknown tool: bogus"), ("", "Unknown tool: None")])
def test_legacy_unknown_tool(client, executor, query, message):
    resp = client.post(f"/{query}", json={"domain": "example.com"})
    assert resp.status_code == 400
    assert resp.get_json() == {"error": True, "message": message}
    assert executor.calls == []


def test_ssrf_rejection_over_http(client, executor):
    resp = client.post("/api/web/metadata", json={"url": "http://169.254.169.254/latest/meta-data"})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Private/internal address not allowed"
    assert executor.calls == []


def test_non_scalar_body_values_are_ignored(client, executor):
    resp = client.post("/api/network/dns", json={"domain": ["example.com"]})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Host required"


def test_rate_limit_over_http(client, executor):
    for name in ("a", "b", "c"):
        assert client.post("/api/network/dns", json={"domain": f"{name}.example"}).status_code == 200

    resp = client.post("/api/network/dns", json={"domain": "d.example"})
    assert resp.status_code == 429
    assert resp.headers["Retry-After"] == "60"
    assert resp.get_json()["retryAfter"] == 60
    assert len(executor.calls) == 3


def test_spoofed_proxy_header_ignored_by_default(client, executor):
    statuses = [
        client.post("/api/network/subnet", json={"ip": "10.0.0.1", "cidr": "24"},
                    headers={"X-Real-IP": f"198.51.100.{i}"}).status_code
        for i in range(5)
    ]
    assert statuses == [200, 200, 200, 429, 429]
    assert len(executor.calls) == 3


def test_rate_limit_keys_on_proxy_header_when_trusted(executor, clock):
    client = make_app(executor, clock, trust_proxy_headers=True).test_client()
    for name in ("a", "b", "c"):
        client.post("/api/network/dns", json={"domain": f"{name}.example"}, headers={"X-Real-IP": "198.51.100.1"})
    resp = client.post("/api/network/dns", json={"domain": "d.example"}, headers={"X-Real-IP": "198.51.100.2"})
    assert resp.status_code == 200


def test_proxy_trust_is_opt_in(monkeypatch):
    monkeypatch.delenv("TRUST_PROXY_HEADERS", raising=False)
    assert GatewaySettings().trust_proxy_headers is False
    assert load_settings().trust_proxy_headers is False

    monkeypatch.setenv("TRUST_PROXY_HEADERS", "true")
    assert load_settings().trust_proxy_headers is True


def test_error_envelopes(client):
    resp = client.get("/does-not-exist")
    assert resp.status_code == 404
    assert resp.get_json() == {"error": True, "message": "Endpoint not found"}

    resp = client.get("/api/network/dns")
    assert resp.status_code == 405
    assert resp.get_json()["error"] is True


# ── Admin ────────────────────────────────────────────────────────


def test_admin_hidden_without_token(executor, clock):
    client = make_app(executor, clock, admin_token=None).test_client()
    resp = client.post("/admin/cache/clear", headers={"Authorization": "Bearer anything"})
    assert resp.status_code == 404


def test_admin_requires_bearer_token(client):
    assert client.post("/admin/cache/clear").status_code == 401
    resp = client.post("/admin/cache/clear", headers={"Authorization": "Bearer wrong"})
    assert resp.status_code == 401


def test_admin_cache_clear(client, executor):
    client.post("/api/network/dns", json={"domain": "example.com"})
    resp = client.post("/admin/cache/clear", headers={"Authorization": "Bearer s3cret"})
    assert resp.status_code == 200
    assert resp.get_json()["data"] == {"cleared": 1}

    assert client.post("/api/network/dns", json={"domain": "example.com"}).headers["X-Cache"] == "MISS"
    assert len(executor.calls) == 2


def test_admin_stats(client):
    client.post("/api/network/dns", json={"domain": "example.com"})
    resp = client.get("/admin/stats", headers={"Authorization": "Bearer s3cret"})
    data = resp.get_json()["data"]
    assert data["cache"]["entries"] == 1
    assert data["rateLimiter"]["points"] == 3
    assert data["tools"]["total"] == len(all_descriptors())
    by_kind = data["tools"]["byInvocation"]
    assert sum(by_kind.values()) == len(all_descriptors())
    assert by_kind["local"] == 1
    assert by_kind["command"] == 5
