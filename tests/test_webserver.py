"""
Brief: Tests for the admin FastAPI app and its background runner.

Inputs:
  - None

Outputs:
  - None
"""

import asyncio
import ipaddress

from fastapi.testclient import TestClient

from dnsoverlay.resolver_state import PersistentBackend, ResolverState
from dnsoverlay.servers.webserver import create_app, start_webserver
from dnsoverlay.storage import SQLiteDomainTable


def _client(state=None, config=None):
    state = state or ResolverState("8.8.8.8:53")
    return state, TestClient(create_app(state, config or {}))


def test_health_endpoints():
    """
    Brief: /health and /api/v1/health report ok with a UTC timestamp.

    Inputs:
      - None

    Outputs:
      - None: Asserts status field and timestamp suffix
    """
    _, client = _client()
    for path in ("/health", "/api/v1/health"):
        resp = client.get(path)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["server_time"].endswith("Z")


def test_put_list_resolve_delete_domain():
    state, client = _client()

    resp = client.put("/api/v1/domains/local.dev", json={"ip": "127.0.0.1"})
    assert resp.status_code == 200
    assert resp.json() == {"name": "local.dev", "ip": "127.0.0.1"}

    client.put("/api/v1/domains/*.apps.dev", json={"ip": "10.0.0.42"})

    listed = client.get("/api/v1/domains").json()
    assert listed["backend"] == "memory"
    assert listed["domains"] == [
        {"name": "*.apps.dev", "ip": "10.0.0.42"},
        {"name": "local.dev", "ip": "127.0.0.1"},
    ]

    resp = client.get("/api/v1/resolve/svc.apps.dev")
    assert resp.status_code == 200
    assert resp.json()["ip"] == "10.0.0.42"

    # The DNS side sees admin writes immediately.
    assert asyncio.run(state.resolve("LOCAL.DEV.")) == ipaddress.IPv4Address("127.0.0.1")

    resp = client.delete("/api/v1/domains/local.dev")
    assert resp.status_code == 200
    assert client.get("/api/v1/resolve/local.dev").status_code == 404


def test_put_domain_rejects_invalid_ip():
    state, client = _client()
    for bad in ("::1", "not-an-ip", "300.1.1.1"):
        resp = client.put("/api/v1/domains/bad.dev", json={"ip": bad})
        assert resp.status_code == 422
    assert state.list_domains_sync() == []


def test_upstream_get_and_put():
    state, client = _client()
    assert client.get("/api/v1/upstream").json() == {"host": "8.8.8.8", "port": 53}

    resp = client.put("/api/v1/upstream", json={"host": "127.0.0.1", "port": 5300})
    assert resp.status_code == 200
    assert state.upstream == ("127.0.0.1", 5300)

    resp = client.put("/api/v1/upstream", json={"host": "1.1.1.1"})
    assert resp.json() == {"host": "1.1.1.1", "port": 53}

    assert client.put("/api/v1/upstream", json={"host": "", "port": 53}).status_code == 422
    assert client.put("/api/v1/upstream", json={"host": "x", "port": 0}).status_code == 422
    assert state.upstream == ("1.1.1.1", 53)


def test_enabled_get_and_put():
    state, client = _client()
    assert client.get("/api/v1/enabled").json() == {"enabled": True}

    resp = client.put("/api/v1/enabled", json={"enabled": False})
    assert resp.status_code == 200
    assert state.enabled is False
    assert client.get("/api/v1/enabled").json() == {"enabled": False}


def test_sqlite_backend_routes(tmp_path):
    state = ResolverState.with_sqlite("8.8.8.8", str(tmp_path / "api.db"))
    try:
        _, client = _client(state)
        client.put("/api/v1/domains/db.dev", json={"ip": "10.9.9.9"})
        listed = client.get("/api/v1/domains").json()
        assert listed["backend"] == "sqlite"
        assert listed["domains"] == [{"name": "db.dev", "ip": "10.9.9.9"}]
    finally:
        state.close()


def test_storage_error_maps_to_503():
    table = SQLiteDomainTable(":memory:")
    table.close()
    state = ResolverState("8.8.8.8", PersistentBackend(table))
    _, client = _client(state)

    assert client.get("/api/v1/domains").status_code == 503
    assert client.get("/api/v1/resolve/x.dev").status_code == 503
    assert (
        client.put("/api/v1/domains/x.dev", json={"ip": "10.0.0.1"}).status_code == 503
    )
    assert client.delete("/api/v1/domains/x.dev").status_code == 503


def test_token_auth_enforced():
    """
    Brief: token mode accepts Bearer or X-API-Key and rejects everything else.

    Inputs:
      - None

    Outputs:
      - None: Asserts 401 without/with wrong token, 200 with a correct one
    """
    cfg = {"webserver": {"auth": {"mode": "token", "token": "s3cret"}}}
    _, client = _client(config=cfg)

    assert client.get("/api/v1/domains").status_code == 401
    resp = client.get("/api/v1/domains", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401

    resp = client.get("/api/v1/domains", headers={"Authorization": "Bearer s3cret"})
    assert resp.status_code == 200
    resp = client.get("/api/v1/enabled", headers={"X-API-Key": "s3cret"})
    assert resp.status_code == 200

    # Health stays public.
    assert client.get("/health").status_code == 200


def test_token_mode_without_token_is_server_error():
    _, client = _client(config={"webserver": {"auth": {"mode": "token"}}})
    resp = client.get("/api/v1/upstream", headers={"X-API-Key": "anything"})
    assert resp.status_code == 500


def test_start_webserver_disabled_returns_none():
    state = ResolverState("8.8.8.8")
    assert start_webserver(state, {}) is None
    assert start_webserver(state, {"webserver": {"enabled": False}}) is None


def test_start_webserver_runs_in_background(monkeypatch):
    """
    Brief: start_webserver launches uvicorn in a thread and stop() joins it.

    Inputs:
      - monkeypatch: replaces uvicorn.Server with a stub

    Outputs:
      - None: Asserts the stub ran with the configured host/port and exited
    """
    import uvicorn

    seen = {}

    class _StubServer:
        def __init__(self, config):
            seen["host"] = config.host
            seen["port"] = config.port
            self.should_exit = False

        def run(self):
            seen["ran"] = True
            while not self.should_exit:
                asyncio.run(asyncio.sleep(0.01))

    monkeypatch.setattr(uvicorn, "Server", _StubServer)
    state = ResolverState("8.8.8.8")
    handle = start_webserver(
        state, {"webserver": {"enabled": True, "host": "127.0.0.1", "port": 0}}
    )
    assert handle is not None
    assert handle.is_running()
    handle.stop(timeout=2.0)
    assert not handle.is_running()
    assert seen == {"host": "127.0.0.1", "port": 0, "ran": True}
