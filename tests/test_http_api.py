import json
import urllib.error
import urllib.request

import pytest

from callrelay.config import IceConfig
from callrelay.http_api import start_http_server
from callrelay.registry import ConnectionRegistry, VisitorCounter
from callrelay.stats import StatsReporter

from conftest import FakeSocket


@pytest.fixture
def registry():
    return ConnectionRegistry(VisitorCounter())


@pytest.fixture
def base_url(registry):
    stats = StatsReporter(registry, registry.visitors)
    ice = IceConfig([{"urls": "stun:stun.example.org:3478"}])
    httpd = start_http_server(("127.0.0.1", 0), stats, ice, cors_origin="https://app.example.org")
    host, port = httpd.server_address[:2]
    yield f"http://{host}:{port}"
    httpd.shutdown()
    httpd.server_close()


def _get(url):
    with urllib.request.urlopen(url, timeout=5) as resp:
        return resp.status, dict(resp.headers), json.loads(resp.read())


def test_stats_endpoint(base_url, registry):
    for name in ("alice", "bob"):
        registry.join(registry.register(FakeSocket()).handle, name)
    registry.unregister(registry.lookup("bob").handle)
    status, headers, body = _get(base_url + "/stats")
    assert status == 200
    assert body == {"activeCount": 1, "visitorCount": 2}
    assert headers["Access-Control-Allow-Origin"] == "https://app.example.org"


def test_config_endpoint(base_url):
    status, _, body = _get(base_url + "/config")
    assert status == 200
    assert body == {"iceServers": [{"urls": "stun:stun.example.org:3478"}]}


def test_healthz(base_url):
    assert _get(base_url + "/healthz")[2] == {"ok": True}


def test_unknown_route(base_url):
    with pytest.raises(urllib.error.HTTPError) as exc:
        _get(base_url + "/nope")
    assert exc.value.code == 404
    assert json.loads(exc.value.read()) == {"ok": False, "error": "NO_ROUTE"}


def test_cors_preflight(base_url):
    req = urllib.request.Request(base_url + "/stats", method="OPTIONS")
    with urllib.request.urlopen(req, timeout=5) as resp:
        assert resp.status == 204
        assert "GET" in resp.headers["Access-Control-Allow-Methods"]
