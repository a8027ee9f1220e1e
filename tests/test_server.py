"""Tests for the authenticated stats endpoint."""

import json
import threading
import urllib.error
import urllib.request

import pytest

from host_agent.core import ConfigurationError
from host_agent.web import create_app, parse_listen_address

KEY = b"test-key"


@pytest.mark.parametrize(
    "address, expected",
    [
        (":45876", ("", 45876)),
        ("45876", ("", 45876)),
        ("127.0.0.1:8080", ("127.0.0.1", 8080)),
        ("[::1]:8080", ("::1", 8080)),
    ],
)
def test_parse_listen_address(address, expected):
    assert parse_listen_address(address) == expected


@pytest.mark.parametrize("address", ["localhost:http", "127.0.0.1:70000", ""])
def test_parse_invalid_listen_address(address):
    with pytest.raises(ConfigurationError):
        parse_listen_address(address)


def test_empty_key_is_rejected():
    with pytest.raises(ConfigurationError):
        create_app(dict, b"", "127.0.0.1:0")


@pytest.fixture
def server():
    calls = []

    def snapshot():
        calls.append(1)
        return {"info": {"hostname": "node-1"}, "stats": {}, "containers": {}}

    app = create_app(snapshot, KEY, "127.0.0.1:0")
    thread = threading.Thread(target=app.serve_forever, daemon=True)
    thread.start()
    app.calls = calls
    yield app
    app.stop()
    thread.join(timeout=5)


def request(server, path="/api/stats", token=None):
    req = urllib.request.Request(server.server_address() + path)
    if token is not None:
        req.add_header("Authorization", f"Bearer {token}")
    return urllib.request.urlopen(req, timeout=5)


class TestAgentServer:
    def test_returns_snapshot(self, server):
        with request(server, token="test-key") as response:
            assert response.status == 200
            assert response.headers["Content-Type"].startswith("application/json")
            body = json.loads(response.read())

        assert body["info"]["hostname"] == "node-1"
        assert server.calls == [1]

    def test_missing_key(self, server):
        with pytest.raises(urllib.error.HTTPError) as excinfo:
            request(server)

        assert excinfo.value.code == 401
        assert excinfo.value.headers["WWW-Authenticate"].startswith("Bearer")
        assert server.calls == []

    def test_wrong_key(self, server):
        with pytest.raises(urllib.error.HTTPError) as excinfo:
            request(server, token="guess")

        assert excinfo.value.code == 401

    def test_unknown_path(self, server):
        with pytest.raises(urllib.error.HTTPError) as excinfo:
            request(server, path="/metrics", token="test-key")

        assert excinfo.value.code == 404
        assert json.loads(excinfo.value.read()) == {"error": "not_found"}

    def test_failing_snapshot_returns_server_error(self):
        def snapshot():
            raise RuntimeError("collection failed")

        app = create_app(snapshot, KEY, "127.0.0.1:0")
        thread = threading.Thread(target=app.serve_forever, daemon=True)
        thread.start()
        try:
            with pytest.raises(urllib.error.HTTPError) as excinfo:
                request(app, token="test-key")
        finally:
            app.stop()
            thread.join(timeout=5)

        assert excinfo.value.code == 500
        assert json.loads(excinfo.value.read()) == {"error": "internal_error"}
