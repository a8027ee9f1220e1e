"""Authenticated HTTP endpoint serving agent snapshots to the collector."""

from __future__ import annotations

import hmac
import json
import logging
from functools import partial
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, ClassVar

from host_agent.core import AGENT_NAME, AGENT_VERSION, ConfigurationError

logger = logging.getLogger(__name__)

STATS_PATH = "/api/stats"

SnapshotProvider = Callable[[], dict[str, Any]]


def parse_listen_address(address: str) -> tuple[str, int]:
    """Split ``":45876"``, ``"45876"`` or ``"127.0.0.1:45876"`` into host and port."""

    host, sep, port = address.rpartition(":")
    if not sep:
        host, port = "", address
    host = host.strip("[]")
    try:
        port_number = int(port)
    except ValueError as exc:
        raise ConfigurationError(f"invalid listen address: {address!r}") from exc
    if not 0 <= port_number <= 65535:
        raise ConfigurationError(f"invalid port in listen address: {address!r}")
    return host, port_number


class AgentRequestHandler(BaseHTTPRequestHandler):
    """Serves ``GET /api/stats`` to clients presenting the agent key."""

    server_version: ClassVar[str] = f"{AGENT_NAME}/{AGENT_VERSION}"

    def __init__(
        self,
        *args: Any,
        snapshot_provider: SnapshotProvider,
        key: bytes,
        **kwargs: Any,
    ) -> None:
        self._snapshot_provider = snapshot_provider
        self._key = key
        super().__init__(*args, **kwargs)

    def do_GET(self) -> None:  # noqa: N802
        if self.path != STATS_PATH:
            self._send_error_json(HTTPStatus.NOT_FOUND, "not_found")
            return
        if not self._check_key():
            self._require_auth()
            return
        try:
            snapshot = self._snapshot_provider()
        except Exception:
            logger.exception("Failed to produce snapshot")
            self._send_error_json(HTTPStatus.INTERNAL_SERVER_ERROR, "internal_error")
            return
        self._send_json(snapshot)

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A003 - parity with BaseHTTPRequestHandler
        logger.debug("%s - %s", self.client_address[0], format % args)

    def _check_key(self) -> bool:
        header = self.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token:
            return False
        return hmac.compare_digest(token.strip().encode("utf-8"), self._key)

    def _require_auth(self) -> None:
        logger.warning("Rejected unauthenticated request from %s", self.client_address[0])
        self.send_response(HTTPStatus.UNAUTHORIZED)
        self.send_header("WWW-Authenticate", f'Bearer realm="{AGENT_NAME}"')
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _send_json(self, payload: Any) -> None:
        body = json.dumps(payload or {}).encode("utf-8")
        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, status: HTTPStatus, error: str) -> None:
        body = json.dumps({"error": error}).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


class AgentServer:
    """Wraps the HTTP server bound to the configured listen address."""

    def __init__(self, snapshot_provider: SnapshotProvider, key: bytes, address: str) -> None:
        if not key:
            raise ConfigurationError("an empty key would accept every client")
        host, port = parse_listen_address(address)
        handler = partial(
            AgentRequestHandler,
            snapshot_provider=snapshot_provider,
            key=key,
        )
        self._httpd = ThreadingHTTPServer((host, port), handler)
        self._httpd.daemon_threads = True

    def serve_forever(self) -> None:
        try:
            self._httpd.serve_forever()
        finally:
            self._httpd.server_close()

    def stop(self) -> None:
        self._httpd.shutdown()
        self._httpd.server_close()

    def server_address(self) -> str:
        host, port = self._httpd.server_address[:2]
        return f"http://{host or '0.0.0.0'}:{port}"


def create_app(snapshot_provider: SnapshotProvider, key: bytes, address: str) -> AgentServer:
    """Factory helper used by the entry point and tests."""

    return AgentServer(snapshot_provider, key, address)
