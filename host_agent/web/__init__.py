"""HTTP transport for the host agent."""

from __future__ import annotations

__all__ = [
    "create_app",
    "parse_listen_address",
]

from .server import create_app, parse_listen_address  # noqa: E402
