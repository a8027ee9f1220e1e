"""Snapshot assembly for the host agent."""

from __future__ import annotations

from .aggregator import Aggregator

__all__ = [
    "Aggregator",
]
