"""Core utilities for the host agent."""

from __future__ import annotations

from .config import AGENT_NAME, AGENT_VERSION, INTERVALS, LIMITS, AgentConfig, load_key
from .errors import (
    AgentError,
    ConfigurationError,
    ContainerStatsError,
    GPUUnavailableError,
    NoValidGPUDataError,
)

__all__ = [
    "AGENT_NAME",
    "AGENT_VERSION",
    "AgentConfig",
    "INTERVALS",
    "LIMITS",
    "load_key",
    "AgentError",
    "ConfigurationError",
    "ContainerStatsError",
    "GPUUnavailableError",
    "NoValidGPUDataError",
]
