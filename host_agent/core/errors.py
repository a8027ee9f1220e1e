"""Exceptions raised by the host agent."""

from __future__ import annotations


class AgentError(Exception):
    """Base class for agent errors."""


class ConfigurationError(AgentError):
    """The environment does not describe a usable agent configuration."""


class GPUUnavailableError(AgentError):
    """Neither nvidia-smi nor rocm-smi could be invoked on this host."""


class NoValidGPUDataError(AgentError):
    """A vendor tool ran to completion without emitting one usable sample."""

    def __init__(self, tool: str) -> None:
        super().__init__(f"{tool} produced no valid GPU data")
        self.tool = tool


class ContainerStatsError(AgentError):
    """The container engine API could not be queried."""
