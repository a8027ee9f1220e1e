"""Models exported by the host agent."""

from .stats import (
    CombinedSnapshot,
    ContainerStat,
    FilesystemStat,
    GPUAccumulator,
    GPUReading,
    NetworkIOState,
    SystemInfo,
    SystemStats,
)

__all__ = [
    "CombinedSnapshot",
    "ContainerStat",
    "FilesystemStat",
    "GPUAccumulator",
    "GPUReading",
    "NetworkIOState",
    "SystemInfo",
    "SystemStats",
]
