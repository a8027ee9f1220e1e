"""Data provider package."""

from .containers import ContainerStatsCollector
from .disk import DiskResolver, find_io_device
from .gpu import CollectorState, GPUCollector, GPUManager
from .network import NetworkAccountant, skip_interface
from .rates import delta_rate
from .system import SystemReader

__all__ = [
    "CollectorState",
    "ContainerStatsCollector",
    "DiskResolver",
    "GPUCollector",
    "GPUManager",
    "NetworkAccountant",
    "SystemReader",
    "delta_rate",
    "find_io_device",
    "skip_interface",
]
