"""Dataclasses representing agent state and the snapshots it serves."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any

# Fields flagged with this metadata key hold delta-tracking state and are
# never part of a serialised snapshot.
_INTERNAL = {"internal": True}


def _public_dict(instance: Any) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for item in fields(instance):
        if item.metadata.get("internal"):
            continue
        value = getattr(instance, item.name)
        if isinstance(value, dict):
            value = {
                key: entry.to_dict() if hasattr(entry, "to_dict") else entry
                for key, entry in value.items()
            }
        elif hasattr(value, "to_dict"):
            value = value.to_dict()
        result[item.name] = value
    return result


@dataclass(slots=True)
class FilesystemStat:
    """A monitored filesystem and the I/O counters last observed for it."""

    mountpoint: str
    resolved_io_key: str
    is_root: bool = False
    tracks_io: bool = False
    last_sample_time: float = 0.0
    cumulative_read_bytes: int = 0
    cumulative_write_bytes: int = 0
    disk_total_bytes: int = 0
    disk_used_bytes: int = 0
    read_bytes_per_sec: float = 0.0
    write_bytes_per_sec: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return _public_dict(self)


@dataclass(slots=True)
class NetworkIOState:
    last_sample_time: float = 0.0
    cumulative_bytes_sent: int = 0
    cumulative_bytes_received: int = 0
    relevant_interface_names: frozenset[str] = frozenset()


@dataclass(slots=True)
class GPUAccumulator:
    """Running sums for one GPU between two drains."""

    name: str
    temperature_celsius: float = 0.0
    memory_used_mb: float = 0.0
    memory_total_mb: float = 0.0
    usage_percent_sum: float = 0.0
    power_watts_sum: float = 0.0
    sample_count: int = 0

    def add_sample(
        self,
        temperature: float,
        memory_used: float,
        memory_total: float,
        usage: float,
        power: float,
    ) -> None:
        self.temperature_celsius = temperature
        self.memory_used_mb = memory_used
        self.memory_total_mb = memory_total
        self.usage_percent_sum += usage
        self.power_watts_sum += power
        self.sample_count += 1


@dataclass(frozen=True, slots=True)
class GPUReading:
    name: str
    temperature_celsius: float
    memory_used_mb: float
    memory_total_mb: float
    usage_percent: float
    power_watts: float

    def to_dict(self) -> dict[str, Any]:
        return _public_dict(self)


@dataclass(slots=True)
class ContainerStat:
    name: str
    cpu_percent: float = 0.0
    memory_mb: float = 0.0
    network_sent_bytes_per_sec: float = 0.0
    network_recv_bytes_per_sec: float = 0.0
    prev_cpu_total: int = field(default=0, repr=False, metadata=_INTERNAL)
    prev_cpu_system: int = field(default=0, repr=False, metadata=_INTERNAL)
    prev_net_sent: int = field(default=0, repr=False, metadata=_INTERNAL)
    prev_net_recv: int = field(default=0, repr=False, metadata=_INTERNAL)
    prev_net_time: float = field(default=0.0, repr=False, metadata=_INTERNAL)

    def to_dict(self) -> dict[str, Any]:
        return _public_dict(self)


@dataclass(slots=True)
class SystemInfo:
    """Static host description plus a summary of the most recent poll."""

    hostname: str
    kernel_version: str | None
    cpu_model: str | None
    cores: int | None
    threads: int | None
    agent_version: str
    uptime_seconds: float = 0.0
    podman: bool = False
    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    disk_percent: float = 0.0
    bandwidth_bytes_per_sec: float = 0.0
    gpu_percent: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return _public_dict(self)


@dataclass(slots=True)
class SystemStats:
    cpu_percent: float = 0.0
    memory_total_bytes: int = 0
    memory_used_bytes: int = 0
    memory_percent: float = 0.0
    memory_buff_cache_bytes: int = 0
    memory_zfs_arc_bytes: int = 0
    swap_total_bytes: int = 0
    swap_used_bytes: int = 0
    disk_total_bytes: int = 0
    disk_used_bytes: int = 0
    disk_percent: float = 0.0
    disk_read_bytes_per_sec: float = 0.0
    disk_write_bytes_per_sec: float = 0.0
    network_sent_bytes_per_sec: float = 0.0
    network_recv_bytes_per_sec: float = 0.0
    temperatures: dict[str, float] = field(default_factory=dict)
    extra_fs: dict[str, FilesystemStat] = field(default_factory=dict)
    gpus: dict[str, GPUReading] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return _public_dict(self)


@dataclass(slots=True)
class CombinedSnapshot:
    """The unit handed to the transport layer for one request."""

    timestamp: float
    info: SystemInfo
    stats: SystemStats
    containers: dict[str, ContainerStat] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return _public_dict(self)
