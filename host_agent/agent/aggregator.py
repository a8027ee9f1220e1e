"""Assembles one combined snapshot per collector request."""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from dataclasses import replace
from typing import Any, Callable, Mapping

import psutil

from host_agent.core import AgentConfig, ContainerStatsError, GPUUnavailableError
from host_agent.data import (
    ContainerStatsCollector,
    DiskResolver,
    GPUManager,
    NetworkAccountant,
    SystemReader,
)
from host_agent.data.disk import advance_io, seed_io_counters, update_usage
from host_agent.data.rates import two_decimals
from host_agent.models import CombinedSnapshot, ContainerStat, FilesystemStat, SystemStats

logger = logging.getLogger(__name__)


def _disk_io_counters() -> Mapping[str, Any]:
    return psutil.disk_io_counters(perdisk=True) or {}


class Aggregator:
    """Owns every piece of rate-tracking state and produces snapshots.

    Disk and network baselines are advanced on every call, so each rate covers
    the interval since the previous call, whether or not its result was used.
    """

    def __init__(
        self,
        config: AgentConfig,
        *,
        disk_resolver: DiskResolver | None = None,
        network_accountant: NetworkAccountant | None = None,
        container_collector: ContainerStatsCollector | None = None,
        system_reader: SystemReader | None = None,
        gpu_manager_factory: Callable[[], GPUManager] | None = GPUManager,
        disk_io_counters: Callable[[], Mapping[str, Any]] = _disk_io_counters,
        disk_usage: Callable[[str], Any] = psutil.disk_usage,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._disk_io_counters = disk_io_counters
        self._disk_usage = disk_usage
        self.provider_failures: defaultdict[str, int] = defaultdict(int)

        self._system = system_reader or SystemReader(config)
        self.info = self._system.system_info()

        resolver = disk_resolver or DiskResolver(config, disk_usage=disk_usage, clock=clock)
        self._filesystems: dict[str, FilesystemStat] = resolver.initialize()

        self._network = network_accountant or NetworkAccountant(config, clock=clock)
        self._network.initialize()

        self._containers = container_collector or ContainerStatsCollector(config, clock=clock)

        self._gpu: GPUManager | None = None
        if gpu_manager_factory is not None:
            try:
                self._gpu = gpu_manager_factory()
            except GPUUnavailableError as exc:
                logger.debug("GPU monitoring unavailable: %s", exc)
            else:
                self._gpu.start()

    @property
    def filesystems(self) -> Mapping[str, FilesystemStat]:
        return self._filesystems

    def gather_stats(self) -> CombinedSnapshot:
        with self._lock:
            logger.debug("Gathering stats")
            timestamp = self._clock()
            stats = SystemStats()

            self._safe_call("system", self._system.read, stats)
            self._safe_call("disk", self._update_filesystems, stats)
            sent, recv = self._network.sample()
            stats.network_sent_bytes_per_sec = sent
            stats.network_recv_bytes_per_sec = recv

            containers = self._container_stats()

            if self._gpu is not None:
                stats.gpus = self._gpu.get_current_data()

            stats.extra_fs = {
                name: replace(filesystem)
                for name, filesystem in self._filesystems.items()
                if not filesystem.is_root and filesystem.disk_total_bytes > 0
            }

            self._update_info(stats)
            snapshot = CombinedSnapshot(
                timestamp=timestamp,
                info=replace(self.info),
                stats=stats,
                containers=containers,
            )
            logger.debug("Snapshot: %s", snapshot)
            return snapshot

    def snapshot(self) -> dict[str, Any]:
        return self.gather_stats().to_dict()

    def _update_filesystems(self, stats: SystemStats) -> None:
        for filesystem in self._filesystems.values():
            update_usage(filesystem, self._disk_usage)
            if filesystem.is_root:
                stats.disk_total_bytes = filesystem.disk_total_bytes
                stats.disk_used_bytes = filesystem.disk_used_bytes
                if filesystem.disk_total_bytes:
                    stats.disk_percent = two_decimals(
                        filesystem.disk_used_bytes / filesystem.disk_total_bytes * 100
                    )

        counters = self._disk_io_counters()
        now = self._clock()
        for key, filesystem in self._filesystems.items():
            if not filesystem.tracks_io or key not in counters:
                continue
            if not advance_io(filesystem, counters[key], now):
                seed_io_counters(self._filesystems, counters, now, mark_missing=False)
                for tracked in self._filesystems.values():
                    tracked.read_bytes_per_sec = tracked.write_bytes_per_sec = 0.0
                stats.disk_read_bytes_per_sec = stats.disk_write_bytes_per_sec = 0.0
                return
            if filesystem.is_root:
                stats.disk_read_bytes_per_sec = filesystem.read_bytes_per_sec
                stats.disk_write_bytes_per_sec = filesystem.write_bytes_per_sec

    def _update_info(self, stats: SystemStats) -> None:
        info = self.info
        info.uptime_seconds = self._system.uptime()
        info.cpu_percent = stats.cpu_percent
        info.memory_percent = stats.memory_percent
        info.disk_percent = stats.disk_percent
        info.bandwidth_bytes_per_sec = two_decimals(
            stats.network_sent_bytes_per_sec + stats.network_recv_bytes_per_sec
        )
        info.gpu_percent = max(
            (gpu.usage_percent for gpu in stats.gpus.values()), default=None
        )
        info.podman = self._containers.is_podman

    def _container_stats(self) -> dict[str, ContainerStat]:
        try:
            return self._containers.get_container_stats()
        except ContainerStatsError as exc:
            logger.debug("Error getting container stats: %s", exc)
        except Exception as exc:
            logger.exception("Provider 'containers' failed during collection", exc_info=exc)
        self.provider_failures["containers"] += 1
        return {}

    def _safe_call(self, key: str, fn: Callable[[SystemStats], None], stats: SystemStats) -> None:
        try:
            fn(stats)
        except Exception as exc:
            logger.exception("Provider '%s' failed during collection", key, exc_info=exc)
            self.provider_failures[key] += 1
