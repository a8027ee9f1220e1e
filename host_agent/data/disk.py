"""Filesystem discovery and per-device I/O rate tracking.

Partitions are reported by device path (``/dev/sda1``, ``/dev/mapper/root``)
while the kernel exposes I/O counters by block device name (``sda1``,
``dm-0``). The resolver maps every monitored filesystem to a key in the
counter table once at start-up; the aggregator then advances the counters on
every poll.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

import psutil

from host_agent.core import LIMITS, AgentConfig
from host_agent.models import FilesystemStat

from .rates import delta_rate

logger = logging.getLogger(__name__)

# bind-mounted into containers by the engine; the device behind it is the
# host's root filesystem
_CONTAINER_ROOT_MOUNTPOINT = "/etc/hosts"


def _list_directories(path: str) -> list[str]:
    try:
        return sorted(entry.name for entry in Path(path).iterdir() if entry.is_dir())
    except OSError:
        return []


def _disk_partitions() -> list[Any]:
    return psutil.disk_partitions(all=False)


def _disk_io_counters() -> Mapping[str, Any]:
    return psutil.disk_io_counters(perdisk=True) or {}


def find_io_device(
    filesystem: str,
    io_counters: Mapping[str, Any],
    claimed: Mapping[str, FilesystemStat],
) -> tuple[str, bool]:
    """Return the counter key for ``filesystem`` and whether it matched exactly.

    Without an exact match the busiest device (most bytes read) that is not
    already claimed is returned, or ``"/"`` when there is none. On hosts with
    an idle root disk next to a busy data disk this picks the data disk.
    """

    max_read_bytes = 0
    max_read_device = "/"
    for name, counters in io_counters.items():
        if name == filesystem:
            return name, True
        read_bytes = getattr(counters, "read_bytes", 0)
        if read_bytes > max_read_bytes and name not in claimed:
            max_read_bytes = read_bytes
            max_read_device = name
    return max_read_device, False


def seed_io_counters(
    filesystems: Mapping[str, FilesystemStat],
    io_counters: Mapping[str, Any],
    now: float,
    *,
    mark_missing: bool = True,
) -> None:
    """Record baseline counters for every filesystem with a counter entry.

    With ``mark_missing`` a filesystem absent from ``io_counters`` stops
    tracking I/O; without it the filesystem is left as it was.
    """

    for key, stat in filesystems.items():
        counters = io_counters.get(key)
        if counters is None:
            if mark_missing:
                logger.warning("Device %s not found in disk I/O counters", key)
                stat.tracks_io = False
            continue
        stat.tracks_io = True
        stat.last_sample_time = now
        stat.cumulative_read_bytes = int(counters.read_bytes)
        stat.cumulative_write_bytes = int(counters.write_bytes)


def advance_io(stat: FilesystemStat, counters: Any, now: float) -> bool:
    """Compute rates since the stored sample and store the new sample.

    Returns ``False`` when the rate is implausibly high; the caller should
    re-seed every filesystem in that case.
    """

    elapsed = now - stat.last_sample_time
    read_rate = delta_rate(stat.cumulative_read_bytes, int(counters.read_bytes), elapsed)
    write_rate = delta_rate(stat.cumulative_write_bytes, int(counters.write_bytes), elapsed)
    if max(read_rate, write_rate) > LIMITS.disk_bytes_per_sec:
        logger.warning(
            "Invalid disk I/O for %s (read %.0f B/s, write %.0f B/s), resetting",
            stat.resolved_io_key,
            read_rate,
            write_rate,
        )
        return False
    stat.read_bytes_per_sec = read_rate
    stat.write_bytes_per_sec = write_rate
    stat.last_sample_time = now
    stat.cumulative_read_bytes = int(counters.read_bytes)
    stat.cumulative_write_bytes = int(counters.write_bytes)
    return True


def update_usage(stat: FilesystemStat, disk_usage: Callable[[str], Any] = psutil.disk_usage) -> bool:
    """Refresh capacity figures; a filesystem that can't be probed reports zero."""

    try:
        usage = disk_usage(stat.mountpoint)
    except OSError as exc:
        logger.debug("Disk usage unavailable for %s: %s", stat.mountpoint, exc)
        stat.disk_total_bytes = 0
        stat.disk_used_bytes = 0
        return False
    stat.disk_total_bytes = int(usage.total)
    stat.disk_used_bytes = int(usage.used)
    return True


class DiskResolver:
    """Builds the filesystem map tracked for the lifetime of the process."""

    def __init__(
        self,
        config: AgentConfig,
        *,
        partitions: Callable[[], Iterable[Any]] = _disk_partitions,
        io_counters: Callable[[], Mapping[str, Any]] = _disk_io_counters,
        disk_usage: Callable[[str], Any] = psutil.disk_usage,
        list_extra_dir: Callable[[str], Iterable[str]] = _list_directories,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._partitions = partitions
        self._io_counters = io_counters
        self._disk_usage = disk_usage
        self._list_extra_dir = list_extra_dir
        self._clock = clock
        self._filesystems: dict[str, FilesystemStat] = {}
        self._counters: Mapping[str, Any] = {}

    def initialize(self) -> dict[str, FilesystemStat]:
        self._filesystems = {}
        hint = self._config.root_filesystem_hint
        extra_dir = self._config.extra_filesystems_dir

        try:
            partitions = list(self._partitions())
        except OSError as exc:
            logger.error("Error getting disk partitions: %s", exc)
            partitions = []
        logger.debug("Disk partitions: %s", partitions)

        try:
            self._counters = self._io_counters()
        except OSError as exc:
            logger.error("Error getting disk I/O counters: %s", exc)
            self._counters = {}
        logger.debug("Disk I/O counters: %s", list(self._counters))

        has_root = False

        if hint:
            partition = self._match_partition(partitions, hint)
            if partition is not None:
                has_root = self._register(partition.device, partition.mountpoint, root=True)
            else:
                logger.warning("Partition details not found for filesystem %s", hint)

        for name in self._config.extra_filesystems:
            partition = self._match_partition(partitions, name)
            if partition is not None:
                self._register(partition.device, partition.mountpoint, root=False)
                continue
            # not a partition; accept it if it can at least be statted
            try:
                self._disk_usage(name)
            except OSError as exc:
                logger.error("Invalid filesystem %s: %s", name, exc)
                continue
            self._register(os.path.basename(name.rstrip("/")) or name, name, root=False)

        for partition in partitions:
            device, mountpoint = partition.device, partition.mountpoint
            if not has_root and (
                mountpoint == "/"
                or (mountpoint == _CONTAINER_ROOT_MOUNTPOINT and device.startswith("/dev"))
            ):
                key, matched = find_io_device(
                    os.path.basename(device), self._counters, self._filesystems
                )
                if matched:
                    has_root = self._register(key, mountpoint, root=True)
            if mountpoint.startswith(extra_dir):
                self._register(device, mountpoint, root=False)

        known_mountpoints = {stat.mountpoint for stat in self._filesystems.values()}
        for folder in self._list_extra_dir(extra_dir):
            mountpoint = os.path.join(extra_dir, folder)
            logger.debug("Extra filesystem folder %s", mountpoint)
            if mountpoint not in known_mountpoints:
                self._register(folder, mountpoint, root=False)

        if not has_root:
            key, _ = find_io_device(os.path.basename(hint), self._counters, self._filesystems)
            logger.info("Root disk mountpoint=/ io=%s", key)
            self._filesystems[key] = FilesystemStat(mountpoint="/", resolved_io_key=key, is_root=True)

        seed_io_counters(self._filesystems, self._counters, self._clock())
        return self._filesystems

    @staticmethod
    def _match_partition(partitions: Iterable[Any], name: str) -> Any | None:
        for partition in partitions:
            if partition.device.endswith(name) or partition.mountpoint == name:
                return partition
        return None

    def _register(self, device: str, mountpoint: str, *, root: bool) -> bool:
        """Add a filesystem under its counter key; returns ``True`` if added."""

        key = os.path.basename(device)
        if key in self._filesystems:
            return False
        if root:
            logger.info("Detected root device %s", key)
            if key not in self._counters:
                key, matched = find_io_device(
                    os.path.basename(self._config.root_filesystem_hint),
                    self._counters,
                    self._filesystems,
                )
                if not matched:
                    logger.info(
                        "Using I/O fallback device=%s mountpoint=%s fallback=%s",
                        device,
                        mountpoint,
                        key,
                    )
        elif key not in self._counters:
            # extra filesystems mounted as /extra-filesystems/sdb1 name the device
            folder = os.path.basename(mountpoint)
            if folder in self._counters:
                key = folder
        if key in self._filesystems:
            logger.debug("Device %s already tracked, skipping %s", key, mountpoint)
            return False
        self._filesystems[key] = FilesystemStat(
            mountpoint=mountpoint,
            resolved_io_key=key,
            is_root=root,
        )
        return True
