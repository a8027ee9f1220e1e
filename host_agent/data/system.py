"""Host description and instantaneous CPU, memory and sensor readings."""

from __future__ import annotations

import logging
import platform
import socket
import time
from pathlib import Path
from typing import Any, Callable, Mapping

import psutil

from host_agent.core import AGENT_VERSION, AgentConfig
from host_agent.models import SystemInfo, SystemStats

from .rates import two_decimals

logger = logging.getLogger(__name__)

_ARCSTATS_PATH = Path("/proc/spl/kstat/zfs/arcstats")
_CPUINFO_PATH = Path("/proc/cpuinfo")


def _read_text(path: Path) -> str | None:
    try:
        value = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    return value or None


def _cpu_model() -> str | None:
    cpuinfo = _read_text(_CPUINFO_PATH)
    if cpuinfo:
        for line in cpuinfo.splitlines():
            key, _, value = line.partition(":")
            if key.strip() in ("model name", "Model", "Hardware") and value.strip():
                return value.strip()
    return platform.processor() or None


def read_arc_size(path: Path = _ARCSTATS_PATH) -> int:
    """Return the ZFS ARC size in bytes, or 0 when unavailable."""

    content = _read_text(path)
    if not content:
        return 0
    for line in content.splitlines():
        parts = line.split()
        if len(parts) == 3 and parts[0] == "size":
            try:
                return int(parts[2])
            except ValueError:
                return 0
    return 0


def _sensors_temperatures() -> Mapping[str, Any]:
    try:
        return psutil.sensors_temperatures(fahrenheit=False)
    except (AttributeError, NotImplementedError):  # pragma: no cover - platform specific
        return {}


class SystemReader:
    """Reads the parts of a snapshot that need no state between polls."""

    def __init__(
        self,
        config: AgentConfig,
        *,
        virtual_memory: Callable[[], Any] = psutil.virtual_memory,
        swap_memory: Callable[[], Any] = psutil.swap_memory,
        temperatures: Callable[[], Mapping[str, Any]] = _sensors_temperatures,
        arcstats_path: Path = _ARCSTATS_PATH,
    ) -> None:
        self._memory_calc = config.memory_calc.lower()
        self._sensor_allowlist = config.sensor_allowlist
        self._virtual_memory = virtual_memory
        self._swap_memory = swap_memory
        self._temperatures = temperatures
        self._arcstats_path = arcstats_path
        self._zfs = arcstats_path.exists()
        # the first non-blocking call only primes psutil's CPU times
        psutil.cpu_percent(interval=None)

    def system_info(self) -> SystemInfo:
        uname = platform.uname()
        return SystemInfo(
            hostname=getattr(uname, "node", None) or socket.gethostname(),
            kernel_version=getattr(uname, "release", None),
            cpu_model=_cpu_model(),
            cores=psutil.cpu_count(logical=False),
            threads=psutil.cpu_count(logical=True),
            agent_version=AGENT_VERSION,
            uptime_seconds=self.uptime(),
        )

    @staticmethod
    def uptime() -> float:
        try:
            return max(0.0, time.time() - float(psutil.boot_time()))
        except (OSError, psutil.Error) as exc:  # pragma: no cover - platform specific
            logger.debug("Boot time unavailable: %s", exc)
            return 0.0

    def read(self, stats: SystemStats) -> None:
        stats.cpu_percent = two_decimals(psutil.cpu_percent(interval=None))
        self._read_memory(stats)
        stats.temperatures = self.read_temperatures()

    def _read_memory(self, stats: SystemStats) -> None:
        try:
            memory = self._virtual_memory()
            swap = self._swap_memory()
        except OSError as exc:
            logger.warning("Error reading memory: %s", exc)
            return

        total = int(memory.total)
        used = int(memory.used)
        free = int(memory.free)
        cache_buff = max(total - free - used, 0)
        if self._memory_calc == "htop":
            cache_buff = int(getattr(memory, "cached", 0)) + int(getattr(memory, "buffers", 0))
            cache_buff -= int(getattr(memory, "shared", 0))
            cache_buff = max(cache_buff, 0)
            used = total - (free + cache_buff)

        if self._zfs:
            arc_size = read_arc_size(self._arcstats_path)
            # the ARC is reclaimable, so it is reported apart from used memory
            if 0 < arc_size < used:
                used -= arc_size
                stats.memory_zfs_arc_bytes = arc_size

        stats.memory_total_bytes = total
        stats.memory_used_bytes = used
        stats.memory_buff_cache_bytes = cache_buff
        stats.memory_percent = two_decimals(used / total * 100) if total else 0.0
        stats.swap_total_bytes = int(swap.total)
        stats.swap_used_bytes = int(swap.used)

    def read_temperatures(self) -> dict[str, float]:
        readings: dict[str, float] = {}
        try:
            sensors = self._temperatures()
        except OSError as exc:
            logger.debug("Error reading temperatures: %s", exc)
            return readings
        for group, entries in sensors.items():
            for index, entry in enumerate(entries):
                current = getattr(entry, "current", None)
                if not current:
                    continue
                label = getattr(entry, "label", "") or str(index)
                name = f"{group}_{label}".lower().replace(" ", "_")
                if self._sensor_allowlist is not None and name not in self._sensor_allowlist:
                    continue
                readings[name] = two_decimals(float(current))
        return readings
