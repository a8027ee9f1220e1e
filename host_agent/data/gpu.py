"""GPU data collection from streaming vendor tools.

Each detected vendor tool (``nvidia-smi``, ``rocm-smi``) runs as a long-lived
subprocess that prints a sample every few seconds. A collector thread reads
its output line by line and folds every sample into a shared accumulator map;
the aggregator drains that map once per request.
"""

from __future__ import annotations

import enum
import json
import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Iterable, Iterator, Sequence

from host_agent.core import INTERVALS, GPUUnavailableError, NoValidGPUDataError
from host_agent.models import GPUAccumulator, GPUReading

from .rates import two_decimals

logger = logging.getLogger(__name__)

CommandRunner = Callable[[Sequence[str]], Iterable[bytes]]


class CollectorState(enum.Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class GPUSample:
    gpu_id: str
    name: str
    temperature_celsius: float
    memory_used_mb: float
    memory_total_mb: float
    usage_percent: float
    power_watts: float


def _to_float(value: Any) -> float:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return 0.0


def stream_command(args: Sequence[str]) -> Iterator[bytes]:
    """Yield the stdout lines of ``args``; raise if it exits with an error."""

    with subprocess.Popen(
        list(args), stdout=subprocess.PIPE, stderr=subprocess.DEVNULL
    ) as process:
        assert process.stdout is not None
        for line in process.stdout:
            yield line.rstrip(b"\r\n")
    if process.returncode:
        raise subprocess.CalledProcessError(process.returncode, list(args))


def probe_tool(tool: str) -> bool:
    """Return ``True`` when ``tool`` can be invoked and exits cleanly."""

    try:
        result = subprocess.run(
            [tool],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return result.returncode == 0


class GPUParser:
    """Turns one line of vendor tool output into GPU samples."""

    tool = ""

    def command(self) -> list[str]:
        raise NotImplementedError

    def decode(self, line: bytes) -> list[GPUSample]:
        """Return the samples carried by ``line``; empty if it holds none."""

        raise NotImplementedError


class NvidiaSmiParser(GPUParser):
    """CSV rows: index, name, temperature, memory used, memory total, usage, power."""

    tool = "nvidia-smi"
    query = "index,name,temperature.gpu,memory.used,memory.total,utilization.gpu,power.draw"

    def command(self) -> list[str]:
        return [
            self.tool,
            "-l",
            str(INTERVALS.nvidia_smi_loop),
            f"--query-gpu={self.query}",
            "--format=csv,noheader,nounits",
        ]

    def decode(self, line: bytes) -> list[GPUSample]:
        fields = line.decode("utf-8", errors="replace").split(", ")
        if len(fields) < 7:
            return []
        name = fields[1].strip()
        name = name.removeprefix("NVIDIA ").removesuffix(" Laptop GPU")
        return [
            GPUSample(
                gpu_id=fields[0].strip(),
                name=name,
                temperature_celsius=_to_float(fields[2]),
                # MiB reported, MB stored
                memory_used_mb=_to_float(fields[3]) / 1.024,
                memory_total_mb=_to_float(fields[4]) / 1.024,
                usage_percent=_to_float(fields[5]),
                power_watts=_to_float(fields[6]),
            )
        ]


class RocmSmiParser(GPUParser):
    """One JSON document per interval, keyed by card, string-encoded numbers."""

    tool = "rocm-smi"

    def command(self) -> list[str]:
        script = (
            "while true; do rocm-smi --showid --showtemp --showuse --showpower "
            "--showproductname --showmeminfo vram --json; "
            f"sleep {INTERVALS.rocm_smi_loop}; done"
        )
        return ["/bin/sh", "-c", script]

    def decode(self, line: bytes) -> list[GPUSample]:
        try:
            payload = json.loads(line)
        except ValueError:
            return []
        if not isinstance(payload, dict):
            return []
        samples: list[GPUSample] = []
        for card, info in payload.items():
            if not isinstance(info, dict):
                continue
            samples.append(
                GPUSample(
                    gpu_id=str(info.get("GUID") or card),
                    name=str(info.get("Card series", "")),
                    temperature_celsius=_to_float(info.get("Temperature (Sensor edge) (C)")),
                    memory_used_mb=two_decimals(
                        _to_float(info.get("VRAM Total Used Memory (B)")) / 1048576
                    ),
                    memory_total_mb=two_decimals(
                        _to_float(info.get("VRAM Total Memory (B)")) / 1048576
                    ),
                    usage_percent=_to_float(info.get("GPU use (%)")),
                    power_watts=_to_float(info.get("Current Socket Graphics Package Power (W)")),
                )
            )
        return samples


PARSERS: dict[str, type[GPUParser]] = {
    NvidiaSmiParser.tool: NvidiaSmiParser,
    RocmSmiParser.tool: RocmSmiParser,
}


def detect_vendors(probe: Callable[[str], bool] = probe_tool) -> list[str]:
    vendors = [tool for tool in PARSERS if probe(tool)]
    if not vendors:
        raise GPUUnavailableError("no GPU found - install nvidia-smi or rocm-smi")
    return vendors


class GPUCollector:
    """Runs one vendor tool and restarts it after transient failures.

    A run that never yields a valid line means the tool does not work on this
    host and the collector stops for good.
    """

    def __init__(
        self,
        name: str,
        command: Sequence[str],
        parse_line: Callable[[bytes], bool],
        *,
        runner: CommandRunner = stream_command,
        sleep: Callable[[float], None] = time.sleep,
        restart_delay: float = INTERVALS.gpu_restart_delay,
    ) -> None:
        self.name = name
        self.command = list(command)
        self.state = CollectorState.NOT_STARTED
        self.restarts = 0
        self._parse_line = parse_line
        self._runner = runner
        self._sleep = sleep
        self._restart_delay = restart_delay
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self.run, name=f"gpu-{self.name}", daemon=True)
        self._thread.start()

    def run(self) -> CollectorState:
        while True:
            self.state = CollectorState.RUNNING
            try:
                self.collect()
            except NoValidGPUDataError:
                logger.warning("%s found no valid GPU data, stopping", self.name)
                self.state = CollectorState.STOPPED
                return self.state
            except Exception as exc:  # any other failure is retried
                logger.warning("%s failed, restarting: %s", self.name, exc)
            else:
                logger.warning("%s exited, restarting", self.name)
            self.state = CollectorState.RESTARTING
            self.restarts += 1
            self._sleep(self._restart_delay)

    def collect(self) -> None:
        has_valid_data = False
        try:
            for line in self._runner(self.command):
                if self._parse_line(line):
                    has_valid_data = True
        except subprocess.CalledProcessError:
            if not has_valid_data:
                raise NoValidGPUDataError(self.name) from None
            raise
        if not has_valid_data:
            raise NoValidGPUDataError(self.name)


class GPUManager:
    """Owns the accumulator map shared by the vendor collectors."""

    def __init__(
        self,
        *,
        probe: Callable[[str], bool] = probe_tool,
        runner: CommandRunner = stream_command,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._lock = threading.Lock()
        self._accumulators: dict[str, GPUAccumulator] = {}
        self.collectors: list[GPUCollector] = []
        for tool in detect_vendors(probe):
            parser = PARSERS[tool]()
            self.collectors.append(
                GPUCollector(
                    tool,
                    parser.command(),
                    partial(self.parse_line, parser),
                    runner=runner,
                    sleep=sleep,
                )
            )

    def start(self) -> None:
        for collector in self.collectors:
            collector.start()

    def parse_line(self, parser: GPUParser, line: bytes) -> bool:
        samples = parser.decode(line)
        if not samples:
            return False
        with self._lock:
            for sample in samples:
                accumulator = self._accumulators.get(sample.gpu_id)
                if accumulator is None:
                    accumulator = GPUAccumulator(name=sample.name)
                    self._accumulators[sample.gpu_id] = accumulator
                accumulator.add_sample(
                    sample.temperature_celsius,
                    sample.memory_used_mb,
                    sample.memory_total_mb,
                    sample.usage_percent,
                    sample.power_watts,
                )
        return True

    def get_current_data(self) -> dict[str, GPUReading]:
        """Average the samples gathered since the last call and reset the sums."""

        with self._lock:
            name_counts: dict[str, int] = {}
            for accumulator in self._accumulators.values():
                name_counts[accumulator.name] = name_counts.get(accumulator.name, 0) + 1

            readings: dict[str, GPUReading] = {}
            for gpu_id, gpu in self._accumulators.items():
                count = gpu.sample_count or 1
                gpu.temperature_celsius = two_decimals(gpu.temperature_celsius)
                gpu.memory_used_mb = two_decimals(gpu.memory_used_mb)
                gpu.memory_total_mb = two_decimals(gpu.memory_total_mb)
                gpu.usage_percent_sum = two_decimals(gpu.usage_percent_sum / count)
                gpu.power_watts_sum = two_decimals(gpu.power_watts_sum / count)
                # the averages become the sums of a one-sample interval
                gpu.sample_count = 1

                name = gpu.name
                if name_counts[name] > 1:
                    name = f"{name} {gpu_id}"
                readings[gpu_id] = GPUReading(
                    name=name,
                    temperature_celsius=gpu.temperature_celsius,
                    memory_used_mb=gpu.memory_used_mb,
                    memory_total_mb=gpu.memory_total_mb,
                    usage_percent=gpu.usage_percent_sum,
                    power_watts=gpu.power_watts_sum,
                )
            return readings
