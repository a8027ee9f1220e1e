"""Unit tests for snapshot assembly."""

import json
from unittest import mock

import pytest

from host_agent.agent import Aggregator
from host_agent.core import ContainerStatsError, GPUUnavailableError
from host_agent.data import ContainerStatsCollector, DiskResolver, NetworkAccountant
from host_agent.models import ContainerStat, GPUReading, SystemInfo

from conftest import DiskIO, NetIO, Partition, Usage


class FakeSystemReader:
    def system_info(self):
        return SystemInfo(
            hostname="node-1",
            kernel_version="6.8.0",
            cpu_model="Test CPU",
            cores=4,
            threads=8,
            agent_version="0.9.1",
        )

    def uptime(self):
        return 3600.0

    def read(self, stats):
        stats.cpu_percent = 12.5
        stats.memory_total_bytes = 1000
        stats.memory_used_bytes = 250
        stats.memory_percent = 25.0


class FakeContainers:
    def __init__(self, result=None, error=None, podman=False):
        self.result = result or {}
        self.error = error
        self.is_podman = podman

    def get_container_stats(self):
        if self.error is not None:
            raise self.error
        return self.result


class FakeGPU:
    def __init__(self, readings):
        self.readings = readings
        self.started = False

    def start(self):
        self.started = True

    def get_current_data(self):
        return self.readings


def no_gpu():
    raise GPUUnavailableError("no GPU found")


class Host:
    """Mutable disk and network counters shared by the fakes."""

    def __init__(self):
        self.partitions = [Partition("/dev/sda1", "/", "ext4", "rw")]
        self.disks = {"sda1": DiskIO(1000, 0), "sdb1": DiskIO(0, 0)}
        self.nics = {"eth0": NetIO(1000, 1000)}
        self.totals = {"/": 4000, "/extra-filesystems/sdb1": 8000, "/extra-filesystems/sdc1": 0}

    def disk_usage(self, path):
        if path not in self.totals:
            raise FileNotFoundError(path)
        total = self.totals[path]
        return Usage(total=total, used=total // 4, free=total - total // 4, percent=25.0)


@pytest.fixture
def host():
    return Host()


def make_aggregator(config, clock, host, *, containers=None, gpu_factory=no_gpu, extra_dirs=()):
    resolver = DiskResolver(
        config,
        partitions=lambda: host.partitions,
        io_counters=lambda: host.disks,
        disk_usage=host.disk_usage,
        list_extra_dir=lambda path: list(extra_dirs),
        clock=clock,
    )
    accountant = NetworkAccountant(config, io_counters=lambda: dict(host.nics), clock=clock)
    return Aggregator(
        config,
        disk_resolver=resolver,
        network_accountant=accountant,
        container_collector=containers or FakeContainers(),
        system_reader=FakeSystemReader(),
        gpu_manager_factory=gpu_factory,
        disk_io_counters=lambda: host.disks,
        disk_usage=host.disk_usage,
        clock=clock,
    )


class TestAggregator:
    """Tests for Aggregator.gather_stats."""

    def test_rates_between_polls(self, config, clock, host):
        aggregator = make_aggregator(config, clock, host)

        clock.advance(10)
        host.disks["sda1"] = DiskIO(1500, 2000)
        host.nics["eth0"] = NetIO(2000, 6000)
        snapshot = aggregator.gather_stats()

        stats = snapshot.stats
        assert stats.disk_read_bytes_per_sec == pytest.approx(50.0)
        assert stats.disk_write_bytes_per_sec == pytest.approx(200.0)
        assert stats.network_sent_bytes_per_sec == pytest.approx(100.0)
        assert stats.network_recv_bytes_per_sec == pytest.approx(500.0)
        assert stats.disk_total_bytes == 4000
        assert stats.disk_percent == 25.0
        assert snapshot.info.bandwidth_bytes_per_sec == 600.0
        assert snapshot.info.cpu_percent == 12.5
        assert snapshot.info.uptime_seconds == 3600.0
        assert snapshot.timestamp == clock.now

    def test_without_gpu_tool(self, config, clock, host):
        snapshot = make_aggregator(config, clock, host).gather_stats()

        assert snapshot.stats.gpus == {}
        assert snapshot.info.gpu_percent is None

    def test_gpu_readings(self, config, clock, host):
        readings = {
            "0": GPUReading("RTX A4000", 60.0, 1000.0, 16000.0, 30.0, 70.0),
            "1": GPUReading("RTX A2000", 50.0, 500.0, 6000.0, 80.0, 40.0),
        }
        gpu = FakeGPU(readings)
        aggregator = make_aggregator(config, clock, host, gpu_factory=lambda: gpu)

        snapshot = aggregator.gather_stats()

        assert gpu.started
        assert snapshot.stats.gpus == readings
        assert snapshot.info.gpu_percent == 80.0

    def test_container_errors_leave_empty_map(self, config, clock, host):
        containers = FakeContainers(error=ContainerStatsError("engine unreachable"))
        aggregator = make_aggregator(config, clock, host, containers=containers)

        snapshot = aggregator.gather_stats()

        assert snapshot.containers == {}
        assert aggregator.provider_failures["containers"] == 1

    def test_containers_and_podman(self, config, clock, host):
        stat = ContainerStat(name="web", cpu_percent=3.0, memory_mb=120.0)
        containers = FakeContainers(result={"abc123def456": stat}, podman=True)

        snapshot = make_aggregator(config, clock, host, containers=containers).gather_stats()

        assert snapshot.containers == {"abc123def456": stat}
        assert snapshot.info.podman

    def test_extra_filesystems(self, config, clock, host):
        host.partitions.append(Partition("/dev/sdb1", "/extra-filesystems/sdb1", "ext4", "rw"))
        host.partitions.append(Partition("/dev/sdc1", "/extra-filesystems/sdc1", "ext4", "rw"))
        host.disks["sdc1"] = DiskIO(0, 0)
        aggregator = make_aggregator(config, clock, host)

        snapshot = aggregator.gather_stats()

        # zero-capacity filesystems are left out, the root is never included
        assert list(snapshot.stats.extra_fs) == ["sdb1"]
        assert snapshot.stats.extra_fs["sdb1"].disk_total_bytes == 8000
        assert snapshot.stats.extra_fs["sdb1"] is not aggregator.filesystems["sdb1"]

    def test_implausible_disk_rate_reseeds(self, config, clock, host):
        aggregator = make_aggregator(config, clock, host)

        clock.advance(1)
        host.disks["sda1"] = DiskIO(10**15, 0)
        stats = aggregator.gather_stats().stats
        assert stats.disk_read_bytes_per_sec == 0.0

        clock.advance(10)
        host.disks["sda1"] = DiskIO(10**15 + 1000, 0)
        stats = aggregator.gather_stats().stats
        assert stats.disk_read_bytes_per_sec == pytest.approx(100.0)

    def test_failing_provider_does_not_abort(self, config, clock, host):
        aggregator = make_aggregator(config, clock, host)

        def broken(stats):
            raise RuntimeError("boom")

        aggregator._system.read = broken
        snapshot = aggregator.gather_stats()

        assert snapshot.stats.cpu_percent == 0.0
        assert snapshot.stats.disk_total_bytes == 4000
        assert aggregator.provider_failures["system"] == 1

    def test_snapshot_is_json_serialisable(self, config, clock, host):
        containers = FakeContainers(result={"abc123def456": ContainerStat(name="web", prev_cpu_total=5)})
        aggregator = make_aggregator(config, clock, host, containers=containers)

        payload = json.loads(json.dumps(aggregator.snapshot()))

        assert payload["info"]["hostname"] == "node-1"
        assert payload["stats"]["memory_percent"] == 25.0
        assert "prev_cpu_total" not in payload["containers"]["abc123def456"]

    def test_unexpected_container_failure_leaves_empty_map(self, config, clock, host):
        containers = FakeContainers(error=RuntimeError("engine returned nonsense"))
        aggregator = make_aggregator(config, clock, host, containers=containers)

        snapshot = aggregator.gather_stats()

        assert snapshot.containers == {}
        assert aggregator.provider_failures["containers"] == 1

    def test_malformed_container_stats_do_not_escape(self, config, clock, host):
        container = mock.Mock(id="f" * 64, attrs={"Names": ["/odd"]})
        container.stats.return_value = {"memory_stats": {"usage": 1000}, "cpu_stats": {"cpu_usage": 5}}
        client = mock.Mock()
        client.version.return_value = {}
        client.containers.list.return_value = [container]
        collector = ContainerStatsCollector(config, client_factory=lambda: client, clock=clock)
        aggregator = make_aggregator(config, clock, host, containers=collector)

        snapshot = aggregator.gather_stats()

        assert snapshot.containers == {}
        assert container.stats.call_count == 2

    def test_reseed_keeps_tracking_devices_missing_from_one_read(self, config, clock, host):
        host.partitions.append(Partition("/dev/sdb1", "/extra-filesystems/sdb1", "ext4", "rw"))
        aggregator = make_aggregator(config, clock, host)

        clock.advance(1)
        host.disks = {"sda1": DiskIO(10**15, 0)}
        aggregator.gather_stats()
        assert aggregator.filesystems["sdb1"].tracks_io

        clock.advance(10)
        host.disks = {"sda1": DiskIO(10**15 + 1000, 0), "sdb1": DiskIO(1100, 0)}
        snapshot = aggregator.gather_stats()

        assert snapshot.stats.disk_read_bytes_per_sec == pytest.approx(100.0)
        assert snapshot.stats.extra_fs["sdb1"].read_bytes_per_sec == pytest.approx(100.0)
