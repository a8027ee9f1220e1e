"""
Shared pytest fixtures for host_agent tests.

OS probes are replaced with small namedtuples shaped like the psutil results
the agent reads, so no test depends on the machine it runs on.
"""

from collections import namedtuple

import pytest

from host_agent.core import AgentConfig


Partition = namedtuple("Partition", "device mountpoint fstype opts")
DiskIO = namedtuple("DiskIO", "read_bytes write_bytes")
NetIO = namedtuple("NetIO", "bytes_sent bytes_recv")
Usage = namedtuple("Usage", "total used free percent")


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return AgentConfig()


@pytest.fixture
def usage_of():
    """
    Build a ``disk_usage`` replacement from a mountpoint -> total mapping.

    Unknown paths raise ``FileNotFoundError`` like ``psutil.disk_usage``.
    """
    def factory(totals):
        def disk_usage(path):
            if path not in totals:
                raise FileNotFoundError(path)
            total = totals[path]
            return Usage(total=total, used=total // 4, free=total - total // 4, percent=25.0)
        return disk_usage
    return factory
