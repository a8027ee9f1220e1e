"""Per-container resource usage from the Docker (or Podman) Engine API."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from typing import Any, Callable, Mapping

import docker
import requests
from docker.errors import DockerException

from host_agent.core import LIMITS, AgentConfig, ContainerStatsError
from host_agent.models import ContainerStat

from .rates import delta_rate, two_decimals

logger = logging.getLogger(__name__)

_MAX_WORKERS = 8
_REQUEST_ERRORS = (DockerException, requests.RequestException, OSError, ValueError)
# a stats body of an unexpected shape fails only its own container
_PAYLOAD_ERRORS = (AttributeError, KeyError, TypeError)

ClientFactory = Callable[[], Any]


def docker_client(config: AgentConfig) -> docker.DockerClient:
    """Connect to ``DOCKER_HOST`` or, when unset, the engine ``from_env`` finds."""

    if config.docker_host:
        return docker.DockerClient(base_url=config.docker_host, timeout=config.docker_timeout)
    return docker.from_env(timeout=config.docker_timeout)


def is_podman(version: Mapping[str, Any]) -> bool:
    components = version.get("Components") or []
    return any("podman" in str(component.get("Name", "")).lower() for component in components)


def _container_name(container: Any) -> str:
    names = (getattr(container, "attrs", None) or {}).get("Names")
    if names:
        return str(names[0]).lstrip("/")
    return container.name or container.id[:12]


class ContainerStatsCollector:
    """Tracks CPU and network counters per container between polls.

    The engine connection is opened on first use and reopened after a failed
    listing, so an engine started after the agent is picked up.
    """

    def __init__(
        self,
        config: AgentConfig,
        *,
        client_factory: ClientFactory | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client_factory = client_factory or (lambda: docker_client(config))
        self._client: Any = None
        self._clock = clock
        self._lock = threading.Lock()
        self._stats: dict[str, ContainerStat] = {}
        self.is_podman = False

    def _connect(self) -> Any:
        if self._client is None:
            try:
                client = self._client_factory()
            except _REQUEST_ERRORS as exc:
                raise ContainerStatsError(f"cannot connect to container engine: {exc}") from exc
            try:
                self.is_podman = is_podman(client.version())
            except _REQUEST_ERRORS as exc:
                logger.debug("Engine version unavailable: %s", exc)
            self._client = client
        return self._client

    def get_container_stats(self) -> dict[str, ContainerStat]:
        client = self._connect()
        try:
            containers = client.containers.list(sparse=True)
        except _REQUEST_ERRORS as exc:
            self._client = None
            raise ContainerStatsError(f"listing containers failed: {exc}") from exc

        listed: dict[str, Any] = {}
        for container in containers:
            container_id = str(container.id or "")[:12]
            if container_id:
                listed[container_id] = container

        with self._lock:
            for container_id in list(self._stats):
                if container_id not in listed:
                    del self._stats[container_id]

        failed = self._update_all(listed)
        if failed:
            # the engine sometimes fails a stats call under parallel load
            logger.debug("Retrying %d failed containers", len(failed))
            failed = self._update_all({cid: listed[cid] for cid in failed})

        with self._lock:
            return {
                container_id: replace(stat)
                for container_id, stat in self._stats.items()
                if container_id in listed and container_id not in failed
            }

    def _update_all(self, containers: Mapping[str, Any]) -> set[str]:
        failed: set[str] = set()
        if not containers:
            return failed
        workers = min(_MAX_WORKERS, len(containers))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="container-stats") as pool:
            futures = {
                pool.submit(self._update_container, container_id, container): container_id
                for container_id, container in containers.items()
            }
            for future in as_completed(futures):
                container_id = futures[future]
                try:
                    future.result()
                except (ContainerStatsError, *_REQUEST_ERRORS, *_PAYLOAD_ERRORS) as exc:
                    logger.debug("Container %s stats failed: %s", container_id, exc)
                    with self._lock:
                        self._stats.pop(container_id, None)
                    failed.add(container_id)
        return failed

    def _update_container(self, container_id: str, container: Any) -> None:
        name = _container_name(container)
        payload = container.stats(stream=False, one_shot=True)
        if not isinstance(payload, Mapping):
            raise ContainerStatsError(f"{name} - unexpected stats body")
        now = self._clock()

        with self._lock:
            stat = self._stats.get(container_id)
            if stat is None:
                stat = ContainerStat(name=name)
                self._stats[container_id] = stat
        update_container_stat(stat, name, payload, now)


def update_container_stat(stat: ContainerStat, name: str, payload: Mapping[str, Any], now: float) -> None:
    """Fold one ``/containers/{id}/stats`` response into ``stat``."""

    memory = payload.get("memory_stats") or {}
    usage = int(memory.get("usage") or 0)
    # a container stuck in a restart loop reports no memory
    if usage == 0:
        raise ContainerStatsError(f"{name} - no memory stats")
    memory_detail = memory.get("stats") or {}
    cache = int(memory_detail.get("inactive_file") or 0) or int(memory_detail.get("cache") or 0)
    used_memory = max(usage - cache, 0)

    cpu = payload.get("cpu_stats") or {}
    total_usage = int((cpu.get("cpu_usage") or {}).get("total_usage") or 0)
    system_usage = int(cpu.get("system_cpu_usage") or 0)
    cpu_delta = total_usage - stat.prev_cpu_total
    system_delta = system_usage - stat.prev_cpu_system
    cpu_percent = 0.0
    if cpu_delta > 0 and system_delta > 0:
        cpu_percent = cpu_delta / system_delta * 100
    if cpu_percent > 100:
        raise ContainerStatsError(f"{name} cpu percent greater than 100: {cpu_percent}")
    stat.prev_cpu_total = total_usage
    stat.prev_cpu_system = system_usage

    total_sent = 0
    total_recv = 0
    for network in (payload.get("networks") or {}).values():
        total_sent += int(network.get("tx_bytes") or 0)
        total_recv += int(network.get("rx_bytes") or 0)

    sent_rate = 0.0
    recv_rate = 0.0
    # the first sample only establishes the baseline
    if stat.prev_net_time:
        elapsed = now - stat.prev_net_time
        sent_rate = delta_rate(stat.prev_net_sent, total_sent, elapsed)
        recv_rate = delta_rate(stat.prev_net_recv, total_recv, elapsed)
        if max(sent_rate, recv_rate) > LIMITS.container_network_bytes_per_sec:
            logger.warning("Invalid network stats for container %s, resetting", name)
            sent_rate = recv_rate = 0.0
    stat.prev_net_sent = total_sent
    stat.prev_net_recv = total_recv
    stat.prev_net_time = now

    stat.name = name
    stat.cpu_percent = two_decimals(cpu_percent)
    stat.memory_mb = two_decimals(used_memory / 1048576)
    stat.network_sent_bytes_per_sec = sent_rate
    stat.network_recv_bytes_per_sec = recv_rate
