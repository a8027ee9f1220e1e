"""Configuration values for the host agent."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .errors import ConfigurationError

AGENT_NAME = "host-agent"
AGENT_VERSION = "0.9.1"
DEFAULT_LISTEN_ADDRESS = ":45876"
EXTRA_FILESYSTEMS_DIR = "/extra-filesystems"


@dataclass(frozen=True)
class CollectionIntervals:
    """Timing of the background collectors (in seconds)."""

    gpu_restart_delay: float = 5.0
    nvidia_smi_loop: int = 4
    rocm_smi_loop: float = 4.3
    docker_timeout: float = 2.1


@dataclass(frozen=True)
class RateLimits:
    """Ceilings above which a computed rate is treated as a counter glitch."""

    disk_bytes_per_sec: float = 50e9
    network_bytes_per_sec: float = 10e9
    container_network_bytes_per_sec: float = 5e9


def _split_list(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class AgentConfig:
    """Start-up configuration handed to the resolver, accountant and collectors.

    ``None`` for an allow-list means "no allow-list configured", which is not
    the same as an empty one.
    """

    root_filesystem_hint: str = ""
    extra_filesystems: tuple[str, ...] = ()
    extra_filesystems_dir: str = EXTRA_FILESYSTEMS_DIR
    network_interface_allowlist: frozenset[str] | None = None
    memory_calc: str = ""
    sensor_allowlist: frozenset[str] | None = None
    docker_host: str | None = None
    docker_timeout: float = CollectionIntervals.docker_timeout
    listen_address: str = DEFAULT_LISTEN_ADDRESS
    log_level: str = "info"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AgentConfig":
        env = os.environ if environ is None else environ

        nics = env.get("NICS")
        sensors = env.get("SENSORS")

        port = env.get("PORT")
        listen_address = DEFAULT_LISTEN_ADDRESS
        if port:
            # allow a bare port or a full "host:port" address
            listen_address = port if ":" in port else f":{port}"

        timeout = CollectionIntervals.docker_timeout
        raw_timeout = env.get("DOCKER_TIMEOUT")
        if raw_timeout:
            try:
                timeout = float(raw_timeout)
            except ValueError as exc:
                raise ConfigurationError(f"invalid DOCKER_TIMEOUT: {raw_timeout!r}") from exc

        return cls(
            root_filesystem_hint=env.get("FILESYSTEM", ""),
            extra_filesystems=_split_list(env.get("EXTRA_FILESYSTEMS")),
            network_interface_allowlist=(
                frozenset(_split_list(nics)) if nics is not None else None
            ),
            memory_calc=env.get("MEM_CALC", ""),
            sensor_allowlist=(
                frozenset(_split_list(sensors)) if sensors is not None else None
            ),
            docker_host=env.get("DOCKER_HOST") or None,
            docker_timeout=timeout,
            listen_address=listen_address,
            log_level=env.get("LOG_LEVEL", "info").lower(),
        )


def load_key(environ: Mapping[str, str] | None = None) -> bytes:
    """Return the transport key from ``KEY`` or the file named by ``KEY_FILE``."""

    env = os.environ if environ is None else environ
    key = env.get("KEY", "").encode("utf-8")
    if key:
        return key
    key_file = env.get("KEY_FILE")
    if not key_file:
        raise ConfigurationError("KEY or KEY_FILE must be set")
    try:
        key = Path(key_file).read_bytes().strip()
    except OSError as exc:
        raise ConfigurationError(f"cannot read KEY_FILE {key_file}: {exc}") from exc
    if not key:
        raise ConfigurationError(f"KEY_FILE {key_file} is empty")
    return key


INTERVALS = CollectionIntervals()
LIMITS = RateLimits()
