"""Network interface selection and aggregate throughput tracking."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping

import psutil

from host_agent.core import LIMITS, AgentConfig
from host_agent.models import NetworkIOState

from .rates import delta_rate

logger = logging.getLogger(__name__)

_VIRTUAL_PREFIXES = ("lo", "docker", "br-", "veth")


def _net_io_counters() -> Mapping[str, Any]:
    return psutil.net_io_counters(pernic=True) or {}


def skip_interface(name: str, counters: Any) -> bool:
    """Return ``True`` for loopback, bridge, veth and never-used interfaces."""

    if name.startswith(_VIRTUAL_PREFIXES):
        return True
    return counters.bytes_recv == 0 or counters.bytes_sent == 0


class NetworkAccountant:
    """Chooses the interfaces that count towards host bandwidth.

    The interface set is fixed at initialisation so that successive totals
    stay comparable; an interface that appears later is ignored.
    """

    def __init__(
        self,
        config: AgentConfig,
        *,
        io_counters: Callable[[], Mapping[str, Any]] = _net_io_counters,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._allowlist = config.network_interface_allowlist
        self._io_counters = io_counters
        self._clock = clock
        self.state = NetworkIOState()

    def initialize(self) -> NetworkIOState:
        state = NetworkIOState()
        try:
            counters = self._io_counters()
        except OSError as exc:
            logger.error("Error getting network I/O counters: %s", exc)
            self.state = state
            return state

        names: set[str] = set()
        for name, nic in counters.items():
            if self._allowlist is not None:
                if name not in self._allowlist:
                    continue
            elif skip_interface(name, nic):
                continue
            logger.info(
                "Detected network interface %s (sent=%d, recv=%d)",
                name,
                nic.bytes_sent,
                nic.bytes_recv,
            )
            state.cumulative_bytes_sent += int(nic.bytes_sent)
            state.cumulative_bytes_received += int(nic.bytes_recv)
            names.add(name)

        state.relevant_interface_names = frozenset(names)
        state.last_sample_time = self._clock()
        self.state = state
        return state

    reset = initialize

    def sample(self) -> tuple[float, float]:
        """Return ``(sent, received)`` bytes per second since the last sample.

        The stored totals always advance to the new reading. Implausible rates
        re-run interface selection and report zero for this interval.
        """

        state = self.state
        try:
            counters = self._io_counters()
        except OSError as exc:
            logger.warning("Error getting network I/O counters: %s", exc)
            return 0.0, 0.0

        now = self._clock()
        elapsed = now - state.last_sample_time
        bytes_sent = 0
        bytes_recv = 0
        for name, nic in counters.items():
            if name not in state.relevant_interface_names:
                continue
            bytes_sent += int(nic.bytes_sent)
            bytes_recv += int(nic.bytes_recv)

        sent_rate = delta_rate(state.cumulative_bytes_sent, bytes_sent, elapsed)
        recv_rate = delta_rate(state.cumulative_bytes_received, bytes_recv, elapsed)
        if max(sent_rate, recv_rate) > LIMITS.network_bytes_per_sec:
            logger.warning(
                "Invalid network stats (sent %.0f B/s, recv %.0f B/s), resetting",
                sent_rate,
                recv_rate,
            )
            self.reset()
            return 0.0, 0.0

        state.last_sample_time = now
        state.cumulative_bytes_sent = bytes_sent
        state.cumulative_bytes_received = bytes_recv
        return sent_rate, recv_rate
