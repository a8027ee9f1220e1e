"""Remote monitoring agent serving host resource snapshots."""

from __future__ import annotations

__all__ = [
    "Aggregator",
    "AgentConfig",
    "create_app",
    "__version__",
]

from .agent import Aggregator  # noqa: E402
from .core import AGENT_VERSION as __version__  # noqa: E402
from .core import AgentConfig  # noqa: E402
from .web import create_app  # noqa: E402
