"""Command-line entry point for the host agent."""

from __future__ import annotations

import logging
import sys
from typing import Sequence

from host_agent.agent import Aggregator
from host_agent.core import AGENT_NAME, AGENT_VERSION, AgentConfig, ConfigurationError, load_key
from host_agent.web import create_app

logger = logging.getLogger("host_agent")

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def configure_logging(level_name: str) -> None:
    logging.basicConfig(
        level=_LOG_LEVELS.get(level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if args:
        if args[0] in ("-v", "--version"):
            print(f"{AGENT_NAME} {AGENT_VERSION}")
            return 0
        print(f"usage: {AGENT_NAME} [-v]", file=sys.stderr)
        return 2

    try:
        config = AgentConfig.from_env()
        key = load_key()
    except ConfigurationError as exc:
        print(f"{AGENT_NAME}: {exc}", file=sys.stderr)
        return 1

    configure_logging(config.log_level)
    logger.debug("%s %s", AGENT_NAME, AGENT_VERSION)

    aggregator = Aggregator(config)
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("Stats: %s", aggregator.snapshot())

    try:
        server = create_app(aggregator.snapshot, key, config.listen_address)
    except (ConfigurationError, OSError) as exc:
        logger.error("Cannot start server on %s: %s", config.listen_address, exc)
        return 1

    logger.info("Listening on %s", server.server_address())
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Stopping agent")
    return 0


if __name__ == "__main__":
    sys.exit(main())
