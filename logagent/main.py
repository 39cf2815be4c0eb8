#!/usr/bin/env python3
"""Logging Agent entry point."""

import argparse
import logging
import signal
import sys

from logagent.agent import Agent, StartupError, WorkerError
from logagent.config import DEFAULT_CONFIG_PATH, ConfigError, load_config
from logagent.metrics import MetricsRecorder
from logagent.sinks import SinkInitError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Node-local log shipping agent")
    parser.add_argument(
        "--config", default=None,
        help=f"Path to YAML config file (default: $CONFIG_PATH or {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--log-level", default=None,
        help="Override the agent log level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser


def main(argv=None) -> int:
    args = build_cli_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logger.info("Logging Agent is starting...")

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error("Failed to initialize app config: %s", e)
        return EXIT_CONFIG

    level = (args.log_level or config.agent.log_level).upper()
    logging.getLogger().setLevel(getattr(logging, level, logging.INFO))

    metrics = MetricsRecorder()
    try:
        agent = Agent(config, metrics)
    except SinkInitError as e:
        logger.error("Failed to initialize agent: %s", e)
        return EXIT_FAILURE

    def _signal_handler(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        agent.request_stop()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        agent.run()
    except StartupError as e:
        logger.error("Agent failed to start: %s", e)
        return EXIT_FAILURE
    except WorkerError as e:
        logger.error("Agent error: %s", e)
        return EXIT_FAILURE

    logger.info("Logging Agent stopped")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
