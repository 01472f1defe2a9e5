#!/usr/bin/env python3
"""
HH-4208SD Thermocouple Logger - Main Entry Point
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .controllers.acquisition import AcquisitionError, AcquisitionSupervisor
from .controllers.port_discovery import (
    DEFAULT_PROBE_TIMEOUT,
    DiscoveryError,
    auto_detect_dataloggers,
    descriptors_from_detection,
)
from .models.channel_store import ChannelSnapshot
from .models.config import (
    AppConfig,
    ConfigError,
    GlobalSettings,
    is_default_config,
    load_config,
    resolve_config_path,
)
from .utils.logger import setup_logger

logger = logging.getLogger(__name__)

# Give probed ports time to be released before the real opens
POST_DETECTION_DELAY = 1.0


def parse_args(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="thermologger",
        description="HH-4208SD Thermocouple Logger - multi-datalogger temperature acquisition",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                          # Load ./config.json or auto-detect
  %(prog)s -f lab.json              # Use a specific configuration file
  %(prog)s --detect                 # List detected dataloggers and exit
  %(prog)s --summary-interval 0     # Run without periodic summaries
"""
    )

    parser.add_argument(
        "-f", "--config",
        metavar="FILE",
        help="Configuration file (default: $THERMOLOGGER_CONFIG or ./config.json)"
    )

    parser.add_argument(
        "--detect",
        action="store_true",
        help="Auto-detect dataloggers, print them and exit"
    )

    parser.add_argument(
        "--detect-timeout",
        type=float,
        default=DEFAULT_PROBE_TIMEOUT,
        metavar="SECONDS",
        help=f"How long to listen on each candidate port (default: {DEFAULT_PROBE_TIMEOUT:.0f})"
    )

    parser.add_argument(
        "--summary-interval",
        type=float,
        default=10.0,
        metavar="SECONDS",
        help="Log active channels every N seconds, 0 to disable (default: 10)"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )

    return parser.parse_args(argv)


async def resolve_config(args) -> AppConfig:
    """
    Load the configuration, auto-detecting dataloggers when it is missing,
    invalid or the placeholder default.

    Raises:
        DiscoveryError: If auto-detection finds nothing
    """
    path = resolve_config_path(args.config)
    settings = GlobalSettings()
    try:
        config = load_config(path)
        if not is_default_config(config):
            return config
        settings = config.global_settings
        logger.info("Default configuration found, auto-detecting dataloggers")
    except ConfigError as e:
        logger.warning(f"{e}")
        logger.info("Auto-detecting dataloggers")

    detected = await auto_detect_dataloggers(timeout=args.detect_timeout)
    descriptors = descriptors_from_detection(detected)
    await asyncio.sleep(POST_DETECTION_DELAY)
    return AppConfig(dataloggers=descriptors, global_settings=settings)


def format_summary(snapshots: List[ChannelSnapshot]) -> List[str]:
    """One line per connected, non-zero channel."""
    lines = []
    for snapshot in snapshots:
        if not snapshot.connected or snapshot.temperature == 0.0:
            continue
        lines.append(
            f"  {snapshot.datalogger_name:<14} {snapshot.display_name:<16} "
            f"{snapshot.temperature:>7.1f}  ({snapshot.thermocouple_type}, {snapshot.sample_count} samples)"
        )
    return lines


async def _summary_ticker(supervisor: AcquisitionSupervisor, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        lines = format_summary(supervisor.snapshot())
        healthy = sum(1 for h in supervisor.health() if h.is_healthy)
        logger.info(f"Active channels: {len(lines)} ({healthy} healthy dataloggers)")
        for line in lines:
            logger.info(line)


async def run(args) -> int:
    """Acquire until cancelled. Returns the process exit code."""
    try:
        config = await resolve_config(args)
    except DiscoveryError as e:
        logger.error(f"{e}")
        for hint in e.hints:
            logger.error(f"  - {hint}")
        return 1

    supervisor = AcquisitionSupervisor(config)
    try:
        await supervisor.start()
    except AcquisitionError as e:
        logger.critical(f"{e} - cannot start acquisition")
        return 1

    ticker = None
    if args.summary_interval > 0:
        ticker = asyncio.create_task(_summary_ticker(supervisor, args.summary_interval))
    try:
        await asyncio.Event().wait()
    finally:
        if ticker is not None:
            ticker.cancel()
        await supervisor.stop()
    return 0


async def detect(args) -> int:
    """Print detected dataloggers. Returns the process exit code."""
    detected = await auto_detect_dataloggers(timeout=args.detect_timeout)
    if not detected:
        print("No dataloggers detected")
        return 1

    for number, datalogger in enumerate(detected, start=1):
        channels = ", ".join(
            f"T{c.channel_number}={c.temperature:.1f}" for c in datalogger.channels
        )
        print(f"Datalogger {number}: {datalogger.path} (score {datalogger.score}) {channels}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point."""
    args = parse_args(argv)

    setup_logger(logging.DEBUG if args.verbose else logging.INFO)
    logger.info("Starting HH-4208SD thermocouple logger...")

    try:
        return asyncio.run(detect(args) if args.detect else run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 0


if __name__ == "__main__":
    sys.exit(main())
