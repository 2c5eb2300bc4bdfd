#!/usr/bin/env python3
# Copyright 2024 FANET Mesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
FANET Simulator - Main Entry Point

Runs a FANET scenario (UAVs plus ground control station) on the
in-memory discrete-event simulation and prints per-node statistics.

Usage:
    python -m fanet.main --config scenario.yaml
    python -m fanet.main --config scenario.yaml --log-level DEBUG
"""

import argparse
import logging
import signal
import sys
from pathlib import Path

from .config import load_config, create_default_config, ScenarioConfig
from .simulation import FanetSimulation

# Global flag for graceful shutdown
_shutdown_requested = False


def setup_logging(config: ScenarioConfig) -> logging.Logger:
    """Configure logging based on scenario configuration."""
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handlers = [logging.StreamHandler(sys.stdout)]

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format=log_format,
        handlers=handlers
    )

    return logging.getLogger("fanet")


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global _shutdown_requested
    _shutdown_requested = True
    logging.getLogger("fanet").info(
        f"Received signal {signum}, initiating graceful shutdown..."
    )


def shutdown_requested() -> bool:
    return _shutdown_requested


def format_summary(summary: dict) -> str:
    """Render the per-node statistics as a fixed-width table."""
    header = f"{'node':<16}{'role':<6}{'sent':>6}{'recv':>6}{'data_tx':>9}{'data_rx':>9}{'nbrs':>6}{'routes':>8}"
    lines = [header, "-" * len(header)]
    for address, s in summary.items():
        lines.append(
            f"{address:<16}{s['role']:<6}{s['sent']:>6}{s['received']:>6}"
            f"{s['data_sent']:>9}{s['data_received']:>9}{s['neighbors']:>6}{s['routes']:>8}"
        )
    return "\n".join(lines)


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="FANET mesh protocol simulator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m fanet.main --config scenario.yaml
  python -m fanet.main --config scenario.yaml --log-level DEBUG --duration 120
  python -m fanet.main --init-config --config scenario.yaml --uavs 5
        """
    )

    parser.add_argument(
        "--config", "-c",
        default="scenario.yaml",
        help="Path to scenario file (default: scenario.yaml)"
    )

    parser.add_argument(
        "--log-level", "-l",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level from config"
    )

    parser.add_argument(
        "--duration", "-d",
        type=float,
        help="Override simulated duration in seconds"
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a default scenario file"
    )

    parser.add_argument(
        "--uavs",
        type=int,
        default=4,
        help="Number of UAVs for --init-config (default: 4)"
    )

    args = parser.parse_args(argv)

    # Handle config initialization
    if args.init_config:
        if args.uavs < 1:
            parser.error("--uavs must be at least 1")
        config_path = create_default_config(args.config, num_uavs=args.uavs)
        print(f"Scenario file created: {config_path}")
        return 0

    # Load configuration
    try:
        config = load_config(args.config)
    except FileNotFoundError:
        print(f"Error: Scenario file not found: {args.config}")
        print("Use --init-config to create a new scenario file")
        return 1
    except Exception as e:
        print(f"Error loading configuration: {e}")
        return 1

    # Override log level if specified
    if args.log_level:
        config.log_level = args.log_level

    logger = setup_logging(config)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    simulation = FanetSimulation(config)

    try:
        summary = simulation.run(duration=args.duration, should_stop=shutdown_requested)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        simulation.stop()
        summary = simulation.summary()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1

    print(format_summary(summary))
    print(f"Delivery ratio: {simulation.delivery_ratio():.2f}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
