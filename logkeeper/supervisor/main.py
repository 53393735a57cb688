#!/usr/bin/env python3
"""
Command-line entry point for LogKeeper.

Usage:
    # Capture a container's output into a rotated stream
    docker logs -f wiki 2>&1 | logkeeper run --stream wiki

    # Show segments and space used for every configured stream
    logkeeper --config stack.yaml status

    # Rotate now, or apply retention now
    logkeeper rotate --stream db
    logkeeper sweep --stream db
"""

import argparse
import json
import signal
import sys
from typing import List, Optional

from logkeeper.core.errors import LogKeeperError
from logkeeper.core.events import EventBus, SweepResult
from logkeeper.supervisor.supervisor import LogStreamSupervisor
from logkeeper.utils.config import Config, load_config
from logkeeper.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="logkeeper",
        description="LogKeeper - size-based log rotation and retention for container services",
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="YAML configuration file merged over the defaults",
    )

    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Directory holding one sub-directory per stream (overrides config)",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (overrides config)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Append stdin to a stream until EOF")
    run.add_argument("--stream", required=True, help="Stream id")

    status = subparsers.add_parser("status", help="Print segments and space used as JSON")
    status.add_argument("--stream", action="append", help="Stream id (repeatable; default all configured)")

    rotate = subparsers.add_parser("rotate", help="Force-rotate a stream")
    rotate.add_argument("--stream", required=True, help="Stream id")

    sweep = subparsers.add_parser("sweep", help="Apply retention to a stream")
    sweep.add_argument("--stream", required=True, help="Stream id")

    return parser.parse_args(argv)


def build_supervisor(
    config: Config,
    stream_ids: List[str],
    event_bus: Optional[EventBus] = None,
) -> LogStreamSupervisor:
    """Create a supervisor with the given streams registered from configuration."""
    supervisor = LogStreamSupervisor(
        data_dir=config.get("data_dir", "./logs"),
        event_bus=event_bus,
    )

    try:
        for stream_id in stream_ids:
            supervisor.register(stream_id, config.stream_options(stream_id))
    except Exception:
        supervisor.close()
        raise

    return supervisor


def run_stream(supervisor: LogStreamSupervisor, stream_id: str) -> int:
    """Copy stdin into a stream line by line."""
    stopping = False

    def handle_signal(signum, frame):
        nonlocal stopping
        logger.info("Received signal, finishing", signal=signum)
        stopping = True

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGTERM, signal.SIGINT)}

    lines = 0
    try:
        for line in sys.stdin.buffer:
            try:
                supervisor.write(stream_id, line)
            except LogKeeperError as e:
                # Appended but not rotated; the next write retries the rotation
                logger.error("Write failed", stream_id=stream_id, error=str(e))
            lines += 1

            if stopping:
                break
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    supervisor.wait_idle(stream_id, timeout=30.0)
    logger.info("Input finished", stream_id=stream_id, lines=lines)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    config = load_config(args.config)
    if args.data_dir:
        config.set("data_dir", args.data_dir)
    if args.log_level:
        config.set("logging.level", args.log_level)

    configure_logging(
        log_level=config.get("logging.level", "INFO"),
        log_format=config.get("logging.format", "json"),
    )

    if args.command == "status":
        stream_ids = args.stream or config.stream_ids()
    else:
        stream_ids = [args.stream]

    event_bus = EventBus()
    swept: List[int] = []

    def collect_sweeps(event) -> None:
        if isinstance(event, SweepResult):
            swept.extend(event.deleted_ids)

    if args.command == "sweep":
        # Registration queues a startup sweep, so collect from the start
        event_bus.subscribe(collect_sweeps)

    try:
        supervisor = build_supervisor(config, stream_ids, event_bus)
    except (LogKeeperError, ValueError) as e:
        logger.error("Invalid configuration", error=str(e))
        return 2

    try:
        with supervisor:
            if args.command == "run":
                return run_stream(supervisor, args.stream)

            if args.command == "rotate":
                event = supervisor.force_rotate(args.stream)
                supervisor.wait_idle(args.stream, timeout=60.0)
                print(json.dumps({"rotated": event.rotated.to_dict()}, indent=2))
                return 0

            if args.command == "sweep":
                supervisor.sweep(args.stream)
                supervisor.wait_idle(args.stream, timeout=60.0)
                print(json.dumps({"deleted": swept}, indent=2))
                return 0

            # Registration queues a startup sweep for recovered segments
            for stream_id in supervisor.streams():
                supervisor.wait_idle(stream_id, timeout=10.0)

            print(json.dumps(supervisor.status(), indent=2))
            return 0

    except LogKeeperError as e:
        logger.error("Command failed", command=args.command, error=str(e))
        return 1

    except OSError as e:
        logger.error("Storage error", command=args.command, error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
