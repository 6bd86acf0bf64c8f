"""CLI entry point for libratobuf.

Usage:
    python -m libratobuf <command> [options]

Commands:
    config validate [--config PATH]
    measure <key> <value> [--source S] [--config PATH] [--dry-run]
    increment <key> [value] [--source S] [--config PATH] [--dry-run]
    annotate <stream> --title TITLE [--description TEXT] [--source S]
    pipe [--increment] [--config PATH] [--dry-run] [--log-file PATH] [--verbose]
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn, TextIO

from libratobuf import __version__

if TYPE_CHECKING:
    from libratobuf.config import Config
    from libratobuf.engine import FlushResult, MetricsEngine

logger = logging.getLogger("libratobuf.cli")


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="libratobuf",
        description="Buffer, aggregate and submit metrics to Librato",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    # Options shared by every command that builds an engine
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="Path to config.toml")
    common.add_argument(
        "--dry-run",
        action="store_true",
        help="Aggregate but do not contact the backend",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # config command
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(
        dest="config_command", help="Config subcommands"
    )
    validate_parser = config_subparsers.add_parser(
        "validate", help="Validate configuration and show metric definitions"
    )
    validate_parser.add_argument("--config", help="Path to config.toml")

    # measure command
    measure_parser = subparsers.add_parser(
        "measure", parents=[common], help="Record one value and submit it"
    )
    measure_parser.add_argument("key", help="Metric key")
    measure_parser.add_argument("value", type=float, help="Measured value")
    measure_parser.add_argument("--source", help="Source tag")

    # increment command
    increment_parser = subparsers.add_parser(
        "increment", parents=[common], help="Increment a counter and submit it"
    )
    increment_parser.add_argument("key", help="Metric key")
    increment_parser.add_argument(
        "value", type=float, nargs="?", default=None, help="Increment (default 1)"
    )
    increment_parser.add_argument("--source", help="Source tag")

    # annotate command
    annotate_parser = subparsers.add_parser(
        "annotate", parents=[common], help="Create an annotation event"
    )
    annotate_parser.add_argument("stream", help="Annotation stream name")
    annotate_parser.add_argument("--title", required=True, help="Event title")
    annotate_parser.add_argument("--description", help="Event description")
    annotate_parser.add_argument("--source", help="Source tag")

    # pipe command
    pipe_parser = subparsers.add_parser(
        "pipe",
        parents=[common],
        help="Read '<key> <value> [source]' lines from stdin and submit them",
    )
    pipe_parser.add_argument(
        "--increment",
        action="store_true",
        help="Record lines as counter increments instead of measurements",
    )
    pipe_parser.add_argument("--log-file", help="Write logs to this file")
    pipe_parser.add_argument("--verbose", action="store_true", help="Debug logging")

    return parser


def load_config(args: argparse.Namespace) -> Config:
    """Load the configuration named on the command line."""
    from libratobuf.config import Config

    config_path = getattr(args, "config", None)
    if config_path:
        config = Config.load(Path(config_path))
    else:
        config = Config.load_or_default()

    if getattr(args, "dry_run", False):
        config = replace(config, skip_submit=True)
    return config


def build_engine(args: argparse.Namespace) -> MetricsEngine:
    """Build an engine from the command line options."""
    from libratobuf.engine import MetricsEngine

    return MetricsEngine(load_config(args))


def format_flush(result: FlushResult | None, dry_run: bool = False) -> str:
    """Describe the outcome of a flush cycle."""
    if result is None or not result.batch.gauges:
        return "Nothing to submit"

    lines = []
    verb = "Would submit" if dry_run else "Submitted"
    if result.submission is not None and not result.submission.success:
        verb = "Failed to submit"
    lines.append(f"{verb} {len(result.batch.gauges)} gauge(s):")
    for gauge in result.batch.gauges:
        lines.append(f"  {gauge['name']} = {gauge['value']:g} (source: {gauge['source']})")
    if result.submission is not None and result.submission.error is not None:
        lines.append(f"  Error: {result.submission.describe_error()}")
    return "\n".join(lines)


def cmd_config_validate(args: argparse.Namespace) -> int:
    """Handle 'config validate' command."""
    from libratobuf.definitions import MetricRegistry
    from libratobuf.errors import ConfigurationError

    try:
        config = load_config(args)
        registry = MetricRegistry(config.definitions, default_period_ms=config.period_ms)
    except FileNotFoundError as e:
        print(f"No configuration found: {e}", file=sys.stderr)
        return 1
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    print(f"Configuration valid: {config.config_path or '(defaults)'}")
    print(f"  Source: {config.source or '(hostname)'}")
    print(f"  Period: {config.period_ms}ms")
    if config.name_prefix:
        print(f"  Name prefix: {config.name_prefix}")
    if config.blacklist:
        print(f"  Blacklist: {', '.join(config.blacklist)}")
    print(f"  Submission: {'skipped' if config.skip_submit else config.api_url}")

    default = registry.default_definition
    print(f"  Default: client={default.client_agg_function}, server={default.server_agg_function}")
    print(f"  Definitions: {len(registry)}")
    for key, definition in registry.items():
        line = (
            f"    - {key}: client={definition.client_agg_function}, "
            f"server={definition.server_agg_function}, period={definition.period_ms}ms"
        )
        if definition.client_agg_function == "quantiles":
            line += f", quantiles={list(definition.quantiles)}"
        print(line)
    return 0


def cmd_record(args: argparse.Namespace) -> int:
    """Handle 'measure' and 'increment' commands."""
    from libratobuf.errors import ConfigurationError

    try:
        engine = build_engine(args)
    except (FileNotFoundError, ConfigurationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    try:
        if args.command == "increment":
            recorded = engine.increment(args.key, args.value, source=args.source)
        else:
            recorded = engine.measure(args.key, args.value, source=args.source)
        if not recorded:
            print(f"Metric '{args.key}' is blacklisted, nothing recorded")
            return 0
        result = engine.flush()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    finally:
        engine.close()

    print(format_flush(result, dry_run=engine.config.skip_submit))
    if result is not None and result.submission is not None and not result.submission.success:
        return 1
    return 0


def cmd_annotate(args: argparse.Namespace) -> int:
    """Handle 'annotate' command."""
    from libratobuf.errors import ConfigurationError, DataError, TransportError

    attributes = {}
    if args.description:
        attributes["description"] = args.description
    if args.source:
        attributes["source"] = args.source

    try:
        engine = build_engine(args)
    except (FileNotFoundError, ConfigurationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    try:
        engine.annotate(args.stream, args.title, **attributes)
    except (DataError, TransportError) as e:
        print(f"Error creating annotation: {e}", file=sys.stderr)
        return 1
    finally:
        engine.close()

    print(f"Annotated '{args.stream}': {args.title}")
    return 0


def parse_line(line: str) -> tuple[str, float, str | None] | None:
    """Parse a '<key> <value> [source]' line. Returns None for blank lines.

    Raises:
        ValueError: If the line is malformed.
    """
    parts = line.split()
    if not parts:
        return None
    if len(parts) not in (2, 3):
        raise ValueError(f"expected '<key> <value> [source]', got {line.strip()!r}")
    source = parts[2] if len(parts) == 3 else None
    return parts[0], float(parts[1]), source


def pipe_samples(engine: MetricsEngine, stream: TextIO, increment: bool = False) -> int:
    """Record every line of a stream into a running engine.

    Malformed lines are reported and skipped.

    Returns:
        Number of samples recorded.
    """
    recorded = 0
    for lineno, line in enumerate(stream, start=1):
        try:
            parsed = parse_line(line)
        except ValueError as e:
            logger.warning(f"Skipping line {lineno}: {e}")
            continue
        if parsed is None:
            continue

        key, value, source = parsed
        if increment:
            ok = engine.increment(key, value, source=source)
        else:
            ok = engine.measure(key, value, source=source)
        if ok:
            recorded += 1
    return recorded


def cmd_pipe(args: argparse.Namespace) -> int:
    """Handle 'pipe' command.

    Runs the polling loop while stdin is read. At end of input the
    remaining samples are flushed regardless of their periods.
    """
    from libratobuf.errors import ConfigurationError
    from libratobuf.log import configure_logging

    log_file = Path(args.log_file) if args.log_file else None
    configure_logging(log_file, verbose=args.verbose)

    try:
        engine = build_engine(args)
    except (FileNotFoundError, ConfigurationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    stopping = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stopping.set()
        engine.stop()

    signal.signal(signal.SIGTERM, signal_handler)

    engine.start()
    logger.info("Engine started")
    try:
        recorded = pipe_samples(engine, sys.stdin, increment=args.increment)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        engine.close()
        return 1
    except KeyboardInterrupt:
        stopping.set()
        recorded = None
    finally:
        engine.stop()

    if not stopping.is_set():
        engine.readiness.reset()
        result = engine.flush()
        print(format_flush(result, dry_run=engine.config.skip_submit))
    engine.close()

    if recorded is not None:
        logger.info(f"Recorded {recorded} sample(s)")
    return 0


def main() -> NoReturn:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if args.command == "config":
        if args.config_command == "validate":
            sys.exit(cmd_config_validate(args))
        else:
            parser.parse_args(["config", "--help"])
            sys.exit(1)
    elif args.command in ("measure", "increment"):
        sys.exit(cmd_record(args))
    elif args.command == "annotate":
        sys.exit(cmd_annotate(args))
    elif args.command == "pipe":
        sys.exit(cmd_pipe(args))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
