"""CLI argument parsing and dispatch.

Exactly one of --backup or --restore must be given. Every usage error
exits with status 1, like any other failed run.
"""

import argparse
import sys
from typing import NoReturn


class ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports usage errors with exit status 1."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def add_verbosity_args(parser: argparse.ArgumentParser) -> None:
    """Add mutually exclusive verbosity options."""
    group = parser.add_argument_group("Output options").add_mutually_exclusive_group()
    group.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show every tool command line and per-stage detail",
    )
    group.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Only show warnings and errors",
    )
    group.add_argument(
        "--debug",
        action="store_true",
        help="Like --verbose, and include debug output from libraries",
    )


def get_log_levels(args: argparse.Namespace) -> tuple[str, str]:
    """Determine log levels from parsed arguments.

    Returns:
        (level for every logger, level for this package's loggers)
    """
    if getattr(args, "debug", False):
        return "DEBUG", "DEBUG"
    if getattr(args, "verbose", False):
        return "INFO", "DEBUG"
    if getattr(args, "quiet", False):
        return "WARNING", "WARNING"
    return "INFO", "INFO"


def create_parser() -> ArgumentParser:
    """Create the main argument parser."""
    parser = ArgumentParser(
        prog="blockdev-backup-ng",
        description=(
            "Back up block devices as compressed full images or chained "
            "deltas, then prove each backup by restoring it"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    add_verbosity_args(parser)

    parser.add_argument(
        "-V",
        "--version",
        action="store_true",
        help="Show version and exit",
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="Path to configuration file",
    )

    devices = parser.add_argument_group("Devices")
    devices.add_argument(
        "-b",
        "--backup",
        metavar="DEVICE",
        action="append",
        default=[],
        help="Device to back up (repeatable)",
    )
    devices.add_argument(
        "-r",
        "--restore",
        metavar="DEVICE",
        action="append",
        default=[],
        help="Device to restore (repeatable; not supported by this version)",
    )

    locations = parser.add_argument_group("Locations")
    locations.add_argument(
        "-o",
        "--output",
        metavar="DIR",
        help="Directory receiving the new backup (required)",
    )
    locations.add_argument(
        "-d",
        "--dependee",
        metavar="DIR",
        help="Directory of a previous backup to store deltas against",
    )

    tuning = parser.add_argument_group("Compression")
    tuning.add_argument(
        "-l",
        "--level",
        type=int,
        choices=range(10),
        metavar="0-9",
        help="Compression level (overrides config)",
    )
    tuning.add_argument(
        "-t",
        "--threads",
        type=int,
        metavar="N",
        help="Compression threads, 0 for automatic (overrides config)",
    )
    tuning.add_argument(
        "-m",
        "--memory",
        metavar="LIMIT",
        help="Compression memory ceiling, e.g. '50%%' or '2GiB' (overrides config)",
    )

    run = parser.add_argument_group("Run options")
    run.add_argument(
        "-f",
        "--fast",
        action="store_true",
        help="Skip the final reconciliation re-hash",
    )
    run.add_argument(
        "--transaction-log",
        metavar="FILE",
        help="Append JSON transaction records to FILE (overrides config)",
    )

    return parser


def validate_args(args: argparse.Namespace) -> list[str]:
    """Return every problem with the parsed arguments."""
    problems = []
    if args.backup and args.restore:
        problems.append("--backup and --restore cannot be used together")
    elif not args.backup and not args.restore:
        problems.append("one of --backup or --restore is required")
    if not args.output:
        problems.append("--output is required")
    if args.threads is not None and args.threads < 0:
        problems.append("--threads must not be negative")
    return problems


def main(argv: list[str] | None = None) -> int:
    """Main entry point for blockdev-backup-ng CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = create_parser()
    args = parser.parse_args(argv)

    if args.version:
        from .. import __version__

        print(f"blockdev-backup-ng {__version__}")
        return 0

    problems = validate_args(args)
    if problems:
        parser.print_usage(sys.stderr)
        for problem in problems:
            print(f"{parser.prog}: error: {problem}", file=sys.stderr)
        return 1

    if args.restore:
        print(
            f"{parser.prog}: error: restore mode is not supported by this version",
            file=sys.stderr,
        )
        return 1

    from .backup import execute_backup

    return execute_backup(args)
