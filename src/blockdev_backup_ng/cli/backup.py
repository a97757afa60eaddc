"""Backup command: image, protect and verify the requested devices."""

import argparse
import dataclasses
import logging

from .. import __util__
from ..__logger__ import create_logger
from ..config import Config, ConfigError, find_config_file, load_config, validate_config
from ..core.orchestrator import RunReport, run_backup
from ..core.session import Session
from ..transaction import set_transaction_log
from .dispatcher import get_log_levels

logger = logging.getLogger(__name__)


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Return a copy of config with command line values taking precedence."""
    compression = dataclasses.replace(
        config.compression,
        **{
            key: getattr(args, key)
            for key in ("level", "threads", "memory")
            if getattr(args, key, None) is not None
        },
    )
    global_config = dataclasses.replace(
        config.global_config,
        fast=config.global_config.fast or bool(getattr(args, "fast", False)),
        transaction_log=(
            getattr(args, "transaction_log", None)
            or config.global_config.transaction_log
        ),
    )
    return dataclasses.replace(
        config, compression=compression, global_config=global_config
    )


def load_effective_config(args: argparse.Namespace) -> Config:
    """Load the config file (if any) and apply command line overrides.

    Raises:
        ConfigError: If the file is missing, invalid or out of range
    """
    config_path = find_config_file(getattr(args, "config", None))
    if config_path is None:
        logger.debug("No configuration file found, using defaults")
        config = Config()
    else:
        logger.info("Loading configuration from: %s", config_path)
        config, warnings = load_config(config_path)
        for warning in warnings:
            logger.warning("Config: %s", warning)

    config = apply_overrides(config, args)
    # Range problems are fatal once the command line has had its say
    problems = validate_config(config)
    if problems:
        raise ConfigError("; ".join(problems))
    return config


def _log_summary(report: RunReport) -> None:
    for result in report.results:
        logger.info(
            "  %-12s %-5s chain=%d  %s",
            result.device,
            result.kind.value,
            result.chain_length,
            result.restored.value,
        )
    if report.warnings:
        logger.warning(
            "Completed with %d reconciliation warning(s)", len(report.warnings)
        )
    logger.info(
        "All %d device(s) backed up and verified in %.1fs",
        len(report.results),
        report.duration,
    )


def execute_backup(args: argparse.Namespace) -> int:
    """Execute a backup run.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code (0 for success, 1 for any failure)
    """
    create_logger(*get_log_levels(args))

    try:
        config = load_effective_config(args)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return 1

    set_transaction_log(config.global_config.transaction_log)
    session = Session(
        output_dir=args.output,
        devices=args.backup,
        predecessor_dir=args.dependee,
        fast=config.global_config.fast,
    )

    try:
        report = run_backup(session, config)
    except __util__.BackupError as e:
        logger.error("%s: %s", type(e).__name__, e)
        if session.completed:
            logger.error(
                "Devices completed before the failure (left in place): %s",
                ", ".join(session.completed),
            )
        return 1
    except OSError as e:
        logger.error("I/O error: %s", e)
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 1
    finally:
        set_transaction_log(None)

    _log_summary(report)
    return 0
