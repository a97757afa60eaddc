"""TOML configuration loading and validation.

Handles config file discovery, parsing, and validation with helpful error messages.
"""

import dataclasses
import tomllib
from pathlib import Path
from typing import Any

from .schema import (
    CompressionConfig,
    Config,
    GlobalConfig,
    ImagingConfig,
    RedundancyConfig,
    ToolsConfig,
)


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


# Config file search paths in priority order
CONFIG_PATHS = [
    Path.home() / ".config" / "blockdev-backup-ng" / "config.toml",
    Path("/etc/blockdev-backup-ng/config.toml"),
]

# TOML table name -> schema it is parsed into
SECTIONS = {
    "global": GlobalConfig,
    "compression": CompressionConfig,
    "imaging": ImagingConfig,
    "redundancy": RedundancyConfig,
    "tools": ToolsConfig,
}


def find_config_file(explicit_path: str | None = None) -> Path | None:
    """Find configuration file.

    Args:
        explicit_path: Explicitly specified config path (highest priority)

    Returns:
        Path to config file, or None if not found
    """
    if explicit_path:
        path = Path(explicit_path)
        if path.exists():
            return path
        raise ConfigError(f"Config file not found: {explicit_path}")

    for path in CONFIG_PATHS:
        if path.exists():
            return path

    return None


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{name}] must be a table, got {value!r}")
    return value


def _expect_int(section: str, key: str, value: Any) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"[{section}] {key} must be an integer, got {value!r}")
    return value


def _expect_bool(section: str, key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"[{section}] {key} must be true or false, got {value!r}")
    return value


def _expect_str(section: str, key: str, value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise ConfigError(f"[{section}] {key} must be a non-empty string")
    return value


def _parse_compression(data: dict[str, Any]) -> CompressionConfig:
    """Parse compression configuration from dict."""
    defaults = CompressionConfig()
    return CompressionConfig(
        level=_expect_int("compression", "level", data.get("level", defaults.level)),
        threads=_expect_int(
            "compression", "threads", data.get("threads", defaults.threads)
        ),
        memory=_expect_str("compression", "memory", data.get("memory", defaults.memory)),
    )


def _parse_imaging(data: dict[str, Any]) -> ImagingConfig:
    """Parse imaging configuration from dict."""
    defaults = ImagingConfig()
    return ImagingConfig(
        block_size=_expect_str(
            "imaging", "block_size", data.get("block_size", defaults.block_size)
        ),
    )


def _parse_redundancy(data: dict[str, Any]) -> RedundancyConfig:
    """Parse redundancy configuration from dict."""
    defaults = RedundancyConfig()
    return RedundancyConfig(
        percent=_expect_int("redundancy", "percent", data.get("percent", defaults.percent)),
        block_count=_expect_int(
            "redundancy", "block_count", data.get("block_count", defaults.block_count)
        ),
    )


def _parse_tools(data: dict[str, Any]) -> ToolsConfig:
    """Parse tool names from dict."""
    defaults = ToolsConfig()
    return ToolsConfig(
        **{
            key: _expect_str("tools", key, data.get(key, getattr(defaults, key)))
            for key in ("imager", "compressor", "differ", "fec", "digest")
        }
    )


def _parse_global(data: dict[str, Any]) -> GlobalConfig:
    """Parse global configuration from dict."""
    transaction_log = data.get("transaction_log")
    if transaction_log is not None:
        transaction_log = _expect_str("global", "transaction_log", transaction_log)
    return GlobalConfig(
        fast=_expect_bool("global", "fast", data.get("fast", False)),
        transaction_log=transaction_log,
    )


def _unknown_keys(data: dict[str, Any]) -> list[str]:
    """Warnings for tables and keys that nothing reads."""
    warnings = []
    for name, value in data.items():
        schema = SECTIONS.get(name)
        if schema is None:
            warnings.append(f"Unknown section [{name}] ignored")
            continue
        known = {f.name for f in dataclasses.fields(schema)}
        for key in value:
            if key not in known:
                warnings.append(f"Unknown key '{key}' in [{name}] ignored")
    return warnings


def validate_config(config: Config) -> list[str]:
    """Validate configuration and return list of warnings."""
    warnings = []

    if not 0 <= config.compression.level <= 9:
        warnings.append(
            f"Compression level {config.compression.level} is outside 0-9"
        )
    if config.compression.threads < 0:
        warnings.append("Compression thread count is negative")
    if not 1 <= config.redundancy.percent <= 100:
        warnings.append(
            f"Redundancy percentage {config.redundancy.percent} is outside 1-100"
        )
    if config.redundancy.block_count <= 0:
        warnings.append("Redundancy block count must be positive")

    return warnings


def load_config(path: Path | str) -> tuple[Config, list[str]]:
    """Load and validate configuration from TOML file.

    Args:
        path: Path to configuration file

    Returns:
        Tuple of (Config object, list of warnings)

    Raises:
        ConfigError: If config is invalid or cannot be parsed
    """
    path = Path(path)

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML syntax: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read config file: {e}")

    sections = {name: _section(data, name) for name in SECTIONS}
    config = Config(
        global_config=_parse_global(sections["global"]),
        compression=_parse_compression(sections["compression"]),
        imaging=_parse_imaging(sections["imaging"]),
        redundancy=_parse_redundancy(sections["redundancy"]),
        tools=_parse_tools(sections["tools"]),
    )

    return config, _unknown_keys(data) + validate_config(config)
