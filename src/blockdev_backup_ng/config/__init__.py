"""Configuration system for blockdev-backup-ng.

This module provides TOML-based configuration loading, validation,
and schema definitions for device backup runs.
"""

from .loader import ConfigError, find_config_file, load_config, validate_config
from .schema import (
    CompressionConfig,
    Config,
    GlobalConfig,
    ImagingConfig,
    RedundancyConfig,
    ToolsConfig,
)

__all__ = [
    "CompressionConfig",
    "Config",
    "GlobalConfig",
    "ImagingConfig",
    "RedundancyConfig",
    "ToolsConfig",
    "load_config",
    "find_config_file",
    "validate_config",
    "ConfigError",
]
