"""Configuration loading for deploypipe."""

from deploypipe.config.exceptions import (
    ConfigEnvVarError,
    ConfigError,
    ConfigFileNotFoundError,
    ConfigFormatError,
    ConfigNotLoadedError,
)
from deploypipe.config.loader import (
    DEFAULT_FILENAME,
    clear_config,
    get_config,
    load_config,
    load_from_dict,
    load_from_file,
)

__all__ = [
    "DEFAULT_FILENAME",
    "ConfigEnvVarError",
    "ConfigError",
    "ConfigFileNotFoundError",
    "ConfigFormatError",
    "ConfigNotLoadedError",
    "clear_config",
    "get_config",
    "load_config",
    "load_from_dict",
    "load_from_file",
]
