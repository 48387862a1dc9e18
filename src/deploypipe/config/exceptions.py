"""Configuration errors raised by deploypipe.config."""

from __future__ import annotations

from deploypipe.exceptions import DeployPipeError


class ConfigError(DeployPipeError):
    """Base class for configuration errors."""


class ConfigFileNotFoundError(ConfigError, FileNotFoundError):
    """The configuration file does not exist."""


class ConfigFormatError(ConfigError, ValueError):
    """The configuration file is not valid YAML or has the wrong shape."""


class ConfigNotLoadedError(ConfigError):
    """``get_config()`` was called before any configuration was loaded."""


class ConfigEnvVarError(ConfigError):
    """A required ``${VAR}`` reference points to an unset variable.

    Attributes:
        var_name: Name of the missing environment variable.
        source: File or context where the variable was referenced.
    """

    def __init__(self, var_name: str, source: str | None = None) -> None:
        """Initialize ConfigEnvVarError.

        Args:
            var_name: Name of the missing environment variable.
            source: File or context where the variable was referenced.
        """
        where = f" (required by {source})" if source else ""
        super().__init__(
            f"Environment variable '{var_name}' is not set{where}. Use ${{VAR:-default}} for optional variables."
        )
        self.var_name = var_name
        self.source = source


__all__ = [
    "ConfigEnvVarError",
    "ConfigError",
    "ConfigFileNotFoundError",
    "ConfigFormatError",
    "ConfigNotLoadedError",
]
