"""Load ``deploypipe.conf.yml`` into a :class:`box.Box`.

Loading order:

1. Packaged ``defaults.yml``.
2. The user file (explicit path, or ``deploypipe.conf.yml`` in the
   current directory), deep-merged over the defaults.

String values may reference environment variables with ``${VAR}``
(required) or ``${VAR:-default}`` (optional).
"""

from __future__ import annotations

import logging
import os
import re
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from box import Box

from deploypipe.config.exceptions import (
    ConfigEnvVarError,
    ConfigFileNotFoundError,
    ConfigFormatError,
    ConfigNotLoadedError,
)

log = logging.getLogger(__name__)

#: File looked up in the current directory when no path is given.
DEFAULT_FILENAME = "deploypipe.conf.yml"

# ${VAR} or ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([a-zA-Z_][a-zA-Z0-9_]*)(?::-([^}]*))?\}")

_current: Box | None = None


def _expand_env_vars(value: str, source: str | None = None) -> str:
    """Expand environment variables in a string value.

    Args:
        value: String potentially containing ``${VAR}`` patterns.
        source: Source file for error messages.

    Returns:
        String with environment variables expanded.

    Raises:
        ConfigEnvVarError: If a required variable is not set.

    Examples:
        >>> os.environ["DP_TEST_VAR"] = "hello"
        >>> _expand_env_vars("${DP_TEST_VAR} world")
        'hello world'
        >>> _expand_env_vars("${DP_MISSING:-fallback}")
        'fallback'
    """

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default_value = match.group(2)

        env_value = os.environ.get(var_name)
        if env_value is not None:
            return env_value
        if default_value is not None:
            return default_value
        raise ConfigEnvVarError(var_name, source)

    return _ENV_VAR_PATTERN.sub(replacer, value)


def _expand_env_vars_recursive(data: Any, source: str | None = None) -> Any:
    """Apply :func:`_expand_env_vars` to every string in dicts and lists."""
    if isinstance(data, dict):
        return {k: _expand_env_vars_recursive(v, source) for k, v in data.items()}
    if isinstance(data, list):
        return [_expand_env_vars_recursive(item, source) for item in data]
    if isinstance(data, str):
        return _expand_env_vars(data, source)
    return data


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``, recursing into dicts.

    Lists and scalars from ``override`` replace the base value.

    Examples:
        >>> deep_merge({"a": {"x": 1, "y": 2}}, {"a": {"y": 3}})
        {'a': {'x': 1, 'y': 3}}
    """
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(text: str, source: str) -> dict[str, Any]:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigFormatError(f"Invalid YAML in {source}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigFormatError(f"{source} must contain a mapping at top level, got {type(data).__name__}")
    return data


def load_defaults() -> dict[str, Any]:
    """Return the packaged default configuration as a plain dict."""
    text = resources.files("deploypipe.config").joinpath("defaults.yml").read_text(encoding="utf-8")
    return _read_yaml(text, "defaults.yml")


def load_from_dict(data: dict[str, Any], *, source: str = "<dict>") -> Box:
    """Build and register the active configuration from a mapping.

    Args:
        data: User configuration (merged over packaged defaults).
        source: Label used in error messages.

    Returns:
        The active configuration.
    """
    global _current  # noqa: PLW0603
    expanded = _expand_env_vars_recursive(data, source)
    _current = Box(deep_merge(load_defaults(), expanded), box_dots=False)
    return _current


def load_from_file(path: str | Path) -> Box:
    """Load configuration from an explicit YAML file.

    Raises:
        ConfigFileNotFoundError: If the file does not exist.
        ConfigFormatError: If the file is not a YAML mapping.
    """
    config_path = Path(path).expanduser()
    if not config_path.is_file():
        raise ConfigFileNotFoundError(f"Configuration file not found: {config_path}")
    data = _read_yaml(config_path.read_text(encoding="utf-8"), str(config_path))
    log.debug("Loaded configuration from %s", config_path)
    return load_from_dict(data, source=str(config_path))


def load_config(path: str | Path | None = None, *, required: bool = False) -> Box:
    """Load configuration from ``path`` or ``./deploypipe.conf.yml``.

    Without an explicit path, a missing file falls back to defaults unless
    ``required`` is True.

    Args:
        path: Explicit configuration file.
        required: Raise when no file is found.

    Returns:
        The active configuration.
    """
    if path is not None:
        return load_from_file(path)

    candidate = Path.cwd() / DEFAULT_FILENAME
    if candidate.is_file():
        return load_from_file(candidate)
    if required:
        raise ConfigFileNotFoundError(f"No {DEFAULT_FILENAME} in {Path.cwd()}")
    log.debug("No %s found, using packaged defaults", DEFAULT_FILENAME)
    return load_from_dict({}, source="defaults")


def get_config() -> Box:
    """Return the active configuration.

    Raises:
        ConfigNotLoadedError: If nothing was loaded yet.
    """
    if _current is None:
        raise ConfigNotLoadedError("Configuration not loaded. Call load_config() first.")
    return _current


def clear_config() -> None:
    """Forget the active configuration."""
    global _current  # noqa: PLW0603
    _current = None


__all__ = [
    "DEFAULT_FILENAME",
    "clear_config",
    "deep_merge",
    "get_config",
    "load_config",
    "load_defaults",
    "load_from_dict",
    "load_from_file",
]
