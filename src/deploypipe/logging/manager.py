"""Logging setup for deploypipe.

Configures the ``deploypipe`` logger hierarchy with a Rich console
handler (and optionally a plain file handler). Presets mirror the usual
environments:

- ``dev``: DEBUG on the console.
- ``prod``: INFO on the console, no rich tracebacks.
- ``debug``: TRACE on the console with rich tracebacks.

Every handler installed here carries a :class:`SecretMaskFilter` so that
credential values resolved during a run never reach a log sink.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

#: Custom level below DEBUG for per-poll chatter.
TRACE_LEVEL = 5
logging.addLevelName(TRACE_LEVEL, "TRACE")

#: Replacement text for masked secrets.
MASK = "****"

PRESETS: dict[str, dict[str, Any]] = {
    "dev": {"level": "DEBUG", "rich_tracebacks": True, "show_path": False},
    "prod": {"level": "INFO", "rich_tracebacks": False, "show_path": False},
    "debug": {"level": "TRACE", "rich_tracebacks": True, "show_path": True},
}

_ROOT_LOGGER = "deploypipe"
_FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_secrets: set[str] = set()
_secrets_lock = threading.Lock()


def register_secret(value: str) -> None:
    """Mask ``value`` in every log record until :func:`forget_secret`."""
    if not value:
        return
    with _secrets_lock:
        _secrets.add(value)


def forget_secret(value: str) -> None:
    """Stop masking ``value``."""
    with _secrets_lock:
        _secrets.discard(value)


def mask_secrets(text: str, extra: tuple[str, ...] | list[str] = ()) -> str:
    """Replace registered (and ``extra``) secret values in ``text``.

    Longer secrets are replaced first so that a secret containing another
    one is not partially revealed.

    Examples:
        >>> mask_secrets("token=abc123", ["abc123"])
        'token=****'
    """
    with _secrets_lock:
        values = set(_secrets)
    values.update(v for v in extra if v)
    for value in sorted(values, key=len, reverse=True):
        text = text.replace(value, MASK)
    return text


class SecretMaskFilter(logging.Filter):
    """Rewrite log records so registered secrets are masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_secrets(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def _resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    name = level.upper()
    if name == "TRACE":
        return TRACE_LEVEL
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def init_logging(
    preset: str = "dev",
    *,
    level: str | int | None = None,
    log_file: str | Path | None = None,
    console: Console | None = None,
) -> logging.Logger:
    """Configure the ``deploypipe`` logger.

    Calling it again replaces the handlers installed by a previous call.

    Args:
        preset: One of ``dev``, ``prod``, ``debug``.
        level: Override the preset's console level.
        log_file: Also write plain-text records to this file.
        console: Rich console to log to (defaults to stderr).

    Returns:
        The configured ``deploypipe`` logger.

    Raises:
        ValueError: If the preset or level is unknown.
    """
    if preset not in PRESETS:
        raise ValueError(f"Unknown logging preset {preset!r} (expected one of {', '.join(PRESETS)})")
    settings = PRESETS[preset]
    console_level = _resolve_level(level if level is not None else settings["level"])

    logger = logging.getLogger(_ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    # Handlers filter, the logger lets everything through.
    logger.setLevel(TRACE_LEVEL)
    logger.propagate = False

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=settings["rich_tracebacks"],
        show_path=settings["show_path"],
        markup=False,
    )
    rich_handler.setLevel(console_level)
    rich_handler.addFilter(SecretMaskFilter())
    logger.addHandler(rich_handler)

    if log_file is not None:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setLevel(min(console_level, logging.INFO))
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        file_handler.addFilter(SecretMaskFilter())
        logger.addHandler(file_handler)

    return logger


__all__ = [
    "MASK",
    "PRESETS",
    "TRACE_LEVEL",
    "SecretMaskFilter",
    "forget_secret",
    "init_logging",
    "mask_secrets",
    "register_secret",
]
