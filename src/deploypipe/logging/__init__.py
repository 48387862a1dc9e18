"""Logging helpers: rich console setup and secret masking."""

from deploypipe.logging.manager import (
    MASK,
    PRESETS,
    TRACE_LEVEL,
    SecretMaskFilter,
    forget_secret,
    init_logging,
    mask_secrets,
    register_secret,
)

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
