"""Root exception and failure taxonomy shared by every deploypipe module.

Exception hierarchy::

    DeployPipeError
        ConfigError            (deploypipe.config.exceptions)
        CredentialError        (deploypipe.credentials.exceptions)
        PipelineError          (deploypipe.pipeline.exceptions)
            StageError
"""

from __future__ import annotations

from enum import Enum


class DeployPipeError(Exception):
    """Base exception for all deploypipe errors."""


class FailureKind(str, Enum):
    """Why a stage failed.

    Attributes:
        TOOL_NOT_FOUND: The external command is not installed.
        NON_ZERO_EXIT: The tool ran and rejected its input.
        TIMEOUT: A deadline elapsed while the tool (or a poll) was running.
        CREDENTIAL_NOT_FOUND: A credential reference could not be resolved.
        CREDENTIAL_ACCESS_DENIED: The stage may not use the credential.
        QUALITY_GATE_FAILED: The static-analysis service rejected the build.
        DEPLOYMENT_VERIFICATION_FAILED: The rollout or health probe failed.
        INVALID_INVOCATION: An invocation could not be rendered.
        INTERNAL_ERROR: Unexpected exception inside the engine.
    """

    TOOL_NOT_FOUND = "tool_not_found"
    NON_ZERO_EXIT = "non_zero_exit"
    TIMEOUT = "timeout"
    CREDENTIAL_NOT_FOUND = "credential_not_found"
    CREDENTIAL_ACCESS_DENIED = "credential_access_denied"
    QUALITY_GATE_FAILED = "quality_gate_failed"
    DEPLOYMENT_VERIFICATION_FAILED = "deployment_verification_failed"
    INVALID_INVOCATION = "invalid_invocation"
    INTERNAL_ERROR = "internal_error"


__all__ = [
    "DeployPipeError",
    "FailureKind",
]
