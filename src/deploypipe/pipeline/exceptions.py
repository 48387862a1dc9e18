"""Specialized exceptions raised by the deploypipe.pipeline module.

Exception hierarchy::

    DeployPipeError
        PipelineError (base for all pipeline errors)
            PipelineConfigError (invalid definition, also ValueError)
            PipelineLockedError (another run holds the lock)
            StageError (stage failure, carries a FailureKind)
                ToolNotFoundError
                NonZeroExitError
                StageTimeoutError
                QualityGateFailedError
                DeploymentVerificationError
                    HealthCheckFailedError
                TemplateError
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from deploypipe.exceptions import DeployPipeError, FailureKind

if TYPE_CHECKING:
    from deploypipe.deploy.models import DeploymentState


class PipelineError(DeployPipeError):
    """Base exception for all pipeline module errors."""


class PipelineConfigError(PipelineError, ValueError):
    """Pipeline definition is invalid.

    Raised when a stage or invocation contains invalid values, missing
    required fields, or constraint violations.
    """


class PipelineLockedError(PipelineError):
    """Another run of the same pipeline is active.

    Attributes:
        lock_path: Lock file held by the other run.
    """

    def __init__(self, name: str, lock_path: str) -> None:
        """Initialize PipelineLockedError.

        Args:
            name: Pipeline name.
            lock_path: Lock file held by the other run.
        """
        super().__init__(f"Pipeline '{name}' is already running (lock: {lock_path})")
        self.lock_path = lock_path


class StageError(PipelineError):
    """A stage failed during execution.

    Attributes:
        stage_name: Name of the stage that failed.
        reason: Description of the failure.
        kind: Failure kind recorded on the stage result.
    """

    kind = FailureKind.INTERNAL_ERROR

    def __init__(self, stage_name: str, reason: str) -> None:
        """Initialize StageError.

        Args:
            stage_name: Name of the stage that failed.
            reason: Description of the failure.
        """
        super().__init__(f"Stage '{stage_name}' failed: {reason}")
        self.stage_name = stage_name
        self.reason = reason


class ToolNotFoundError(StageError):
    """The external command is not available.

    Attributes:
        command: Command that could not be found.
    """

    kind = FailureKind.TOOL_NOT_FOUND

    def __init__(self, stage_name: str, command: str) -> None:
        super().__init__(stage_name, f"command not found: {command}")
        self.command = command


class NonZeroExitError(StageError):
    """The tool ran and exited with a non-zero status.

    Attributes:
        command: Command that failed.
        exit_code: Its exit status.
    """

    kind = FailureKind.NON_ZERO_EXIT

    def __init__(self, stage_name: str, command: str, exit_code: int, detail: str = "") -> None:
        reason = f"{command} exited with status {exit_code}"
        if detail:
            reason = f"{reason}: {detail}"
        super().__init__(stage_name, reason)
        self.command = command
        self.exit_code = exit_code


class StageTimeoutError(StageError):
    """A deadline elapsed while the stage was running.

    Attributes:
        timeout: The timeout value in seconds.
    """

    kind = FailureKind.TIMEOUT

    def __init__(self, stage_name: str, timeout: float, what: str = "") -> None:
        subject = f"{what} " if what else ""
        super().__init__(stage_name, f"{subject}exceeded timeout of {timeout:g}s")
        self.timeout = timeout


class QualityGateFailedError(StageError):
    """The static-analysis service returned a failing verdict."""

    kind = FailureKind.QUALITY_GATE_FAILED


class DeploymentVerificationError(StageError):
    """The rollout did not reach the desired state.

    Attributes:
        state: Last observed deployment state, when available.
    """

    kind = FailureKind.DEPLOYMENT_VERIFICATION_FAILED

    def __init__(self, stage_name: str, reason: str, state: DeploymentState | None = None) -> None:
        super().__init__(stage_name, reason)
        self.state = state


class HealthCheckFailedError(DeploymentVerificationError):
    """The deployed service never answered its health endpoint as healthy."""


class TemplateError(StageError):
    """An invocation references a value that is not available yet."""

    kind = FailureKind.INVALID_INVOCATION


__all__ = [
    "DeploymentVerificationError",
    "HealthCheckFailedError",
    "NonZeroExitError",
    "PipelineConfigError",
    "PipelineError",
    "PipelineLockedError",
    "QualityGateFailedError",
    "StageError",
    "StageTimeoutError",
    "TemplateError",
    "ToolNotFoundError",
]
