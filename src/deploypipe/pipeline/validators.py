"""Input validation for deploypipe.pipeline.

Invocations are executed without a shell, so validation focuses on keeping
command names plain executables and bounding every user-supplied value.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence

from deploypipe.pipeline.exceptions import PipelineConfigError

# ============================================================================
# Constants - Hard Limits
# ============================================================================

#: Maximum stage name length.
MAX_STAGE_NAME_LENGTH = 64

#: Pattern for valid stage names.
STAGE_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")

#: Maximum number of stages in a single pipeline.
MAX_PIPELINE_STAGES = 50

#: Maximum number of invocations in one stage body or post-action.
MAX_STAGE_INVOCATIONS = 20

#: Maximum number of arguments for an invocation.
MAX_INVOCATION_ARGS = 100

#: Maximum length of a single argument.
MAX_ARG_LENGTH = 4096

#: Maximum length of a command name.
MAX_COMMAND_LENGTH = 256

#: Executable name or path; no whitespace or shell metacharacters.
COMMAND_PATTERN = re.compile(r"^[A-Za-z0-9_./+~-]+$")

#: Maximum number of plain environment variables per invocation.
MAX_ENV_VARS = 64

#: Pattern for environment variable names.
ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

#: Maximum length of an environment variable value.
MAX_ENV_VALUE_LENGTH = 4096


# ============================================================================
# Validation Functions
# ============================================================================


def validate_stage_name(name: str) -> str:
    """Validate and return a stage name.

    Rules:
    - Cannot be empty
    - Max 64 characters (hard limit)
    - Must start with a letter
    - Only alphanumeric, underscore, hyphen allowed

    Args:
        name: Stage name to validate.

    Returns:
        The validated stage name (unchanged).

    Raises:
        PipelineConfigError: If name is invalid.

    Examples:
        >>> validate_stage_name("quality-gate")
        'quality-gate'
        >>> validate_stage_name("")
        Traceback (most recent call last):
            ...
        deploypipe.pipeline.exceptions.PipelineConfigError: Stage name cannot be empty
    """
    if not name:
        raise PipelineConfigError("Stage name cannot be empty")
    if len(name) > MAX_STAGE_NAME_LENGTH:
        raise PipelineConfigError(f"Stage name too long (max {MAX_STAGE_NAME_LENGTH} chars)")
    if not STAGE_NAME_PATTERN.match(name):
        raise PipelineConfigError(
            "Stage name must start with a letter and contain only alphanumeric, underscore, or hyphen characters"
        )
    return name


def validate_command_name(command: str) -> str:
    """Validate an executable name or path.

    Examples:
        >>> validate_command_name("kubectl")
        'kubectl'
        >>> validate_command_name("./mvnw")
        './mvnw'
        >>> validate_command_name("mvn test")
        Traceback (most recent call last):
            ...
        deploypipe.pipeline.exceptions.PipelineConfigError: Invalid command name: 'mvn test' (arguments go in 'args')
    """
    if not command:
        raise PipelineConfigError("Command cannot be empty")
    if len(command) > MAX_COMMAND_LENGTH:
        raise PipelineConfigError(f"Command too long (max {MAX_COMMAND_LENGTH} chars)")
    if not COMMAND_PATTERN.match(command):
        raise PipelineConfigError(f"Invalid command name: {command!r} (arguments go in 'args')")
    return command


def validate_args(args: Sequence[str]) -> None:
    """Validate an invocation's argument list.

    Raises:
        PipelineConfigError: If there are too many or too long arguments.
    """
    if len(args) > MAX_INVOCATION_ARGS:
        raise PipelineConfigError(f"Too many arguments (max {MAX_INVOCATION_ARGS})")
    for arg in args:
        if not isinstance(arg, str):
            raise PipelineConfigError(f"Argument must be a string, got {type(arg).__name__}")
        if len(arg) > MAX_ARG_LENGTH:
            raise PipelineConfigError(f"Argument too long (max {MAX_ARG_LENGTH} chars)")
        if "\x00" in arg:
            raise PipelineConfigError("Argument contains a NUL byte")


def validate_env(env: Mapping[str, str]) -> None:
    """Validate plain environment variables of an invocation.

    Raises:
        PipelineConfigError: If a key or value is invalid.
    """
    if len(env) > MAX_ENV_VARS:
        raise PipelineConfigError(f"Too many environment variables (max {MAX_ENV_VARS})")
    for key, value in env.items():
        if not ENV_KEY_PATTERN.match(key):
            raise PipelineConfigError(f"Invalid environment variable name: {key!r}")
        if not isinstance(value, str):
            raise PipelineConfigError(f"Environment variable {key!r} must be a string")
        if len(value) > MAX_ENV_VALUE_LENGTH:
            raise PipelineConfigError(f"Environment variable {key!r} too long (max {MAX_ENV_VALUE_LENGTH} chars)")


def validate_pipeline_spec(*, stage_count: int, deadline: float, default_timeout: float) -> None:
    """Validate pipeline-level configuration.

    Raises:
        PipelineConfigError: If configuration is invalid.
    """
    if stage_count == 0:
        raise PipelineConfigError("Pipeline must have at least one stage")
    if stage_count > MAX_PIPELINE_STAGES:
        raise PipelineConfigError(f"Too many stages (max {MAX_PIPELINE_STAGES})")
    if deadline <= 0:
        raise PipelineConfigError(f"Pipeline deadline must be positive, got {deadline}")
    if default_timeout <= 0:
        raise PipelineConfigError(f"Pipeline default_timeout must be positive, got {default_timeout}")


__all__ = [
    "COMMAND_PATTERN",
    "ENV_KEY_PATTERN",
    "MAX_ARG_LENGTH",
    "MAX_COMMAND_LENGTH",
    "MAX_ENV_VALUE_LENGTH",
    "MAX_ENV_VARS",
    "MAX_INVOCATION_ARGS",
    "MAX_PIPELINE_STAGES",
    "MAX_STAGE_INVOCATIONS",
    "MAX_STAGE_NAME_LENGTH",
    "STAGE_NAME_PATTERN",
    "validate_args",
    "validate_command_name",
    "validate_env",
    "validate_pipeline_spec",
    "validate_stage_name",
]
