"""Data models for the deploypipe.pipeline module.

Definition side (immutable for a run):

- StageKind, GatePolicy, DeployEnvironment: enums
- Invocation: one external command of a stage body
- PostAction: per-stage post block
- StageDefinition: one named stage
- PipelineSpec: ordered stages plus terminal block
- RunParameters: trigger parameters of a run

Result side (created stage by stage, frozen once recorded):

- ProcessOutcome, ProcessResult: what the process runner returns
- StageStatus, Failure, ActionResult, StageResult
- Verdict, PipelineReport
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from deploypipe.credentials.models import CredentialBinding, CredentialMode
from deploypipe.exceptions import FailureKind
from deploypipe.pipeline.conditions import ALWAYS, RunCondition
from deploypipe.pipeline.exceptions import PipelineConfigError
from deploypipe.pipeline.validators import (
    MAX_STAGE_INVOCATIONS,
    validate_args,
    validate_command_name,
    validate_env,
    validate_pipeline_spec,
    validate_stage_name,
)
from deploypipe.tagging import ArtifactIdentifier

#: Output kept per stream in serialized reports.
OUTPUT_TAIL_CHARS = 4000


class StageKind(str, Enum):
    """What a stage does after running its invocations.

    Attributes:
        COMMAND: Invocations only.
        QUALITY_GATE: Poll the static-analysis verdict.
        DEPLOY: Render and apply a manifest (dry-run first).
        ROLLOUT: Wait for the deployment rollout.
        HEALTH_CHECK: Probe the deployed service over HTTP.
    """

    COMMAND = "command"
    QUALITY_GATE = "quality_gate"
    DEPLOY = "deploy"
    ROLLOUT = "rollout"
    HEALTH_CHECK = "health_check"


#: Options each stage kind cannot do without.
REQUIRED_OPTIONS: dict[StageKind, tuple[str, ...]] = {
    StageKind.COMMAND: (),
    StageKind.QUALITY_GATE: ("server_url", "report_file"),
    StageKind.DEPLOY: ("manifest",),
    StageKind.ROLLOUT: ("deployment",),
    StageKind.HEALTH_CHECK: ("url",),
}


class GatePolicy(str, Enum):
    """What a failed quality gate means for the run.

    Attributes:
        ENFORCE: The gate stage is mandatory, failure aborts the run.
        ADVISORY: Failure is recorded, later stages still run and the
            verdict is FAILED (fast mode).
    """

    ENFORCE = "enforce"
    ADVISORY = "advisory"


class DeployEnvironment(str, Enum):
    """Deployment target environment."""

    DEV = "dev"
    QA = "qa"
    PROD = "prod"


class StageStatus(str, Enum):
    """Result status of a stage.

    Attributes:
        SKIPPED: Run-condition was false, body never invoked.
        SUCCEEDED: Body completed.
        FAILED: Body failed (see ``StageResult.failure``).
        ABORTED: Never started because the run was aborted.
    """

    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


class ProcessOutcome(str, Enum):
    """How an external process ended.

    Attributes:
        EXITED: The process exited on its own (any exit code).
        TIMED_OUT: The deadline elapsed and the process was killed.
        NOT_FOUND: The command could not be started.
    """

    EXITED = "exited"
    TIMED_OUT = "timed_out"
    NOT_FOUND = "not_found"


class Verdict(str, Enum):
    """Overall verdict of a run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


# ============================================================================
# Definition side
# ============================================================================


@dataclass(frozen=True, slots=True)
class Invocation:
    """One external command of a stage body or post-action.

    Attributes:
        command: Executable name or path.
        args: Arguments; ``{name}`` placeholders are rendered per run.
        working_dir: Working directory, relative to the run workspace.
        credentials: Credentials injected for this call only.
        timeout: Per-invocation timeout in seconds (capped by the stage).
        best_effort: Failure becomes a warning instead of a stage failure.
        env: Plain (non-secret) environment variables.
        capture: Export the stripped stdout under this name.

    Examples:
        >>> inv = Invocation(command="docker", args=("push", "{image}"))
        >>> inv.display()
        'docker push {image}'
    """

    command: str
    args: tuple[str, ...] = ()
    working_dir: str | None = None
    credentials: tuple[CredentialBinding, ...] = ()
    timeout: float | None = None
    best_effort: bool = False
    env: Mapping[str, str] = field(default_factory=dict)
    capture: str | None = None

    def __post_init__(self) -> None:
        """Validate invocation values.

        Raises:
            PipelineConfigError: If any value is invalid.
        """
        validate_command_name(self.command)
        validate_args(self.args)
        if self.env:
            validate_env(self.env)
        if self.timeout is not None and self.timeout <= 0:
            raise PipelineConfigError(f"Invocation '{self.command}': timeout must be positive, got {self.timeout}")
        if sum(1 for b in self.credentials if b.mode == CredentialMode.STDIN) > 1:
            raise PipelineConfigError(f"Invocation '{self.command}': at most one credential can use stdin")

    def display(self) -> str:
        """Command line for logs (credentials are never part of it)."""
        return " ".join((self.command, *self.args))


@dataclass(frozen=True, slots=True)
class PostAction:
    """Post block of a stage.

    Runs after the body whatever its outcome. ``cleanup`` binds it to
    "stage attempted": it then also runs when the run-condition skipped
    the stage.

    Attributes:
        invocations: Commands to run (always best-effort).
        collect: Glob patterns (relative to the workspace) copied into the
            report directory; zero matches is not an error.
        cleanup: Also run when the stage is skipped.
    """

    invocations: tuple[Invocation, ...] = ()
    collect: tuple[str, ...] = ()
    cleanup: bool = False

    def __post_init__(self) -> None:
        if len(self.invocations) > MAX_STAGE_INVOCATIONS:
            raise PipelineConfigError(f"Too many post-action invocations (max {MAX_STAGE_INVOCATIONS})")
        if not self.invocations and not self.collect:
            raise PipelineConfigError("Post-action requires 'invocations' or 'collect'")


@dataclass(frozen=True, slots=True)
class StageDefinition:
    """Configuration for a single stage.

    Attributes:
        name: Unique stage name within the pipeline.
        kind: Stage kind.
        invocations: Sequential body commands.
        when: Run-condition.
        post: Optional post-action.
        mandatory: Failure aborts the remaining stages.
        timeout: Stage timeout in seconds (None uses the pipeline default).
        options: Kind-specific settings (gate server, manifest, ...).

    Examples:
        >>> stage = StageDefinition(
        ...     name="build",
        ...     invocations=(Invocation(command="mvn", args=("-B", "package")),),
        ... )
        >>> stage.kind
        <StageKind.COMMAND: 'command'>
    """

    name: str
    kind: StageKind = StageKind.COMMAND
    invocations: tuple[Invocation, ...] = ()
    when: RunCondition = ALWAYS
    post: PostAction | None = None
    mandatory: bool = True
    timeout: float | None = None
    options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate stage configuration values.

        Raises:
            PipelineConfigError: If any configuration value is invalid.
        """
        validate_stage_name(self.name)

        if self.kind == StageKind.COMMAND and not self.invocations:
            raise PipelineConfigError(f"Stage '{self.name}': command stage requires 'invocations'")
        if len(self.invocations) > MAX_STAGE_INVOCATIONS:
            raise PipelineConfigError(f"Stage '{self.name}': too many invocations (max {MAX_STAGE_INVOCATIONS})")
        if self.kind == StageKind.QUALITY_GATE and not self.mandatory:
            raise PipelineConfigError(
                f"Stage '{self.name}': quality gate stages are mandatory, use gate_policy 'advisory' instead"
            )
        if self.timeout is not None and self.timeout <= 0:
            raise PipelineConfigError(f"Stage '{self.name}': timeout must be positive, got {self.timeout}")
        missing = [key for key in REQUIRED_OPTIONS[self.kind] if not self.options.get(key)]
        if missing:
            raise PipelineConfigError(
                f"Stage '{self.name}': {self.kind.value} stage requires option(s) {', '.join(missing)}"
            )

    @property
    def credential_references(self) -> tuple[str, ...]:
        """Every credential reference used by the body."""
        return tuple(binding.reference for inv in self.invocations for binding in inv.credentials)


@dataclass(frozen=True, slots=True)
class PipelineSpec:
    """Configuration for a complete pipeline.

    Attributes:
        name: Pipeline (application) name.
        stages: Ordered stages.
        finally_actions: Terminal cleanup commands (always best-effort).
        deadline: Whole-run deadline in seconds.
        default_timeout: Timeout for stages without an explicit one.
        gate_policy: Quality-gate policy.
        image_repository: Image repository without tag.
        namespaces: Environment name to cluster namespace.
        report_dir: Directory (relative to the workspace) for reports.
    """

    name: str
    stages: tuple[StageDefinition, ...]
    finally_actions: tuple[Invocation, ...] = ()
    deadline: float = 3600.0
    default_timeout: float = 900.0
    gate_policy: GatePolicy = GatePolicy.ENFORCE
    image_repository: str | None = None
    namespaces: Mapping[str, str] = field(default_factory=dict)
    report_dir: str = "reports"

    def __post_init__(self) -> None:
        """Validate pipeline configuration values.

        Raises:
            PipelineConfigError: If configuration is invalid.
        """
        validate_pipeline_spec(
            stage_count=len(self.stages),
            deadline=self.deadline,
            default_timeout=self.default_timeout,
        )
        seen: set[str] = set()
        for stage in self.stages:
            if stage.name in seen:
                raise PipelineConfigError(f"Duplicate stage name: {stage.name!r}")
            seen.add(stage.name)

    def namespace_for(self, environment: DeployEnvironment) -> str:
        """Cluster namespace for ``environment``."""
        return self.namespaces.get(environment.value) or f"{self.name}-{environment.value}"

    def is_mandatory(self, stage: StageDefinition) -> bool:
        """Whether a failure of ``stage`` aborts the run under this spec."""
        if stage.kind == StageKind.QUALITY_GATE:
            return self.gate_policy == GatePolicy.ENFORCE
        return stage.mandatory


@dataclass(frozen=True, slots=True)
class RunParameters:
    """Trigger parameters of a run.

    Attributes:
        deploy_environment: Target environment.
        skip_tests: Skip the unit-test stage.
        skip_static_analysis: Skip static analysis and the quality gate.
        build_number: Monotonic build ordinal.
        revision: Source revision, when known before checkout.
        extra: Additional parameters available to conditions and templates.
    """

    deploy_environment: DeployEnvironment = DeployEnvironment.DEV
    skip_tests: bool = False
    skip_static_analysis: bool = False
    build_number: int = 1
    revision: str | None = None
    extra: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.deploy_environment, DeployEnvironment):
            try:
                env = DeployEnvironment(str(self.deploy_environment))
            except ValueError:
                raise PipelineConfigError(
                    f"Invalid deploy environment {self.deploy_environment!r} (expected dev, qa or prod)"
                ) from None
            object.__setattr__(self, "deploy_environment", env)
        if isinstance(self.build_number, bool) or not isinstance(self.build_number, int) or self.build_number < 1:
            raise PipelineConfigError(f"build_number must be a positive integer, got {self.build_number!r}")

    def as_dict(self) -> dict[str, Any]:
        """Parameters as plain values (for conditions, templates, reports)."""
        return {
            **dict(self.extra),
            "deploy_environment": self.deploy_environment.value,
            "skip_tests": self.skip_tests,
            "skip_static_analysis": self.skip_static_analysis,
            "build_number": self.build_number,
            "revision": self.revision,
        }


# ============================================================================
# Result side
# ============================================================================


def _tail(text: str) -> str:
    return text if len(text) <= OUTPUT_TAIL_CHARS else "..." + text[-OUTPUT_TAIL_CHARS:]


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Result of one external process.

    Attributes:
        command: Rendered command line.
        outcome: How the process ended.
        exit_code: Exit status (None unless EXITED).
        stdout: Captured standard output (secrets masked).
        stderr: Captured standard error (secrets masked).
        duration: Wall-clock duration in seconds.
    """

    command: str
    outcome: ProcessOutcome
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        """Exited with status 0."""
        return self.outcome == ProcessOutcome.EXITED and self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize for reports (output tails only)."""
        return {
            "command": self.command,
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "stdout": _tail(self.stdout),
            "stderr": _tail(self.stderr),
            "duration": round(self.duration, 3),
        }


@dataclass(frozen=True, slots=True)
class Failure:
    """Why a stage failed."""

    kind: FailureKind
    reason: str


@dataclass(frozen=True, slots=True)
class ActionResult:
    """Result of a post-action or of the terminal block.

    Attributes:
        name: Owner (stage name, or ``finally``).
        results: Process results in order.
        collected: Files copied into the report directory.
        warnings: Failures that were tolerated.
    """

    name: str
    results: tuple[ProcessResult, ...] = ()
    collected: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        """No tolerated failure happened."""
        return not self.warnings

    def to_dict(self) -> dict[str, Any]:
        """Serialize for reports."""
        return {
            "name": self.name,
            "results": [r.to_dict() for r in self.results],
            "collected": list(self.collected),
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True, slots=True)
class StageResult:
    """Result of one stage.

    Attributes:
        name: Stage name.
        status: Stage status.
        failure: Failure kind and reason (FAILED and ABORTED only).
        invocations: Process results of the body.
        warnings: Tolerated failures (best-effort invocations).
        duration: Body duration in seconds.
        post: Post-action result, when one ran.
        details: Kind-specific details (gate verdict, rollout state).
        mandatory: Whether the stage was mandatory for this run.

    Examples:
        >>> StageResult(name="build", status=StageStatus.SKIPPED).status
        <StageStatus.SKIPPED: 'skipped'>
    """

    name: str
    status: StageStatus
    failure: Failure | None = None
    invocations: tuple[ProcessResult, ...] = ()
    warnings: tuple[str, ...] = ()
    duration: float = 0.0
    post: ActionResult | None = None
    details: Mapping[str, Any] = field(default_factory=dict)
    mandatory: bool = True

    @property
    def output(self) -> str:
        """Concatenated standard output of the body."""
        return "".join(result.stdout for result in self.invocations)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for reports."""
        return {
            "name": self.name,
            "status": self.status.value,
            "failure": (
                {"kind": self.failure.kind.value, "reason": self.failure.reason} if self.failure else None
            ),
            "mandatory": self.mandatory,
            "duration": round(self.duration, 3),
            "invocations": [r.to_dict() for r in self.invocations],
            "warnings": list(self.warnings),
            "post": self.post.to_dict() if self.post else None,
            "details": dict(self.details),
        }


@dataclass(frozen=True, slots=True)
class PipelineReport:
    """Finalized result of a run.

    Attributes:
        name: Pipeline name.
        run_id: Unique id of the run.
        verdict: Overall verdict.
        stages: Stage results in spec order.
        terminal: Result of the terminal block.
        parameters: Run parameters (never credentials).
        artifact: Artifact identifier, when the revision became known.
        namespace: Target namespace.
        started_at: UTC start time.
        duration: Total duration in seconds.
        notified: Whether the notification was delivered.
    """

    name: str
    run_id: str
    verdict: Verdict
    stages: tuple[StageResult, ...]
    terminal: ActionResult
    parameters: Mapping[str, Any]
    artifact: ArtifactIdentifier | None
    namespace: str
    started_at: datetime
    duration: float
    notified: bool = False

    @property
    def success(self) -> bool:
        """Whether the verdict is SUCCEEDED."""
        return self.verdict == Verdict.SUCCEEDED

    @property
    def exit_code(self) -> int:
        """Process exit status for the CLI: 0 on success, 1 otherwise."""
        return 0 if self.success else 1

    @property
    def failed_stages(self) -> list[StageResult]:
        """Stages that failed."""
        return [r for r in self.stages if r.status == StageStatus.FAILED]

    @property
    def aborted_stages(self) -> list[StageResult]:
        """Stages that never started because of an abort."""
        return [r for r in self.stages if r.status == StageStatus.ABORTED]

    @property
    def skipped_stages(self) -> list[StageResult]:
        """Stages skipped by their run-condition."""
        return [r for r in self.stages if r.status == StageStatus.SKIPPED]

    def stage(self, name: str) -> StageResult:
        """Return the result of stage ``name``.

        Raises:
            KeyError: If no such stage exists.
        """
        for result in self.stages:
            if result.name == name:
                return result
        raise KeyError(name)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the report to a JSON-compatible dict."""
        return {
            "name": self.name,
            "run_id": self.run_id,
            "verdict": self.verdict.value,
            "started_at": self.started_at.isoformat(),
            "duration": round(self.duration, 3),
            "namespace": self.namespace,
            "artifact": (
                {
                    "build_ordinal": self.artifact.build_ordinal,
                    "short_hash": self.artifact.short_hash,
                    "tag": self.artifact.tag,
                }
                if self.artifact
                else None
            ),
            "parameters": dict(self.parameters),
            "stages": [r.to_dict() for r in self.stages],
            "terminal": self.terminal.to_dict(),
            "notified": self.notified,
        }


__all__ = [
    "OUTPUT_TAIL_CHARS",
    "REQUIRED_OPTIONS",
    "ActionResult",
    "DeployEnvironment",
    "Failure",
    "GatePolicy",
    "Invocation",
    "PipelineReport",
    "PipelineSpec",
    "PostAction",
    "ProcessOutcome",
    "ProcessResult",
    "RunParameters",
    "StageDefinition",
    "StageKind",
    "StageResult",
    "StageStatus",
    "Verdict",
]
