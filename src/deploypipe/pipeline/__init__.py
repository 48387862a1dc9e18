"""Deployment pipeline execution for deploypipe.

A pipeline is an ordered list of stages. Each stage has a run-condition,
a body of external invocations, an optional post-action and a failure
policy. The engine runs stages strictly in order, aborts the rest of the
run when a mandatory stage fails, and always runs the terminal block.

Pipelines can be defined programmatically, declared in
``deploypipe.conf.yml``, or derived from the standard workflow settings.

Examples:
    Programmatic pipeline:

    >>> from deploypipe.pipeline import Invocation, PipelineEngine, PipelineSpec, RunParameters, StageDefinition
    >>> spec = PipelineSpec(
    ...     name="demo",
    ...     stages=(
    ...         StageDefinition(name="greet", invocations=(Invocation(command="echo", args=("hello",)),)),
    ...     ),
    ... )
    >>> report = PipelineEngine(workspace="/tmp/demo").run(spec, RunParameters())  # doctest: +SKIP

    Config-driven pipeline:

    >>> from deploypipe.config import load_config
    >>> spec = load_spec(load_config("deploypipe.conf.yml"))  # doctest: +SKIP
"""

from deploypipe.pipeline.conditions import (
    ALWAYS,
    AllOf,
    AnyOf,
    Not,
    ParamEquals,
    ParamIn,
    RunCondition,
    StageSucceeded,
    param_false,
    parse_condition,
)
from deploypipe.pipeline.context import RunContext
from deploypipe.pipeline.deadline import Deadline
from deploypipe.pipeline.engine import PipelineEngine, PlannedStage
from deploypipe.pipeline.exceptions import (
    DeploymentVerificationError,
    HealthCheckFailedError,
    NonZeroExitError,
    PipelineConfigError,
    PipelineError,
    PipelineLockedError,
    QualityGateFailedError,
    StageError,
    StageTimeoutError,
    TemplateError,
    ToolNotFoundError,
)
from deploypipe.pipeline.loader import load_spec, parse_pipeline_spec
from deploypipe.pipeline.lock import run_lock
from deploypipe.pipeline.models import (
    ActionResult,
    DeployEnvironment,
    Failure,
    GatePolicy,
    Invocation,
    PipelineReport,
    PipelineSpec,
    PostAction,
    ProcessOutcome,
    ProcessResult,
    RunParameters,
    StageDefinition,
    StageKind,
    StageResult,
    StageStatus,
    Verdict,
)
from deploypipe.pipeline.process import ExternalProcessRunner
from deploypipe.pipeline.report import write_report
from deploypipe.pipeline.stages import StageExecutor, StageRun, default_executors
from deploypipe.pipeline.workflow import standard_workflow

__all__ = [
    "ALWAYS",
    "ActionResult",
    "AllOf",
    "AnyOf",
    "Deadline",
    "DeployEnvironment",
    "DeploymentVerificationError",
    "ExternalProcessRunner",
    "Failure",
    "GatePolicy",
    "HealthCheckFailedError",
    "Invocation",
    "NonZeroExitError",
    "Not",
    "ParamEquals",
    "ParamIn",
    "PipelineConfigError",
    "PipelineEngine",
    "PipelineError",
    "PipelineLockedError",
    "PipelineReport",
    "PipelineSpec",
    "PlannedStage",
    "PostAction",
    "ProcessOutcome",
    "ProcessResult",
    "QualityGateFailedError",
    "RunCondition",
    "RunContext",
    "RunParameters",
    "StageDefinition",
    "StageError",
    "StageExecutor",
    "StageKind",
    "StageResult",
    "StageRun",
    "StageStatus",
    "StageSucceeded",
    "StageTimeoutError",
    "TemplateError",
    "ToolNotFoundError",
    "Verdict",
    "default_executors",
    "load_spec",
    "param_false",
    "parse_condition",
    "parse_pipeline_spec",
    "run_lock",
    "standard_workflow",
    "write_report",
]
