"""Pipeline engine: runs a :class:`PipelineSpec` stage by stage.

Provides the ``PipelineEngine`` class. Per run it:

1. evaluates each stage's run-condition, records Skipped when false
   (running a cleanup-classified post-action anyway);
2. executes the stage body under the stage deadline (itself capped by the
   pipeline deadline), then the stage post-action whatever happened;
3. on a failed mandatory stage, marks every remaining stage Aborted;
4. runs the terminal block (``finally`` invocations, notification) exactly
   once on every exit path, including interruption;
5. returns the finalized, immutable :class:`PipelineReport`.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from contextlib import nullcontext
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path

from deploypipe.credentials import CredentialError, CredentialVault
from deploypipe.exceptions import FailureKind
from deploypipe.notify import LogNotifier, Notifier, RunSummary
from deploypipe.pipeline.context import RunContext
from deploypipe.pipeline.deadline import Deadline
from deploypipe.pipeline.exceptions import DeploymentVerificationError, StageError
from deploypipe.pipeline.lock import run_lock
from deploypipe.pipeline.models import (
    ActionResult,
    Failure,
    Invocation,
    PipelineReport,
    PipelineSpec,
    PostAction,
    RunParameters,
    StageDefinition,
    StageKind,
    StageResult,
    StageStatus,
    Verdict,
)
from deploypipe.pipeline.process import ExternalProcessRunner
from deploypipe.pipeline.report import write_report
from deploypipe.pipeline.stages import StageExecutor, StageRun, collect_files, default_executors
from deploypipe.tagging import ArtifactTagger

logger = logging.getLogger(__name__)

#: Name of the terminal block in reports and credential scopes.
TERMINAL_NAME = "finally"


@dataclass(frozen=True, slots=True)
class PlannedStage:
    """One line of a run plan.

    Attributes:
        name: Stage name.
        kind: Stage kind.
        will_run: True/False, or None when it depends on earlier results.
        condition: Run-condition description.
        mandatory: Whether a failure would abort the run.
    """

    name: str
    kind: StageKind
    will_run: bool | None
    condition: str
    mandatory: bool


class _DependsOnResults(Exception):
    """Raised by the plan context when a condition needs stage results."""


class _PlanContext(RunContext):
    def stage_succeeded(self, name: str) -> bool:
        raise _DependsOnResults(name)


class PipelineEngine:
    """Execute pipelines.

    Args:
        runner: Process runner (one bound to ``workspace`` by default).
        vault: Credential vault (empty by default).
        workspace: Directory the run works in.
        notifier: Receives the run summary in the terminal block.
        executors: Stage executors by kind (see :func:`default_executors`).
        tagger: Artifact tagger.
        clock: Monotonic clock.
        sleep: Sleep function used by polling stages.
        lock: Hold the per-pipeline run lock while running.
        write_reports: Write the JSON report into the report directory.

    Examples:
        >>> from deploypipe.pipeline.models import Invocation, PipelineSpec, RunParameters, StageDefinition
        >>> spec = PipelineSpec(
        ...     name="demo",
        ...     stages=(StageDefinition(name="hello", invocations=(Invocation(command="echo", args=("hi",)),)),),
        ... )
        >>> report = PipelineEngine(workspace="/tmp/demo").run(spec, RunParameters())  # doctest: +SKIP
        >>> report.verdict  # doctest: +SKIP
        <Verdict.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        *,
        runner: ExternalProcessRunner | None = None,
        vault: CredentialVault | None = None,
        workspace: str | Path = ".",
        notifier: Notifier | None = None,
        executors: Mapping[StageKind, StageExecutor] | None = None,
        tagger: ArtifactTagger | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        lock: bool = True,
        write_reports: bool = True,
    ) -> None:
        self._workspace = Path(workspace)
        self._runner = runner or ExternalProcessRunner(self._workspace)
        self._vault = vault or CredentialVault()
        self._notifier = notifier or LogNotifier()
        self._executors = dict(executors) if executors is not None else default_executors()
        self._tagger = tagger or ArtifactTagger()
        self._clock = clock
        self._sleep = sleep
        self._lock = lock
        self._write_reports = write_reports

    @property
    def workspace(self) -> Path:
        """Directory the engine runs in."""
        return self._workspace

    def run(self, spec: PipelineSpec, parameters: RunParameters) -> PipelineReport:
        """Run ``spec`` with ``parameters``.

        Stage failures never raise: they are recorded in the report. Only
        interruption (``KeyboardInterrupt`` and friends) propagates, after
        the terminal block ran.

        Args:
            spec: Pipeline to run.
            parameters: Run parameters.

        Returns:
            The finalized report.

        Raises:
            PipelineLockedError: Another run of the same pipeline is active.
        """
        run_id = _new_run_id()
        lock = run_lock(self._workspace, spec.name, run_id=run_id) if self._lock else nullcontext()
        with lock:
            return self._run_locked(spec, parameters, run_id)

    def plan(self, spec: PipelineSpec, parameters: RunParameters) -> list[PlannedStage]:
        """List which stages a run with ``parameters`` would execute.

        Nothing is executed. Conditions on earlier stage results are
        reported as undecided (``will_run=None``).
        """
        context = _PlanContext(spec, parameters, workspace=self._workspace, run_id="plan", tagger=self._tagger)
        planned = []
        for stage in spec.stages:
            try:
                will_run: bool | None = bool(stage.when(context))
            except _DependsOnResults:
                will_run = None
            planned.append(
                PlannedStage(
                    name=stage.name,
                    kind=stage.kind,
                    will_run=will_run,
                    condition=stage.when.describe(),
                    mandatory=spec.is_mandatory(stage),
                )
            )
        return planned

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def _run_locked(self, spec: PipelineSpec, parameters: RunParameters, run_id: str) -> PipelineReport:
        context = RunContext(spec, parameters, workspace=self._workspace, run_id=run_id, tagger=self._tagger)
        deadline = Deadline(spec.deadline, clock=self._clock)
        started_at = datetime.now(timezone.utc)
        start = self._clock()
        results: list[StageResult] = []
        abort_reason: str | None = None

        logger.info(
            "Pipeline '%s' run %s started (%d stages, env=%s, gate_policy=%s)",
            spec.name,
            run_id,
            len(spec.stages),
            parameters.deploy_environment.value,
            spec.gate_policy.value,
        )

        try:
            for stage in spec.stages:
                if deadline.expired:
                    abort_reason = f"pipeline deadline of {spec.deadline:g}s exceeded"
                    logger.error("Pipeline '%s': %s", spec.name, abort_reason)
                    break

                result = self._run_stage(spec, stage, context, deadline)
                context.record(result)
                results.append(result)
                logger.info("Stage '%s' -> %s (%.3fs)", result.name, result.status.value, result.duration)

                if result.status == StageStatus.FAILED:
                    if result.mandatory:
                        abort_reason = f"mandatory stage '{stage.name}' failed"
                        break
                    logger.warning("Stage '%s' failed but is not mandatory, continuing", stage.name)
        except BaseException:
            abort_reason = "run interrupted"
            logger.error("Pipeline '%s' run %s interrupted", spec.name, run_id)
            raise
        finally:
            report = self._finalize(spec, context, results, abort_reason, started_at, start)
        return report

    def _run_stage(
        self,
        spec: PipelineSpec,
        stage: StageDefinition,
        context: RunContext,
        deadline: Deadline,
    ) -> StageResult:
        mandatory = spec.is_mandatory(stage)
        try:
            enabled = bool(stage.when(context))
        except Exception as exc:
            logger.exception("Stage '%s': run-condition raised", stage.name)
            return StageResult(
                name=stage.name,
                status=StageStatus.FAILED,
                failure=Failure(FailureKind.INTERNAL_ERROR, f"run-condition failed: {exc}"),
                mandatory=mandatory,
            )

        if not enabled:
            logger.info("Stage '%s' skipped (when: %s)", stage.name, stage.when.describe())
            post = None
            if stage.post is not None and stage.post.cleanup:
                post = self._run_post(spec, stage, stage.post, context)
            return StageResult(name=stage.name, status=StageStatus.SKIPPED, post=post, mandatory=mandatory)

        # Timeout cascade: stage timeout > pipeline default, capped by the pipeline deadline
        stage_deadline = deadline.child(stage.timeout or spec.default_timeout)
        run = self._stage_run(stage.name, context, stage_deadline)
        executor = self._executors[stage.kind]
        logger.info("Stage '%s' started (%s, mandatory=%s)", stage.name, stage.kind.value, mandatory)

        start = self._clock()
        failure: Failure | None = None
        post: ActionResult | None = None
        try:
            failure = self._execute(executor, stage, run)
        finally:
            duration = self._clock() - start
            for name, value in run.exports.items():
                context.export(name, value)
            if stage.post is not None:
                post = self._run_post(spec, stage, stage.post, context)

        return StageResult(
            name=stage.name,
            status=StageStatus.SUCCEEDED if failure is None else StageStatus.FAILED,
            failure=failure,
            invocations=tuple(run.results),
            warnings=tuple(run.warnings),
            duration=duration,
            post=post,
            details=dict(run.details),
            mandatory=mandatory,
        )

    @staticmethod
    def _execute(executor: StageExecutor, stage: StageDefinition, run: StageRun) -> Failure | None:
        try:
            executor.execute(stage, run)
        except (StageError, CredentialError) as exc:
            if isinstance(exc, DeploymentVerificationError) and exc.state is not None:
                run.details.setdefault("deployment", exc.state.to_dict())
            logger.error("Stage '%s' failed [%s]: %s", stage.name, exc.kind.value, exc.reason)
            return Failure(exc.kind, exc.reason)
        except Exception as exc:
            logger.exception("Stage '%s' raised an unexpected error", stage.name)
            return Failure(FailureKind.INTERNAL_ERROR, f"{type(exc).__name__}: {exc}")
        return None

    # ------------------------------------------------------------------
    # Post-actions and terminal block (best-effort)
    # ------------------------------------------------------------------

    def _run_post(
        self, spec: PipelineSpec, stage: StageDefinition, post: PostAction, context: RunContext
    ) -> ActionResult:
        run = self._stage_run(stage.name, context, Deadline(spec.default_timeout, clock=self._clock))
        self._best_effort(run, post.invocations)

        collected: tuple[str, ...] = ()
        if post.collect:
            try:
                collected = collect_files(post.collect, context.workspace, context.report_dir / stage.name)
            except OSError as exc:
                run.warn(f"collecting {', '.join(post.collect)} failed: {exc}")
        logger.debug("Post-action of '%s': %d file(s) collected", stage.name, len(collected))
        return ActionResult(
            name=stage.name, results=tuple(run.results), collected=collected, warnings=tuple(run.warnings)
        )

    def _run_terminal(self, spec: PipelineSpec, context: RunContext) -> ActionResult:
        run = self._stage_run(TERMINAL_NAME, context, Deadline(spec.default_timeout, clock=self._clock))
        self._best_effort(run, spec.finally_actions)
        return ActionResult(name=TERMINAL_NAME, results=tuple(run.results), warnings=tuple(run.warnings))

    @staticmethod
    def _best_effort(run: StageRun, invocations: tuple[Invocation, ...]) -> None:
        for invocation in invocations:
            try:
                run.invoke(invocation, best_effort=True)
            except (StageError, CredentialError) as exc:
                run.warn(exc.reason)
            except Exception as exc:
                logger.exception("Cleanup invocation %s raised", invocation.display())
                run.warn(f"{invocation.display()}: {type(exc).__name__}: {exc}")

    def _stage_run(self, name: str, context: RunContext, deadline: Deadline) -> StageRun:
        return StageRun(
            name,
            context,
            runner=self._runner,
            vault=self._vault,
            deadline=deadline,
            sleep=self._sleep,
            clock=self._clock,
        )

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _finalize(
        self,
        spec: PipelineSpec,
        context: RunContext,
        results: list[StageResult],
        abort_reason: str | None,
        started_at: datetime,
        start: float,
    ) -> PipelineReport:
        for stage in spec.stages[len(results) :]:
            results.append(
                StageResult(
                    name=stage.name,
                    status=StageStatus.ABORTED,
                    details={"aborted_by": abort_reason or "run aborted"},
                    mandatory=spec.is_mandatory(stage),
                )
            )

        terminal = self._run_terminal(spec, context)

        gates = {stage.name for stage in spec.stages if stage.kind == StageKind.QUALITY_GATE}
        failed = abort_reason is not None or any(
            r.status == StageStatus.FAILED and (r.mandatory or r.name in gates) for r in results
        )
        try:
            artifact = context.artifact
        except ValueError:
            artifact = None
        report = PipelineReport(
            name=spec.name,
            run_id=context.run_id,
            verdict=Verdict.FAILED if failed else Verdict.SUCCEEDED,
            stages=tuple(results),
            terminal=terminal,
            parameters=context.parameters.as_dict(),
            artifact=artifact,
            namespace=context.namespace,
            started_at=started_at,
            duration=self._clock() - start,
        )
        report = replace(report, notified=self._notify(report))

        if self._write_reports:
            try:
                write_report(report, context.report_dir)
            except OSError:
                logger.exception("Cannot write report of run %s", context.run_id)

        logger.info(
            "Pipeline '%s' run %s finished: %s (%.3fs)",
            spec.name,
            context.run_id,
            report.verdict.value,
            report.duration,
        )
        return report

    def _notify(self, report: PipelineReport) -> bool:
        try:
            return self._notifier.notify(RunSummary.from_report(report))
        except Exception:
            logger.exception("Notifier raised for run %s", report.run_id)
            return False


def _new_run_id() -> str:
    return f"{datetime.now(timezone.utc):%Y%m%dT%H%M%SZ}-{uuid.uuid4().hex[:6]}"


__all__ = [
    "TERMINAL_NAME",
    "PipelineEngine",
    "PlannedStage",
]
