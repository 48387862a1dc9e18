"""Stage executor protocol and the per-stage execution scratchpad."""

from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from deploypipe.pipeline.exceptions import NonZeroExitError, StageError, StageTimeoutError, ToolNotFoundError
from deploypipe.pipeline.models import Invocation, ProcessOutcome, ProcessResult

if TYPE_CHECKING:
    from deploypipe.credentials import Credential, CredentialVault
    from deploypipe.pipeline.context import RunContext
    from deploypipe.pipeline.deadline import Deadline
    from deploypipe.pipeline.models import StageDefinition
    from deploypipe.pipeline.process import ExternalProcessRunner

logger = logging.getLogger(__name__)


@runtime_checkable
class StageExecutor(Protocol):
    """Protocol implemented by every stage kind.

    ``execute`` returns normally when the stage succeeded and raises a
    :class:`~deploypipe.pipeline.exceptions.StageError` (or a credential
    error) when it failed.

    Examples:
        >>> def run_stage(executor: StageExecutor, stage, run) -> None:
        ...     executor.execute(stage, run)
    """

    def execute(self, stage: StageDefinition, run: StageRun) -> None:
        """Execute the stage.

        Args:
            stage: Stage definition.
            run: Execution scratchpad bound to the current run.
        """
        ...


class StageRun:
    """What one stage accumulates while it executes.

    The engine creates one per stage (and per post-action), hands it to
    the executor and folds it into a
    :class:`~deploypipe.pipeline.models.StageResult` afterwards. Executors
    never touch the run context directly.

    Args:
        name: Stage name (also the credential scope).
        context: Current run context (read-only use).
        runner: Process runner.
        vault: Credential vault.
        deadline: Deadline of the stage.
        sleep: Sleep function for polling loops.
        clock: Monotonic clock for polling loops.
    """

    def __init__(
        self,
        name: str,
        context: RunContext,
        *,
        runner: ExternalProcessRunner,
        vault: CredentialVault,
        deadline: Deadline,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.context = context
        self.deadline = deadline
        self.sleep = sleep
        self.clock = clock
        self.results: list[ProcessResult] = []
        self.warnings: list[str] = []
        self.details: dict[str, Any] = {}
        self.exports: dict[str, str] = {}
        self._runner = runner
        self._vault = vault

    def render(self, text: str) -> str:
        """Render ``{name}`` placeholders against the run context."""
        return self.context.render(text, stage=self.name)

    def workspace_path(self, path: str | Path) -> Path:
        """Resolve ``path`` against the workspace."""
        path = Path(path)
        return path if path.is_absolute() else self.context.workspace / path

    @contextmanager
    def credentials(self, references: Iterable[str]) -> Iterator[dict[str, Credential]]:
        """Resolve credentials for this stage, scrubbed when the block exits."""
        with self._vault.scoped(references, scope=self.name) as resolved:
            yield resolved

    def execute(self, invocation: Invocation) -> ProcessResult:
        """Render and run ``invocation`` without recording or checking it.

        Raises:
            StageTimeoutError: The stage deadline already elapsed.
            TemplateError: The invocation cannot be rendered.
            CredentialError: A credential cannot be resolved.
        """
        rendered = self.context.render_invocation(invocation, stage=self.name)
        if self.deadline.expired:
            raise StageTimeoutError(self.name, self.deadline.seconds)
        timeout = self.deadline.cap(rendered.timeout)
        with self.credentials(binding.reference for binding in rendered.credentials) as resolved:
            return self._runner.execute(rendered, timeout=timeout, credentials=resolved)

    def invoke(self, invocation: Invocation, *, best_effort: bool | None = None) -> ProcessResult:
        """Run ``invocation``, record it, and fail the stage on error.

        Args:
            invocation: Invocation to run.
            best_effort: Override of ``invocation.best_effort``.

        Returns:
            The process result (also when a tolerated failure happened).

        Raises:
            StageError: The invocation failed and is not best-effort.
        """
        result = self.execute(invocation)
        self.results.append(result)

        if result.ok:
            if invocation.capture:
                self.exports[invocation.capture] = result.stdout.strip()
            return result

        error = self.error_for(invocation, result)
        tolerated = invocation.best_effort if best_effort is None else best_effort
        if not tolerated:
            raise error
        self.warn(error.reason)
        return result

    def run_body(self, invocations: Iterable[Invocation], *, best_effort: bool | None = None) -> None:
        """Invoke ``invocations`` in order."""
        for invocation in invocations:
            self.invoke(invocation, best_effort=best_effort)

    def error_for(self, invocation: Invocation, result: ProcessResult) -> StageError:
        """Map a failed process result to the matching stage error."""
        if result.outcome == ProcessOutcome.NOT_FOUND:
            return ToolNotFoundError(self.name, invocation.command)
        if result.outcome == ProcessOutcome.TIMED_OUT:
            timeout = min(invocation.timeout or self.deadline.seconds, self.deadline.seconds)
            return StageTimeoutError(self.name, timeout, what=result.command)
        detail = _last_line(result.stderr) or _last_line(result.stdout)
        return NonZeroExitError(self.name, result.command, result.exit_code or 0, detail)

    def warn(self, message: str) -> None:
        """Record a tolerated failure."""
        logger.warning("Stage '%s': %s (tolerated)", self.name, message)
        self.warnings.append(message)


def collect_files(patterns: Iterable[str], workspace: Path, destination: Path) -> tuple[str, ...]:
    """Copy files matching ``patterns`` (relative to ``workspace``) into ``destination``.

    Each file keeps its path relative to ``workspace`` under ``destination``.
    No match is not an error.

    Returns:
        The copied files, relative to ``workspace``.
    """
    copied: list[str] = []
    for pattern in patterns:
        matches = sorted(p for p in workspace.glob(pattern) if p.is_file())
        if not matches:
            logger.info("No files match %s", pattern)
            continue
        for path in matches:
            relative = path.relative_to(workspace)
            target = destination / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, target)
            copied.append(relative.as_posix())
    return tuple(copied)


def _last_line(text: str) -> str:
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    return lines[-1] if lines else ""


__all__ = [
    "StageExecutor",
    "StageRun",
    "collect_files",
]
