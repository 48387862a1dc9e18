"""Per-run state shared by the stages of one pipeline run.

A :class:`RunContext` holds everything that is run-wide rather than
process-wide: parameters, values exported by earlier stages (such as the
checked-out revision), the recorded stage results and the artifact
identifier. Stage executors read it; only the engine writes to it.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import replace
from pathlib import Path
from types import MappingProxyType
from typing import Any

from deploypipe.pipeline.exceptions import TemplateError
from deploypipe.pipeline.models import (
    Invocation,
    PipelineSpec,
    RunParameters,
    StageResult,
    StageStatus,
)
from deploypipe.pipeline.process import USERNAME_PLACEHOLDER
from deploypipe.tagging import ArtifactIdentifier, ArtifactTagger

_PLACEHOLDER = re.compile(r"\{([a-z_][a-z0-9_]*)\}")


def registry_host(repository: str) -> str:
    """Registry host of an image repository.

    Examples:
        >>> registry_host("registry.example.com:5000/team/app")
        'registry.example.com:5000'
        >>> registry_host("team/app")
        'docker.io'
    """
    first, sep, _ = repository.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first
    return "docker.io"


class RunContext:
    """State of one pipeline run.

    Args:
        spec: Pipeline being run.
        parameters: Run parameters.
        workspace: Workspace directory.
        run_id: Unique id of the run.
        tagger: Artifact tagger.
    """

    def __init__(
        self,
        spec: PipelineSpec,
        parameters: RunParameters,
        *,
        workspace: str | Path,
        run_id: str,
        tagger: ArtifactTagger | None = None,
    ) -> None:
        self.spec = spec
        self.parameters = parameters
        self.workspace = Path(workspace)
        self.run_id = run_id
        self._tagger = tagger or ArtifactTagger()
        self._exports: dict[str, str] = {}
        self._results: dict[str, StageResult] = {}
        self._artifact: ArtifactIdentifier | None = None

    # ------------------------------------------------------------------
    # Read side (stages and conditions)
    # ------------------------------------------------------------------

    @property
    def namespace(self) -> str:
        """Target namespace of the run."""
        return self.spec.namespace_for(self.parameters.deploy_environment)

    @property
    def report_dir(self) -> Path:
        """Directory receiving reports and collected files."""
        return self.workspace / self.spec.report_dir

    @property
    def exports(self) -> Mapping[str, str]:
        """Values exported by earlier stages (read-only)."""
        return MappingProxyType(self._exports)

    @property
    def results(self) -> Mapping[str, StageResult]:
        """Recorded stage results by name (read-only)."""
        return MappingProxyType(self._results)

    @property
    def revision(self) -> str | None:
        """Source revision: captured by a stage, else the run parameter."""
        return self._exports.get("revision") or self.parameters.revision

    @property
    def artifact(self) -> ArtifactIdentifier | None:
        """Artifact identifier, fixed the first time a revision is known."""
        if self._artifact is None and self.revision:
            self._artifact = self._tagger.tag(self.parameters.build_number, self.revision)
        return self._artifact

    @property
    def image(self) -> str | None:
        """Full image reference, when repository and revision are known."""
        artifact = self.artifact
        if artifact is None or not self.spec.image_repository:
            return None
        return artifact.reference(self.spec.image_repository)

    def param(self, name: str) -> Any:
        """Parameter (or exported value) ``name``, None when unknown."""
        if name in self._exports:
            return self._exports[name]
        return self.parameters.as_dict().get(name)

    def stage_succeeded(self, name: str) -> bool:
        """Whether stage ``name`` already ran and succeeded."""
        result = self._results.get(name)
        return result is not None and result.status == StageStatus.SUCCEEDED

    def values(self) -> dict[str, Any]:
        """Every placeholder value (None when not available yet)."""
        artifact = self.artifact
        repository = self.spec.image_repository
        values: dict[str, Any] = {
            **self.parameters.as_dict(),
            "image": self.image,
            "image_repository": repository,
            "image_tag": artifact.tag if artifact else None,
            "namespace": self.namespace,
            "registry": registry_host(repository) if repository else None,
            "report_dir": str(self.report_dir),
            "revision": self.revision,
            "short_revision": artifact.short_hash if artifact else None,
            "workspace": str(self.workspace),
        }
        values.update(self._exports)
        return values

    def render(self, text: str, *, stage: str) -> str:
        """Substitute ``{name}`` placeholders in ``text``.

        Unknown names are left as they are.

        Raises:
            TemplateError: A known value is not available yet.

        Examples:
            >>> from deploypipe.pipeline.models import PipelineSpec, RunParameters, StageDefinition, Invocation
            >>> spec = PipelineSpec(
            ...     name="app",
            ...     stages=(StageDefinition(name="s", invocations=(Invocation(command="true"),)),),
            ... )
            >>> ctx = RunContext(spec, RunParameters(build_number=3), workspace="/w", run_id="r")
            >>> ctx.render("deploy to {namespace} {other}", stage="s")
            'deploy to app-dev {other}'
        """
        values = self.values()

        def replacer(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in values:
                return match.group(0)
            value = values[name]
            if value is None:
                raise TemplateError(stage, f"'{{{name}}}' is not available yet")
            if isinstance(value, bool):
                return "true" if value else "false"
            return str(value)

        return _PLACEHOLDER.sub(replacer, text)

    def render_invocation(self, invocation: Invocation, *, stage: str) -> Invocation:
        """Render the arguments, environment and working directory of ``invocation``.

        Raises:
            TemplateError: A placeholder cannot be rendered, or
                ``{username:REF}`` names an unbound credential.
        """
        bound = {binding.reference for binding in invocation.credentials}
        for arg in invocation.args:
            for reference in USERNAME_PLACEHOLDER.findall(arg):
                if reference not in bound:
                    raise TemplateError(stage, f"'{{username:{reference}}}' requires credential '{reference}'")

        return replace(
            invocation,
            args=tuple(self.render(arg, stage=stage) for arg in invocation.args),
            env={key: self.render(value, stage=stage) for key, value in invocation.env.items()},
            working_dir=self.render(invocation.working_dir, stage=stage) if invocation.working_dir else None,
        )

    # ------------------------------------------------------------------
    # Write side (engine only)
    # ------------------------------------------------------------------

    def record(self, result: StageResult) -> None:
        """Record a finished stage."""
        self._results[result.name] = result

    def export(self, name: str, value: str) -> None:
        """Publish a value for later stages."""
        self._exports[name] = value


__all__ = [
    "RunContext",
    "registry_host",
]
