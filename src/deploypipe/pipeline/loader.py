"""Build a :class:`PipelineSpec` from configuration.

``pipeline.stages`` in ``deploypipe.conf.yml`` declares stages
explicitly::

    pipeline:
      name: orders
      stages:
        - name: build
          invocations:
            - command: mvn
              args: [-B, clean, package]
        - name: unit-tests
          when: {param: skip_tests, equals: false}
          invocations: ["mvn -B test"]
          post:
            collect: ["target/surefire-reports/*.xml"]
            cleanup: true
      finally:
        - "docker rmi -f {image}"

Without ``stages`` the standard workflow is built from the other
``pipeline`` settings (see :mod:`deploypipe.pipeline.workflow`).
"""

from __future__ import annotations

import shlex
from collections.abc import Mapping
from typing import Any

from deploypipe.credentials.models import CredentialBinding, CredentialMode
from deploypipe.pipeline.conditions import parse_condition
from deploypipe.pipeline.exceptions import PipelineConfigError
from deploypipe.pipeline.models import (
    GatePolicy,
    Invocation,
    PipelineSpec,
    PostAction,
    StageDefinition,
    StageKind,
)


def load_spec(
    config: Mapping[str, Any] | None = None,
    *,
    gate_policy: GatePolicy | str | None = None,
) -> PipelineSpec:
    """Build the pipeline spec from a loaded configuration.

    Args:
        config: Full configuration (defaults to the active one).
        gate_policy: Overrides ``pipeline.gate_policy`` (CLI ``--fast``).

    Returns:
        The validated spec.

    Raises:
        PipelineConfigError: If the definition is invalid.
    """
    if config is None:
        # Lazy import to keep the pipeline package usable without config
        from deploypipe.config import get_config  # pylint: disable=import-outside-toplevel

        config = get_config()

    section = config.get("pipeline") or {}
    if not isinstance(section, Mapping):
        raise PipelineConfigError("'pipeline' must be a mapping")
    if gate_policy is not None:
        section = {**dict(section), "gate_policy": gate_policy}

    if section.get("stages"):
        return parse_pipeline_spec(section)

    from deploypipe.pipeline.workflow import standard_workflow  # pylint: disable=import-outside-toplevel

    return standard_workflow(section)


def parse_pipeline_spec(data: Mapping[str, Any]) -> PipelineSpec:
    """Parse an explicit ``pipeline`` section into a PipelineSpec.

    Raises:
        PipelineConfigError: If config is invalid.
    """
    name = str(data.get("name") or "")
    if not name:
        raise PipelineConfigError("Pipeline is missing 'name'")

    raw_stages = data.get("stages", [])
    if not isinstance(raw_stages, list):
        raise PipelineConfigError(f"Pipeline '{name}': 'stages' must be a list")

    stages: list[StageDefinition] = []
    for index, raw_stage in enumerate(raw_stages):
        if not isinstance(raw_stage, Mapping):
            raise PipelineConfigError(f"Pipeline '{name}': stage {index} must be a mapping")
        stages.append(_parse_stage(name, index, raw_stage))

    raw_finally = data.get("finally") or []
    if not isinstance(raw_finally, list):
        raise PipelineConfigError(f"Pipeline '{name}': 'finally' must be a list")
    finally_actions = tuple(
        parse_invocation(name, "finally", raw, best_effort=True) for raw in raw_finally
    )

    return PipelineSpec(name=name, stages=tuple(stages), finally_actions=finally_actions, **spec_settings(data))


def spec_settings(data: Mapping[str, Any]) -> dict[str, Any]:
    """Pipeline-level settings shared by explicit and standard pipelines."""
    name = data.get("name") or "pipeline"
    raw_policy = data.get("gate_policy") or GatePolicy.ENFORCE
    try:
        gate_policy = GatePolicy(getattr(raw_policy, "value", raw_policy))
    except ValueError:
        raise PipelineConfigError(f"Pipeline '{name}': invalid gate_policy {raw_policy!r}") from None

    namespaces = (data.get("kubernetes") or {}).get("namespaces") or {}
    if not isinstance(namespaces, Mapping):
        raise PipelineConfigError(f"Pipeline '{name}': 'kubernetes.namespaces' must be a mapping")

    return {
        "deadline": parse_seconds(name, "deadline", data.get("deadline", 3600.0)),
        "default_timeout": parse_seconds(name, "default_timeout", data.get("default_timeout", 900.0)),
        "gate_policy": gate_policy,
        "image_repository": (data.get("image") or {}).get("repository") or None,
        "namespaces": {str(k): str(v) for k, v in namespaces.items()},
        "report_dir": str(data.get("report_dir") or "reports"),
    }


def parse_seconds(pipeline_name: str, key: str, value: Any) -> float:
    """Parse a duration in seconds.

    Raises:
        PipelineConfigError: If the value is not a number.
    """
    try:
        return float(value)
    except (TypeError, ValueError):
        raise PipelineConfigError(f"Pipeline '{pipeline_name}': invalid {key} {value!r}") from None


def _parse_stage(pipeline_name: str, index: int, data: Mapping[str, Any]) -> StageDefinition:
    """Parse raw stage config data into a StageDefinition.

    Args:
        pipeline_name: Parent pipeline name (for error messages).
        index: Stage index (for error messages).
        data: Raw stage config.

    Returns:
        Validated StageDefinition.

    Raises:
        PipelineConfigError: If stage config is invalid.
    """
    stage_name = data.get("name")
    if not stage_name:
        raise PipelineConfigError(f"Pipeline '{pipeline_name}': stage {index} missing 'name'")

    raw_kind = data.get("kind", "command")
    try:
        kind = StageKind(raw_kind)
    except ValueError:
        raise PipelineConfigError(
            f"Pipeline '{pipeline_name}': stage '{stage_name}' invalid kind {raw_kind!r}"
        ) from None

    raw_invocations = data.get("invocations") or []
    if not isinstance(raw_invocations, list):
        raise PipelineConfigError(f"Pipeline '{pipeline_name}': stage '{stage_name}' 'invocations' must be a list")

    timeout = data.get("timeout")
    if timeout is not None:
        timeout = parse_seconds(pipeline_name, f"timeout of stage '{stage_name}'", timeout)

    options = data.get("options") or {}
    if not isinstance(options, Mapping):
        raise PipelineConfigError(f"Pipeline '{pipeline_name}': stage '{stage_name}' 'options' must be a mapping")

    return StageDefinition(
        name=str(stage_name),
        kind=kind,
        invocations=tuple(parse_invocation(pipeline_name, stage_name, raw) for raw in raw_invocations),
        when=parse_condition(data.get("when")),
        post=_parse_post(pipeline_name, stage_name, data.get("post")),
        mandatory=bool(data.get("mandatory", True)),
        timeout=timeout,
        options=dict(options),
    )


def _parse_post(pipeline_name: str, stage_name: str, data: Any) -> PostAction | None:
    if data is None:
        return None
    if not isinstance(data, Mapping):
        raise PipelineConfigError(f"Pipeline '{pipeline_name}': stage '{stage_name}' 'post' must be a mapping")
    collect = data.get("collect") or []
    if isinstance(collect, str):
        collect = [collect]
    return PostAction(
        invocations=tuple(
            parse_invocation(pipeline_name, stage_name, raw, best_effort=True)
            for raw in data.get("invocations") or []
        ),
        collect=tuple(str(pattern) for pattern in collect),
        cleanup=bool(data.get("cleanup", False)),
    )


def parse_invocation(
    pipeline_name: str,
    stage_name: str,
    data: Any,
    *,
    best_effort: bool | None = None,
) -> Invocation:
    """Parse one invocation.

    A plain string is split like a shell command line (no shell is used
    to run it).

    Args:
        pipeline_name: Parent pipeline name (for error messages).
        stage_name: Owning stage (for error messages).
        data: String or mapping.
        best_effort: Forces the best-effort flag.

    Raises:
        PipelineConfigError: If the invocation is invalid.

    Examples:
        >>> parse_invocation("p", "s", "docker push {image}").args
        ('push', '{image}')
    """
    where = f"Pipeline '{pipeline_name}': stage '{stage_name}'"
    if isinstance(data, str):
        parts = shlex.split(data)
        if not parts:
            raise PipelineConfigError(f"{where}: empty invocation")
        return Invocation(command=parts[0], args=tuple(parts[1:]), best_effort=bool(best_effort))
    if not isinstance(data, Mapping):
        raise PipelineConfigError(f"{where}: invocation must be a string or a mapping")

    command = data.get("command")
    if not command:
        raise PipelineConfigError(f"{where}: invocation missing 'command'")

    raw_args = data.get("args", [])
    if isinstance(raw_args, str):
        raw_args = [raw_args]
    timeout = data.get("timeout")
    if timeout is not None:
        timeout = parse_seconds(pipeline_name, f"timeout of {command!r} in stage '{stage_name}'", timeout)
    env = data.get("env") or {}
    if not isinstance(env, Mapping):
        raise PipelineConfigError(f"{where}: 'env' must be a mapping")

    return Invocation(
        command=str(command),
        args=tuple(str(a) for a in raw_args),
        working_dir=data.get("working_dir"),
        credentials=tuple(_parse_binding(where, raw) for raw in data.get("credentials") or []),
        timeout=timeout,
        best_effort=bool(data.get("best_effort", False)) if best_effort is None else best_effort,
        env={str(k): str(v) for k, v in env.items()},
        capture=data.get("capture"),
    )


def _parse_binding(where: str, data: Any) -> CredentialBinding:
    if isinstance(data, str):
        return CredentialBinding(data)
    if not isinstance(data, Mapping) or not data.get("ref"):
        raise PipelineConfigError(f"{where}: credential binding needs 'ref'")
    raw_mode = data.get("mode", "env")
    try:
        mode = CredentialMode(raw_mode)
    except ValueError:
        raise PipelineConfigError(f"{where}: invalid credential mode {raw_mode!r}") from None
    return CredentialBinding(str(data["ref"]), mode=mode, target=data.get("target"))


__all__ = [
    "load_spec",
    "parse_invocation",
    "parse_pipeline_spec",
    "parse_seconds",
    "spec_settings",
]
