"""Show which stages a run would execute."""

from __future__ import annotations

import json
import sys
from pathlib import Path

from rich.table import Table

from deploypipe.cli.common import (
    BUILD_NUMBER_OPTION,
    CONFIG_OPTION,
    ENV_OPTION,
    FAST_OPTION,
    JSON_OPTION,
    REVISION_OPTION,
    SKIP_ANALYSIS_OPTION,
    SKIP_TESTS_OPTION,
    WORKSPACE_OPTION,
    console,
    load_run_inputs,
    load_settings,
    resolve_workspace,
)
from deploypipe.pipeline import DeployEnvironment, PipelineEngine


def _will_run_display(will_run: bool | None) -> str:
    if will_run is None:
        return "[yellow]depends[/]"
    return "[green]yes[/]" if will_run else "[dim]skip[/]"


def plan(
    env: DeployEnvironment = ENV_OPTION,
    skip_tests: bool = SKIP_TESTS_OPTION,
    skip_static_analysis: bool = SKIP_ANALYSIS_OPTION,
    build_number: int = BUILD_NUMBER_OPTION,
    revision: str | None = REVISION_OPTION,
    config_path: Path | None = CONFIG_OPTION,
    workspace: Path | None = WORKSPACE_OPTION,
    fast: bool = FAST_OPTION,
    as_json: bool = JSON_OPTION,
) -> None:
    """List the stages a run with these parameters would execute (nothing runs)."""
    config = load_settings(config_path)
    spec, parameters = load_run_inputs(
        config,
        env=env,
        skip_tests=skip_tests,
        skip_static_analysis=skip_static_analysis,
        build_number=build_number,
        revision=revision,
        fast=fast,
    )
    engine = PipelineEngine(workspace=resolve_workspace(config, workspace))
    planned = engine.plan(spec, parameters)
    namespace = spec.namespace_for(parameters.deploy_environment)

    if as_json:
        payload = {
            "name": spec.name,
            "namespace": namespace,
            "gate_policy": spec.gate_policy.value,
            "stages": [
                {
                    "name": p.name,
                    "kind": p.kind.value,
                    "will_run": p.will_run,
                    "condition": p.condition,
                    "mandatory": p.mandatory,
                }
                for p in planned
            ],
        }
        sys.stdout.write(json.dumps(payload, indent=2) + "\n")
        return

    table = Table(title=f"{spec.name} -> {namespace} (gate: {spec.gate_policy.value})")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Stage", style="cyan")
    table.add_column("Kind")
    table.add_column("Runs", justify="center")
    table.add_column("Mandatory", justify="center")
    table.add_column("Condition", style="dim")
    for index, item in enumerate(planned, start=1):
        table.add_row(
            str(index),
            item.name,
            item.kind.value,
            _will_run_display(item.will_run),
            "yes" if item.mandatory else "no",
            item.condition,
        )
    console.print(table)


__all__ = ["plan"]
