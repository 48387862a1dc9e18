"""Run a pipeline."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import typer
from rich.panel import Panel
from rich.table import Table

from deploypipe.cli.common import (
    BUILD_NUMBER_OPTION,
    CONFIG_OPTION,
    ENV_OPTION,
    EXIT_LOCKED,
    FAST_OPTION,
    JSON_OPTION,
    REVISION_OPTION,
    SKIP_ANALYSIS_OPTION,
    SKIP_TESTS_OPTION,
    WORKSPACE_OPTION,
    console,
    exit_error,
    load_run_inputs,
    load_settings,
    resolve_workspace,
)
from deploypipe.credentials import CredentialVault
from deploypipe.notify import build_notifier
from deploypipe.pipeline import (
    DeployEnvironment,
    PipelineEngine,
    PipelineLockedError,
    PipelineReport,
    StageResult,
    StageStatus,
)

_STATUS_STYLES = {
    StageStatus.SUCCEEDED: "green",
    StageStatus.FAILED: "red",
    StageStatus.SKIPPED: "dim",
    StageStatus.ABORTED: "yellow",
}


# ─────────────────────────────────────────────────────────────────────────────
# Rendering
# ─────────────────────────────────────────────────────────────────────────────


def _stage_detail(result: StageResult) -> str:
    if result.failure is not None:
        suffix = "" if result.mandatory else " (not mandatory)"
        return f"[{result.failure.kind.value}] {result.failure.reason}{suffix}"
    if result.status == StageStatus.ABORTED:
        return str(result.details.get("aborted_by", ""))
    if result.warnings:
        return f"{len(result.warnings)} warning(s): {result.warnings[-1]}"
    if result.post is not None and result.post.collected:
        return f"{len(result.post.collected)} file(s) collected"
    return ""


def _render_report(report: PipelineReport) -> None:
    """Render a stage table inside a verdict panel."""
    table = Table(show_header=True, header_style="bold", expand=True)
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Detail", overflow="fold")
    for result in report.stages:
        style = _STATUS_STYLES[result.status]
        table.add_row(
            result.name,
            f"[{style}]{result.status.value}[/]",
            f"{result.duration:.1f}s" if result.duration else "-",
            _stage_detail(result),
        )

    style = "green" if report.success else "red"
    title = f"{report.name} #{report.run_id}: {report.verdict.value.upper()}"
    console.print(Panel(table, title=title, style=style))

    if report.artifact is not None:
        console.print(f"Artifact: [bold]{report.artifact.tag}[/] (namespace {report.namespace})")
    for warning in report.terminal.warnings:
        console.print(f"[yellow]Cleanup warning:[/] {warning}")


def _render_json(report: PipelineReport) -> None:
    sys.stdout.write(json.dumps(report.to_dict(), indent=2) + "\n")


# ─────────────────────────────────────────────────────────────────────────────
# CLI command
# ─────────────────────────────────────────────────────────────────────────────


def run(
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
    """Run the pipeline.

    Exit codes: 0 (succeeded), 1 (failed), 2 (configuration error),
    3 (another run is active).
    """
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
    pipeline_section = config.get("pipeline") or {}
    engine = PipelineEngine(
        vault=CredentialVault.from_config(config),
        workspace=resolve_workspace(config, workspace),
        notifier=build_notifier(pipeline_section.get("notify")),
    )

    try:
        report = engine.run(spec, parameters)
    except PipelineLockedError as exc:
        exit_error(str(exc), code=EXIT_LOCKED)

    if as_json:
        _render_json(report)
    else:
        _render_report(report)
    raise typer.Exit(code=report.exit_code)


__all__ = ["run"]
