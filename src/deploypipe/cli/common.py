"""Shared CLI helpers: console, exit codes, option definitions, loading."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

import typer
from rich.console import Console

from deploypipe.config import ConfigError, load_config
from deploypipe.logging import init_logging
from deploypipe.pipeline import (
    DeployEnvironment,
    GatePolicy,
    PipelineConfigError,
    PipelineSpec,
    RunParameters,
    load_spec,
)

if TYPE_CHECKING:
    from box import Box

console = Console()

#: Exit status of a successful run.
EXIT_OK = 0
#: Exit status when the pipeline verdict is Failed.
EXIT_FAILED = 1
#: Exit status for configuration and usage errors.
EXIT_CONFIG = 2
#: Exit status when another run holds the lock.
EXIT_LOCKED = 3

ENV_OPTION = typer.Option(
    DeployEnvironment.DEV,
    "--env",
    "-e",
    case_sensitive=False,
    help="Deployment environment.",
)
SKIP_TESTS_OPTION = typer.Option(False, "--skip-tests", help="Skip the unit-test stage.")
SKIP_ANALYSIS_OPTION = typer.Option(
    False,
    "--skip-static-analysis",
    help="Skip static analysis and the quality gate.",
)
BUILD_NUMBER_OPTION = typer.Option(
    1,
    "--build-number",
    "-b",
    envvar="BUILD_NUMBER",
    min=1,
    help="Monotonic build number (env BUILD_NUMBER).",
)
REVISION_OPTION = typer.Option(None, "--revision", help="Source revision, when known before checkout.")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Configuration file (default: ./deploypipe.conf.yml).")
WORKSPACE_OPTION = typer.Option(None, "--workspace", "-w", help="Workspace directory (default: pipeline.workspace).")
FAST_OPTION = typer.Option(False, "--fast", help="Advisory quality gate: a failed gate does not abort the run.")
JSON_OPTION = typer.Option(False, "--json", "-j", help="Output as JSON for automation.")


def exit_error(message: str, code: int = EXIT_CONFIG) -> NoReturn:
    """Print an error and exit with ``code``."""
    console.print(f"[red]Error:[/] {message}")
    raise typer.Exit(code=code)


def load_settings(config_path: Path | None) -> Box:
    """Load configuration and set up logging from its ``logging`` section."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        exit_error(str(exc))

    logging_section = config.get("logging") or {}
    try:
        init_logging(
            logging_section.get("preset") or "dev",
            level=logging_section.get("level"),
            log_file=logging_section.get("file"),
        )
    except ValueError as exc:
        exit_error(f"Invalid logging configuration: {exc}")
    return config


def load_run_inputs(
    config: Box,
    *,
    env: DeployEnvironment,
    skip_tests: bool,
    skip_static_analysis: bool,
    build_number: int,
    revision: str | None,
    fast: bool,
) -> tuple[PipelineSpec, RunParameters]:
    """Build the pipeline definition and run parameters, exiting on invalid input."""
    try:
        spec = load_spec(config, gate_policy=GatePolicy.ADVISORY if fast else None)
        parameters = RunParameters(
            deploy_environment=env,
            skip_tests=skip_tests,
            skip_static_analysis=skip_static_analysis,
            build_number=build_number,
            revision=revision,
        )
    except PipelineConfigError as exc:
        exit_error(str(exc))
    return spec, parameters


def resolve_workspace(config: Box, workspace: Path | None) -> Path:
    """Workspace from the CLI option, else from ``pipeline.workspace``."""
    if workspace is not None:
        return workspace
    return Path(str((config.get("pipeline") or {}).get("workspace") or "."))


__all__ = [
    "EXIT_CONFIG",
    "EXIT_FAILED",
    "EXIT_LOCKED",
    "EXIT_OK",
    "console",
    "exit_error",
    "load_run_inputs",
    "load_settings",
    "resolve_workspace",
]
