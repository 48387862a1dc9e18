"""Persisting and summarizing pipeline reports."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from deploypipe.pipeline.models import PipelineReport

logger = logging.getLogger(__name__)


def report_filename(report: PipelineReport) -> str:
    """File name of the JSON report of a run."""
    return f"pipeline-report-{report.run_id}.json"


def write_report(report: PipelineReport, directory: str | Path) -> Path:
    """Write ``report`` as JSON into ``directory``.

    Args:
        report: Finalized report.
        directory: Target directory (created when missing).

    Returns:
        Path of the written file.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / report_filename(report)
    path.write_text(json.dumps(report.to_dict(), indent=2, sort_keys=False) + "\n", encoding="utf-8")
    logger.info("Report written to %s", path)
    return path


def load_report(path: str | Path) -> dict:
    """Read a JSON report back (for tooling and tests)."""
    return json.loads(Path(path).read_text(encoding="utf-8"))


__all__ = [
    "load_report",
    "report_filename",
    "write_report",
]
