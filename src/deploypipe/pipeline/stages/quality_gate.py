"""Quality-gate stage: wait for the static-analysis verdict.

The body (typically the analysis submission) runs first. The stage then
reads the scanner's task file and polls the analysis server until the
gate passes, fails, or the stage deadline elapses. A missing verdict is a
failure: nothing downstream may publish an artifact that was never judged.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Protocol

from deploypipe.pipeline.exceptions import QualityGateFailedError, StageTimeoutError
from deploypipe.quality import GateStatus, GateVerdict, SonarQubeClient, SonarQubeError, read_task_id

if TYPE_CHECKING:
    from deploypipe.pipeline.deadline import Deadline
    from deploypipe.pipeline.models import StageDefinition
    from deploypipe.pipeline.stages.base import StageRun

logger = logging.getLogger(__name__)

#: Seconds between verdict polls when the stage does not set ``poll_interval``.
DEFAULT_POLL_INTERVAL = 5.0


class GateClient(Protocol):
    """What the stage needs from a static-analysis client."""

    def poll(self, task_id: str, *, timeout: float | None = None) -> GateStatus:
        """Return the current verdict for ``task_id`` within ``timeout`` seconds."""
        ...

    def close(self) -> None:
        """Release resources."""
        ...


#: ``(server_url, token) -> GateClient``
GateClientFactory = Callable[[str, str | None], GateClient]


def _sonar_client(server_url: str, token: str | None) -> GateClient:
    return SonarQubeClient(server_url, token=token)


class QualityGateStage:
    """Poll the quality-gate verdict after the stage body.

    Options:
        server_url: Analysis server URL.
        report_file: Scanner task file (``report-task.txt``).
        credential: Credential reference holding the API token.
        poll_interval: Seconds between polls.
        timeout: Seconds to wait for a verdict (capped by the stage).

    Args:
        client_factory: Builds the gate client (SonarQube by default).
    """

    def __init__(self, client_factory: GateClientFactory | None = None) -> None:
        self._client_factory = client_factory or _sonar_client

    def execute(self, stage: StageDefinition, run: StageRun) -> None:
        """Run the body, then wait for a PASSED verdict.

        Raises:
            QualityGateFailedError: Gate failed, or no task id was found.
            StageTimeoutError: No verdict before the deadline.
        """
        run.run_body(stage.invocations)

        options = stage.options
        report_file = run.workspace_path(run.render(str(options["report_file"])))
        try:
            task_id = read_task_id(report_file)
        except (OSError, ValueError) as exc:
            raise QualityGateFailedError(stage.name, f"no analysis task to wait for: {exc}") from exc

        server_url = run.render(str(options["server_url"]))
        poll_interval = float(options.get("poll_interval", DEFAULT_POLL_INTERVAL))
        deadline = run.deadline.child(float(options["timeout"])) if options.get("timeout") else run.deadline
        references = [options["credential"]] if options.get("credential") else []

        logger.info("Stage '%s': waiting for quality gate of task %s", stage.name, task_id)
        with run.credentials(references) as resolved:
            token = resolved[references[0]].reveal() if references else None
            client = self._client_factory(server_url, token)
            try:
                self._wait(stage.name, client, task_id, run, poll_interval, deadline)
            finally:
                client.close()

    @staticmethod
    def _wait(
        stage_name: str,
        client: GateClient,
        task_id: str,
        run: StageRun,
        poll_interval: float,
        deadline: Deadline,
    ) -> None:
        polls = 0
        while True:
            polls += 1
            try:
                status = client.poll(task_id, timeout=deadline.remaining())
            except SonarQubeError as exc:
                raise QualityGateFailedError(stage_name, str(exc)) from exc

            run.details["quality_gate"] = {
                "task_id": task_id,
                "verdict": status.verdict.value,
                "analysis_id": status.analysis_id,
                "detail": status.detail,
                "polls": polls,
            }
            if status.verdict == GateVerdict.PASSED:
                logger.info("Stage '%s': quality gate passed (%s)", stage_name, status.detail)
                return
            if status.verdict == GateVerdict.FAILED:
                raise QualityGateFailedError(stage_name, status.detail or "quality gate failed")

            if deadline.expired:
                raise StageTimeoutError(stage_name, deadline.seconds, what="quality gate verdict")
            logger.debug("Stage '%s': no verdict yet (%s)", stage_name, status.detail)
            run.sleep(min(poll_interval, deadline.remaining()))


__all__ = [
    "DEFAULT_POLL_INTERVAL",
    "GateClient",
    "GateClientFactory",
    "QualityGateStage",
]
