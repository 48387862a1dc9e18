"""SonarQube quality-gate client.

After ``sonar-scanner`` (or ``mvn sonar:sonar``) submits an analysis it
writes ``report-task.txt`` containing the background task id
(``ceTaskId``). The verdict is obtained in two hops:

1. ``GET /api/ce/task?id=<task>`` until the task leaves PENDING/IN_PROGRESS.
2. ``GET /api/qualitygates/project_status?analysisId=<analysis>``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import httpx

from deploypipe.exceptions import DeployPipeError

logger = logging.getLogger(__name__)

_TASK_RUNNING = frozenset({"PENDING", "IN_PROGRESS"})
_GATE_PASSED = frozenset({"OK", "WARN", "NONE"})


class GateVerdict(str, Enum):
    """Quality-gate verdict.

    Attributes:
        PASSED: Gate passed.
        FAILED: Gate failed, or the analysis itself failed.
        PENDING: No verdict yet.
    """

    PASSED = "passed"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True, slots=True)
class GateStatus:
    """Result of one quality-gate poll.

    Attributes:
        verdict: Current verdict.
        analysis_id: Analysis id once the background task finished.
        detail: Diagnostic text (gate status, failed conditions, errors).
    """

    verdict: GateVerdict
    analysis_id: str | None = None
    detail: str = ""


class SonarQubeError(DeployPipeError):
    """The SonarQube server rejected a request (4xx).

    Attributes:
        status_code: HTTP status code.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def read_task_id(report_file: str | Path) -> str:
    """Extract ``ceTaskId`` from a scanner ``report-task.txt``.

    Args:
        report_file: Path to the report written by the scanner.

    Returns:
        The background task id.

    Raises:
        FileNotFoundError: If the report does not exist.
        ValueError: If the report has no ``ceTaskId``.
    """
    text = Path(report_file).read_text(encoding="utf-8")
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep and key.strip() == "ceTaskId" and value.strip():
            return value.strip()
    raise ValueError(f"No ceTaskId in {report_file}")


class SonarQubeClient:
    """Poll quality-gate verdicts from a SonarQube server.

    Args:
        base_url: Server URL, e.g. ``https://sonar.example.com``.
        token: User token (sent as the basic-auth user name, SonarQube style).
        client: HTTP client (created and owned by this object when omitted).
        timeout: Per-request timeout in seconds.

    Examples:
        >>> with SonarQubeClient("https://sonar.example.com", token="t") as sonar:  # doctest: +SKIP
        ...     sonar.poll("AYx-task").verdict
        <GateVerdict.PASSED: 'passed'>
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        client: httpx.Client | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)
        self._timeout = timeout
        self._base_url = base_url.rstrip("/")
        self._auth = httpx.BasicAuth(token, "") if token else None

    def poll(self, task_id: str, *, timeout: float | None = None) -> GateStatus:
        """Return the current verdict for an analysis task.

        Transport errors and 5xx responses come back as PENDING so that the
        caller keeps polling until its own deadline.

        Args:
            task_id: Compute engine task id.
            timeout: Seconds the whole poll may take; each request gets at
                most what is left of it.

        Raises:
            SonarQubeError: On 4xx responses.
        """
        budget_end = None if timeout is None else time.monotonic() + timeout
        task = self._get("/api/ce/task", {"id": task_id}, budget_end)
        if task is None:
            return GateStatus(GateVerdict.PENDING, detail="server unavailable")

        task_info = task.get("task", {})
        task_status = str(task_info.get("status", "PENDING")).upper()
        if task_status in _TASK_RUNNING:
            return GateStatus(GateVerdict.PENDING, detail=f"analysis task {task_status.lower()}")
        if task_status != "SUCCESS":
            reason = task_info.get("errorMessage") or task_status
            return GateStatus(GateVerdict.FAILED, detail=f"analysis task {task_status.lower()}: {reason}")

        analysis_id = task_info.get("analysisId")
        if not analysis_id:
            return GateStatus(GateVerdict.FAILED, detail="analysis task finished without an analysisId")

        gate = self._get("/api/qualitygates/project_status", {"analysisId": analysis_id}, budget_end)
        if gate is None:
            return GateStatus(GateVerdict.PENDING, analysis_id=analysis_id, detail="server unavailable")

        project_status = gate.get("projectStatus", {})
        gate_status = str(project_status.get("status", "NONE")).upper()
        if gate_status in _GATE_PASSED:
            return GateStatus(GateVerdict.PASSED, analysis_id=analysis_id, detail=f"quality gate {gate_status}")

        failed = [
            f"{cond.get('metricKey')} {cond.get('comparator', '')} {cond.get('errorThreshold', '')}".strip()
            for cond in project_status.get("conditions", [])
            if str(cond.get("status", "")).upper() == "ERROR"
        ]
        detail = f"quality gate {gate_status}"
        if failed:
            detail += ": " + ", ".join(failed)
        return GateStatus(GateVerdict.FAILED, analysis_id=analysis_id, detail=detail)

    def _get(self, path: str, params: dict[str, str], budget_end: float | None = None) -> dict | None:
        request_timeout = self._timeout
        if budget_end is not None:
            request_timeout = min(request_timeout, budget_end - time.monotonic())
            if request_timeout <= 0:
                logger.warning("SonarQube request %s skipped: no time left", path)
                return None
        try:
            response = self._client.get(
                f"{self._base_url}{path}", params=params, auth=self._auth, timeout=request_timeout
            )
        except httpx.HTTPError as exc:
            logger.warning("SonarQube request %s failed: %s", path, exc)
            return None

        if response.status_code >= 500:
            logger.warning("SonarQube request %s returned HTTP %d", path, response.status_code)
            return None
        if response.status_code >= 400:
            raise SonarQubeError(
                f"SonarQube rejected {path} with HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError:
            logger.warning("SonarQube request %s returned a non-JSON body", path)
            return None
        return payload if isinstance(payload, dict) else None

    def close(self) -> None:
        """Close the HTTP client if this object created it."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> SonarQubeClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = [
    "GateStatus",
    "GateVerdict",
    "SonarQubeClient",
    "SonarQubeError",
    "read_task_id",
]
