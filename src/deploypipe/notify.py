"""Run notifications sent by the terminal block.

Two notifiers are provided: :class:`LogNotifier` writes the summary to
the log, :class:`WebhookNotifier` posts it as JSON. Delivery failures are
reported through the return value and never change the run verdict.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import httpx

if TYPE_CHECKING:
    from deploypipe.pipeline.models import PipelineReport

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RunSummary:
    """What a notification says about a run.

    Attributes:
        pipeline: Pipeline name.
        run_id: Run id.
        verdict: ``succeeded`` or ``failed``.
        environment: Deploy environment.
        image_tag: Artifact tag, when known.
        failed_stages: Names of failed stages.
        aborted_stages: Names of aborted stages.
        duration: Run duration in seconds.
        reasons: Failure reason per failed stage.
    """

    pipeline: str
    run_id: str
    verdict: str
    environment: str
    image_tag: str | None = None
    failed_stages: tuple[str, ...] = ()
    aborted_stages: tuple[str, ...] = ()
    duration: float = 0.0
    reasons: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_report(cls, report: PipelineReport) -> RunSummary:
        """Summarize ``report``."""
        return cls(
            pipeline=report.name,
            run_id=report.run_id,
            verdict=report.verdict.value,
            environment=str(report.parameters.get("deploy_environment", "")),
            image_tag=report.artifact.tag if report.artifact else None,
            failed_stages=tuple(r.name for r in report.failed_stages),
            aborted_stages=tuple(r.name for r in report.aborted_stages),
            duration=round(report.duration, 3),
            reasons={r.name: r.failure.reason for r in report.failed_stages if r.failure},
        )

    @property
    def text(self) -> str:
        """One-line message."""
        line = f"{self.pipeline} #{self.run_id} {self.verdict.upper()} on {self.environment}"
        if self.image_tag:
            line += f" ({self.image_tag})"
        if self.failed_stages:
            line += f"; failed: {', '.join(self.failed_stages)}"
        return line

    def to_dict(self) -> dict[str, Any]:
        """JSON payload."""
        payload = asdict(self)
        payload["failed_stages"] = list(self.failed_stages)
        payload["aborted_stages"] = list(self.aborted_stages)
        payload["reasons"] = dict(self.reasons)
        payload["text"] = self.text
        return payload


class Notifier(Protocol):
    """Delivers a run summary."""

    def notify(self, summary: RunSummary) -> bool:
        """Deliver ``summary``; return whether delivery succeeded."""
        ...


class LogNotifier:
    """Write the summary to the log."""

    def notify(self, summary: RunSummary) -> bool:
        """Log ``summary`` at INFO (success) or ERROR (failure)."""
        level = logging.INFO if summary.verdict == "succeeded" else logging.ERROR
        logger.log(level, "%s", summary.text)
        return True


class WebhookNotifier:
    """POST the summary as JSON to a webhook.

    Args:
        url: Webhook URL.
        client: HTTP client (a short-lived one per notification when omitted).
        timeout: Request timeout in seconds.

    Examples:
        >>> notifier = WebhookNotifier("https://chat.example.com/hooks/deploy")  # doctest: +SKIP
        >>> notifier.notify(summary)  # doctest: +SKIP
        True
    """

    def __init__(self, url: str, *, client: httpx.Client | None = None, timeout: float = 10.0) -> None:
        self._url = url
        self._client = client
        self._timeout = timeout

    def notify(self, summary: RunSummary) -> bool:
        """Post ``summary``; failures are logged and reported as False."""
        client = self._client or httpx.Client(timeout=self._timeout)
        try:
            response = client.post(self._url, json=summary.to_dict())
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning("Notification rejected: HTTP %d from webhook", exc.response.status_code)
            return False
        except httpx.RequestError as exc:
            logger.warning("Notification failed: %s", exc)
            return False
        finally:
            if self._client is None:
                client.close()
        logger.debug("Notification delivered for run %s", summary.run_id)
        return True


def build_notifier(settings: Mapping[str, Any] | None) -> Notifier:
    """Notifier for the ``pipeline.notify`` configuration section."""
    url = (settings or {}).get("webhook_url")
    if url:
        return WebhookNotifier(str(url), timeout=float((settings or {}).get("timeout", 10.0)))
    return LogNotifier()


__all__ = [
    "LogNotifier",
    "Notifier",
    "RunSummary",
    "WebhookNotifier",
    "build_notifier",
]
