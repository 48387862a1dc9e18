"""Health-check stage: probe the deployed service over HTTP."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from deploypipe.deploy.health import HealthProbe
from deploypipe.pipeline.exceptions import HealthCheckFailedError

if TYPE_CHECKING:
    from deploypipe.pipeline.models import StageDefinition
    from deploypipe.pipeline.stages.base import StageRun

logger = logging.getLogger(__name__)

#: Shortest request timeout once the deadline is nearly spent.
_MIN_REQUEST_TIMEOUT = 0.1

#: ``(expected_status, request_timeout) -> HealthProbe``
HealthProbeFactory = Callable[[int, float], HealthProbe]


def _http_probe(expected_status: int, timeout: float) -> HealthProbe:
    return HealthProbe(expected_status=expected_status, timeout=timeout)


class HealthCheckStage:
    """Poll a health URL until it answers healthy.

    Options:
        url: Health URL (placeholders allowed).
        expected_status: HTTP status counted as healthy (default 200).
        poll_interval: Seconds between attempts (default 5).
        request_timeout: Seconds per request (default 10).
        timeout: Seconds before giving up (capped by the stage).

    Args:
        probe_factory: Builds the probe (httpx-based by default).
    """

    def __init__(self, probe_factory: HealthProbeFactory | None = None) -> None:
        self._probe_factory = probe_factory or _http_probe

    def execute(self, stage: StageDefinition, run: StageRun) -> None:
        """Run the body, then wait for a healthy answer.

        Raises:
            HealthCheckFailedError: Still unhealthy when the deadline elapsed.
        """
        run.run_body(stage.invocations)

        options = stage.options
        url = run.render(str(options["url"]))
        poll_interval = float(options.get("poll_interval", 5.0))
        deadline = run.deadline.child(float(options["timeout"])) if options.get("timeout") else run.deadline

        with self._probe_factory(
            int(options.get("expected_status", 200)),
            float(options.get("request_timeout", 10.0)),
        ) as probe:
            attempts = 0
            while True:
                attempts += 1
                result = probe.check(url, timeout=max(deadline.remaining(), _MIN_REQUEST_TIMEOUT))
                run.details["health"] = {
                    "url": url,
                    "healthy": result.healthy,
                    "status_code": result.status_code,
                    "detail": result.detail,
                    "attempts": attempts,
                }
                if result.healthy:
                    logger.info("Stage '%s': %s healthy after %d attempt(s)", stage.name, url, attempts)
                    return
                if deadline.expired:
                    raise HealthCheckFailedError(
                        stage.name, f"{url} not healthy after {attempts} attempt(s): {result.detail}"
                    )
                logger.debug("Stage '%s': %s not healthy yet (%s)", stage.name, url, result.detail)
                run.sleep(min(poll_interval, deadline.remaining()))


__all__ = [
    "HealthCheckStage",
    "HealthProbeFactory",
]
