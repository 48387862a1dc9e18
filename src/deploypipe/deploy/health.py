"""HTTP health probe for a freshly deployed service.

The application image exposes Spring Boot's actuator endpoint
(``/actuator/health`` on port 8080), which answers ``{"status": "UP"}``
when healthy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

#: Health statuses considered healthy when the body is JSON.
HEALTHY_STATUSES = frozenset({"UP"})


@dataclass(frozen=True, slots=True)
class HealthResult:
    """Outcome of one health request.

    Attributes:
        healthy: Whether the service answered as healthy.
        status_code: HTTP status code, if a response was received.
        detail: Diagnostic text.
    """

    healthy: bool
    status_code: int | None = None
    detail: str = ""


class HealthProbe:
    """Issue health requests with an :class:`httpx.Client`.

    Args:
        client: HTTP client (created and owned by the probe when omitted).
        expected_status: HTTP status that counts as healthy.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        *,
        expected_status: int = 200,
        timeout: float = 10.0,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)
        self._expected_status = expected_status
        self._timeout = timeout

    def check(self, url: str, *, timeout: float | None = None) -> HealthResult:
        """Request ``url`` once, waiting at most ``timeout`` (capped by the probe timeout)."""
        request_timeout = self._timeout if timeout is None else min(self._timeout, timeout)
        try:
            response = self._client.get(url, timeout=request_timeout)
        except httpx.HTTPError as exc:
            return HealthResult(healthy=False, detail=f"{type(exc).__name__}: {exc}")

        if response.status_code != self._expected_status:
            return HealthResult(
                healthy=False,
                status_code=response.status_code,
                detail=f"expected HTTP {self._expected_status}, got {response.status_code}",
            )

        if "json" in response.headers.get("content-type", ""):
            try:
                status = response.json().get("status")
            except (ValueError, AttributeError):
                status = None
            if status is not None and str(status).upper() not in HEALTHY_STATUSES:
                return HealthResult(
                    healthy=False,
                    status_code=response.status_code,
                    detail=f"service reports status {status}",
                )
        return HealthResult(healthy=True, status_code=response.status_code, detail="healthy")

    def close(self) -> None:
        """Close the client if the probe created it."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> HealthProbe:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = [
    "HEALTHY_STATUSES",
    "HealthProbe",
    "HealthResult",
]
