"""Static-analysis quality gate."""

from deploypipe.quality.sonar import (
    GateStatus,
    GateVerdict,
    SonarQubeClient,
    SonarQubeError,
    read_task_id,
)

__all__ = [
    "GateStatus",
    "GateVerdict",
    "SonarQubeClient",
    "SonarQubeError",
    "read_task_id",
]
