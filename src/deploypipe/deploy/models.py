"""Rollout state models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class RolloutPhase(str, Enum):
    """Phase of a rollout as seen by the verifier.

    Attributes:
        PENDING: No replica of the new revision is ready yet.
        ROLLING_OUT: Some, but not all, desired replicas are ready.
        READY: Ready replicas equal desired replicas.
        FAILED: The cluster reports an unrecoverable error.
        TIMED_OUT: The deadline elapsed before READY.
    """

    PENDING = "pending"
    ROLLING_OUT = "rolling_out"
    READY = "ready"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        """Whether polling stops in this phase."""
        return self in (RolloutPhase.READY, RolloutPhase.FAILED, RolloutPhase.TIMED_OUT)


@dataclass(frozen=True, slots=True)
class RolloutObservation:
    """One poll result from a rollout probe.

    Attributes:
        ready: Replicas of the new revision that are ready.
        desired: Desired replica count reported by the cluster, if known.
        failed: Whether the cluster reports an unrecoverable error.
        message: Diagnostic text.
    """

    ready: int
    desired: int | None = None
    failed: bool = False
    message: str = ""


@dataclass(frozen=True, slots=True)
class DeploymentState:
    """Observed state of a deployment.

    Attributes:
        namespace: Target namespace.
        desired_replicas: Desired replica count.
        ready_replicas: Observed ready replica count.
        phase: Rollout phase.
        polls: Number of probe calls made.
        message: Last diagnostic message.
    """

    namespace: str
    desired_replicas: int
    ready_replicas: int = 0
    phase: RolloutPhase = RolloutPhase.PENDING
    polls: int = 0
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize for reports."""
        return {
            "namespace": self.namespace,
            "desired_replicas": self.desired_replicas,
            "ready_replicas": self.ready_replicas,
            "phase": self.phase.value,
            "polls": self.polls,
            "message": self.message,
        }


__all__ = [
    "DeploymentState",
    "RolloutObservation",
    "RolloutPhase",
]
