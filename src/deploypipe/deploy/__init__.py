"""Deployment verification: rollout polling and health probing."""

from deploypipe.deploy.health import HealthProbe, HealthResult
from deploypipe.deploy.models import DeploymentState, RolloutObservation, RolloutPhase
from deploypipe.deploy.verifier import DeploymentVerifier, RolloutProbe

__all__ = [
    "DeploymentState",
    "DeploymentVerifier",
    "HealthProbe",
    "HealthResult",
    "RolloutObservation",
    "RolloutPhase",
    "RolloutProbe",
]
