"""Stage executors, one per :class:`~deploypipe.pipeline.models.StageKind`.

- CommandStage: invocations only
- QualityGateStage: invocations, then poll the static-analysis verdict
- DeployStage: render, server-side dry run, apply
- RolloutStage: wait for the deployment rollout
- HealthCheckStage: HTTP probe of the deployed service
"""

from __future__ import annotations

from deploypipe.pipeline.models import StageKind
from deploypipe.pipeline.stages.base import StageExecutor, StageRun, collect_files
from deploypipe.pipeline.stages.command import CommandStage
from deploypipe.pipeline.stages.deploy import DeployStage
from deploypipe.pipeline.stages.health import HealthCheckStage, HealthProbeFactory
from deploypipe.pipeline.stages.quality_gate import GateClient, GateClientFactory, QualityGateStage
from deploypipe.pipeline.stages.rollout import KubectlRolloutProbe, RolloutStage, parse_deployment_status


def default_executors(
    *,
    gate_client_factory: GateClientFactory | None = None,
    health_probe_factory: HealthProbeFactory | None = None,
) -> dict[StageKind, StageExecutor]:
    """Executor map used by the engine.

    Args:
        gate_client_factory: Replaces the SonarQube client.
        health_probe_factory: Replaces the httpx health probe.
    """
    return {
        StageKind.COMMAND: CommandStage(),
        StageKind.QUALITY_GATE: QualityGateStage(gate_client_factory),
        StageKind.DEPLOY: DeployStage(),
        StageKind.ROLLOUT: RolloutStage(),
        StageKind.HEALTH_CHECK: HealthCheckStage(health_probe_factory),
    }


__all__ = [
    "CommandStage",
    "DeployStage",
    "GateClient",
    "GateClientFactory",
    "HealthCheckStage",
    "HealthProbeFactory",
    "KubectlRolloutProbe",
    "QualityGateStage",
    "RolloutStage",
    "StageExecutor",
    "StageRun",
    "collect_files",
    "default_executors",
    "parse_deployment_status",
]
