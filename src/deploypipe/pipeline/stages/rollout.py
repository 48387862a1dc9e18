"""Rollout stage: wait until the deployment reaches its desired replicas."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from deploypipe.deploy import DeploymentVerifier, RolloutObservation, RolloutPhase
from deploypipe.pipeline.exceptions import DeploymentVerificationError, ToolNotFoundError
from deploypipe.pipeline.models import Invocation, ProcessOutcome
from deploypipe.pipeline.stages.deploy import kubectl_bindings

if TYPE_CHECKING:
    from deploypipe.credentials.models import CredentialBinding
    from deploypipe.pipeline.models import StageDefinition
    from deploypipe.pipeline.stages.base import StageRun

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_ROLLOUT_TIMEOUT = 600.0
DEFAULT_PROBE_TIMEOUT = 30.0

_FAILURE_REASONS = frozenset({"ProgressDeadlineExceeded"})


def parse_deployment_status(document: Mapping[str, Any]) -> RolloutObservation:
    """Turn ``kubectl get deployment -o json`` output into an observation.

    The ready count follows ``kubectl rollout status``: nothing counts until
    the controller has observed the latest generation, and while old
    replicas are still terminating the rollout is not complete.

    Examples:
        >>> doc = {
        ...     "metadata": {"generation": 2},
        ...     "spec": {"replicas": 3},
        ...     "status": {"observedGeneration": 2, "replicas": 3, "updatedReplicas": 3, "readyReplicas": 3},
        ... }
        >>> parse_deployment_status(doc)
        RolloutObservation(ready=3, desired=3, failed=False, message='')
    """
    spec = document.get("spec") or {}
    status = document.get("status") or {}
    generation = (document.get("metadata") or {}).get("generation")
    desired = int(spec.get("replicas", 1))

    for condition in status.get("conditions") or []:
        ctype = condition.get("type")
        if ctype == "Progressing" and condition.get("reason") in _FAILURE_REASONS:
            return RolloutObservation(
                ready=0, desired=desired, failed=True, message=condition.get("message") or condition["reason"]
            )
        if ctype == "ReplicaFailure" and str(condition.get("status")) == "True":
            return RolloutObservation(
                ready=0, desired=desired, failed=True, message=condition.get("message") or "replica failure"
            )

    observed = status.get("observedGeneration")
    if generation is not None and (observed is None or observed < generation):
        return RolloutObservation(ready=0, desired=desired, message="waiting for the controller to observe the update")

    updated = int(status.get("updatedReplicas") or 0)
    ready = min(updated, int(status.get("readyReplicas") or 0))
    total = int(status.get("replicas") or 0)
    if total > updated and desired > 0:
        ready = min(ready, desired - 1)
        return RolloutObservation(
            ready=ready, desired=desired, message=f"{total - updated} old replica(s) pending termination"
        )
    return RolloutObservation(ready=ready, desired=desired)


class KubectlRolloutProbe:
    """Rollout probe reading the deployment object with kubectl.

    Args:
        run: Stage scratchpad used to execute kubectl.
        deployment: Deployment name.
        kubectl: kubectl executable.
        credentials: Kubeconfig bindings.
    """

    def __init__(
        self,
        run: StageRun,
        deployment: str,
        *,
        kubectl: str = "kubectl",
        credentials: tuple[CredentialBinding, ...] = (),
    ) -> None:
        self._run = run
        self._deployment = deployment
        self._kubectl = kubectl
        self._credentials = credentials

    def observe(self, namespace: str, timeout: float) -> RolloutObservation:
        """Read the deployment once.

        Transient kubectl errors are reported as a not-ready observation
        so that the verifier keeps polling until its deadline.

        Raises:
            ToolNotFoundError: kubectl is not installed.
        """
        invocation = Invocation(
            command=self._kubectl,
            args=("get", "deployment", self._deployment, "-n", namespace, "-o", "json"),
            credentials=self._credentials,
            timeout=max(timeout, 0.001),
        )
        result = self._run.execute(invocation)
        if result.outcome == ProcessOutcome.NOT_FOUND:
            raise ToolNotFoundError(self._run.name, self._kubectl)
        if not result.ok:
            detail = result.stderr.strip().splitlines()[-1:] or [result.outcome.value]
            return RolloutObservation(ready=0, message=detail[0])
        try:
            document = json.loads(result.stdout)
        except ValueError:
            return RolloutObservation(ready=0, message="unreadable kubectl output")
        return parse_deployment_status(document)


class RolloutStage:
    """Verify the rollout of a deployment.

    Options:
        deployment: Deployment name.
        replicas: Desired replica count (default: what the cluster reports).
        poll_interval: Seconds between polls.
        rollout_timeout: Seconds allowed for the rollout (capped by the stage).
        kubectl: kubectl executable.
        credential: Kubeconfig credential reference.
    """

    def execute(self, stage: StageDefinition, run: StageRun) -> None:
        """Run the body, then poll until the rollout is READY.

        Raises:
            DeploymentVerificationError: The rollout failed or timed out.
        """
        run.run_body(stage.invocations)

        options = stage.options
        probe = KubectlRolloutProbe(
            run,
            run.render(str(options["deployment"])),
            kubectl=str(options.get("kubectl", "kubectl")),
            credentials=kubectl_bindings(options.get("credential")),
        )
        verifier = DeploymentVerifier(
            probe,
            probe_timeout=float(options.get("probe_timeout", DEFAULT_PROBE_TIMEOUT)),
            clock=run.clock,
            sleep=run.sleep,
        )
        replicas = options.get("replicas")
        state = verifier.verify(
            run.context.namespace,
            int(replicas) if replicas else None,
            float(options.get("poll_interval", DEFAULT_POLL_INTERVAL)),
            run.deadline.cap(float(options.get("rollout_timeout", DEFAULT_ROLLOUT_TIMEOUT))),
        )
        run.details["deployment"] = state.to_dict()

        if state.phase == RolloutPhase.READY:
            return
        if state.phase == RolloutPhase.FAILED:
            reason = f"rollout failed: {state.message or 'unrecoverable replica error'}"
        else:
            reason = f"rollout timed out with {state.ready_replicas}/{state.desired_replicas} replicas ready"
        raise DeploymentVerificationError(stage.name, reason, state=state)


__all__ = [
    "KubectlRolloutProbe",
    "RolloutStage",
    "parse_deployment_status",
]
