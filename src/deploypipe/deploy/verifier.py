"""Poll a deployment until its rollout is complete or the deadline elapses.

State machine::

    PENDING -> ROLLING_OUT -> READY
        \\           \\
         +-----------+--> FAILED | TIMED_OUT

READY is reached only when observed ready replicas equal the desired
count. FAILED and TIMED_OUT are terminal; there is no retry beyond
re-polling at the poll interval.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Protocol

from deploypipe.deploy.models import DeploymentState, RolloutObservation, RolloutPhase
from deploypipe.logging import TRACE_LEVEL

logger = logging.getLogger(__name__)


class RolloutProbe(Protocol):
    """Source of rollout observations (one bounded external call per poll)."""

    def observe(self, namespace: str, timeout: float) -> RolloutObservation:
        """Return the current rollout observation for ``namespace``."""
        ...


class DeploymentVerifier:
    """Drive a :class:`RolloutProbe` until a terminal rollout phase.

    Args:
        probe: Rollout probe.
        probe_timeout: Upper bound for a single poll.
        clock: Monotonic clock.
        sleep: Sleep function.

    Examples:
        >>> class Instant:
        ...     def observe(self, namespace, timeout):
        ...         return RolloutObservation(ready=3, desired=3)
        >>> DeploymentVerifier(Instant()).verify("qa", 3, 1.0, 10.0).phase
        <RolloutPhase.READY: 'ready'>
    """

    def __init__(
        self,
        probe: RolloutProbe,
        *,
        probe_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._probe = probe
        self._probe_timeout = probe_timeout
        self._clock = clock
        self._sleep = sleep

    def verify(
        self,
        namespace: str,
        desired_replicas: int | None,
        poll_interval: float,
        deadline: float,
    ) -> DeploymentState:
        """Poll until READY, FAILED or TIMED_OUT.

        Args:
            namespace: Target namespace.
            desired_replicas: Desired count; ``None`` takes the count the
                cluster reports.
            poll_interval: Seconds between polls.
            deadline: Seconds allowed for the whole rollout.

        Returns:
            The terminal deployment state.
        """
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {poll_interval}")

        expires_at = self._clock() + deadline
        state = DeploymentState(namespace=namespace, desired_replicas=desired_replicas or 0)

        while True:
            remaining = expires_at - self._clock()
            if remaining <= 0:
                return self._timed_out(state)

            observation = self._probe.observe(namespace, min(self._probe_timeout, remaining))
            state = self._advance(state, observation, desired_replicas)
            logger.log(
                TRACE_LEVEL,
                "Rollout in %s: %d/%d ready (%s)",
                namespace,
                state.ready_replicas,
                state.desired_replicas,
                state.phase.value,
            )
            if state.phase.terminal:
                logger.info(
                    "Rollout in %s %s after %d poll(s): %s",
                    namespace,
                    state.phase.value,
                    state.polls,
                    state.message or f"{state.ready_replicas}/{state.desired_replicas} ready",
                )
                return state

            remaining = expires_at - self._clock()
            if remaining <= 0:
                return self._timed_out(state)
            self._sleep(min(poll_interval, remaining))

    def _advance(
        self,
        state: DeploymentState,
        observation: RolloutObservation,
        desired_replicas: int | None,
    ) -> DeploymentState:
        desired = desired_replicas
        if desired is None:
            desired = observation.desired if observation.desired is not None else state.desired_replicas
        polls = state.polls + 1

        if observation.failed:
            return replace(
                state,
                desired_replicas=desired,
                ready_replicas=observation.ready,
                phase=RolloutPhase.FAILED,
                polls=polls,
                message=observation.message,
            )

        # Without a known desired count nothing can be READY yet.
        known = desired_replicas is not None or observation.desired is not None
        if known and observation.ready == desired:
            phase = RolloutPhase.READY
        elif observation.ready > 0:
            phase = RolloutPhase.ROLLING_OUT
        else:
            phase = RolloutPhase.PENDING
        return replace(
            state,
            desired_replicas=desired,
            ready_replicas=observation.ready,
            phase=phase,
            polls=polls,
            message=observation.message,
        )

    def _timed_out(self, state: DeploymentState) -> DeploymentState:
        logger.warning(
            "Rollout in %s timed out: %d/%d ready",
            state.namespace,
            state.ready_replicas,
            state.desired_replicas,
        )
        return replace(state, phase=RolloutPhase.TIMED_OUT)


__all__ = [
    "DeploymentVerifier",
    "RolloutProbe",
]
