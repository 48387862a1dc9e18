"""Shared pytest fixtures for the deploypipe test suite."""

from __future__ import annotations

# Disable Rich colors and force wide terminal BEFORE any imports
# Rich checks these at import time
import os

os.environ["NO_COLOR"] = "1"
os.environ["TERM"] = "dumb"
os.environ["FORCE_COLOR"] = "0"
os.environ["COLUMNS"] = "200"  # Prevent text wrapping in CLI output

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

# Import private internals for testing purposes
import deploypipe.config.loader as _cfg_loader
import deploypipe.logging.manager as _log_manager
from deploypipe.credentials import CredentialVault
from deploypipe.notify import RunSummary
from deploypipe.pipeline.engine import PipelineEngine
from deploypipe.pipeline.models import Invocation, ProcessOutcome, ProcessResult
from deploypipe.quality import GateStatus

# pylint: disable=redefined-outer-name


# ============================================================================
# GLOBAL STATE RESET
# ============================================================================


@pytest.fixture(autouse=True)
def reset_global_state() -> Iterator[None]:
    """Forget the active configuration and masked secrets between tests."""
    _cfg_loader.clear_config()
    yield
    _cfg_loader.clear_config()
    with _log_manager._secrets_lock:
        _log_manager._secrets.clear()


@pytest.fixture
def cfg_loader() -> Any:
    """Expose config.loader module for testing private helpers."""
    return _cfg_loader


# ============================================================================
# TIME
# ============================================================================


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    """Clock starting at t=1000s."""
    return FakeClock()


# ============================================================================
# PROCESS RUNNER
# ============================================================================


class ScriptedRunner:
    """Process runner answering from rules matched on the command line prefix.

    Unmatched commands exit 0 with no output. Later rules win over earlier
    ones. ``secrets_seen`` records what each call received, revealed, so
    tests can assert that credentials were bound (and to what).
    """

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.calls: list[Invocation] = []
        self.timeouts: list[float | None] = []
        self.secrets_seen: list[dict[str, str]] = []
        self._clock = clock
        self._rules: list[tuple[str, dict[str, Any]]] = []

    def on(
        self,
        prefix: str,
        *,
        exit_code: int = 0,
        stdout: str | list[str] = "",
        stderr: str = "",
        outcome: ProcessOutcome = ProcessOutcome.EXITED,
        duration: float = 0.0,
        action: Callable[[Invocation], None] | None = None,
    ) -> ScriptedRunner:
        self._rules.append(
            (
                prefix,
                {
                    "exit_code": exit_code,
                    "stdout": stdout,
                    "stderr": stderr,
                    "outcome": outcome,
                    "duration": duration,
                    "action": action,
                },
            )
        )
        return self

    def execute(
        self,
        invocation: Invocation,
        *,
        timeout: float | None = None,
        credentials: Any = None,
    ) -> ProcessResult:
        self.calls.append(invocation)
        self.timeouts.append(timeout)
        self.secrets_seen.append({ref: cred.reveal() for ref, cred in (credentials or {}).items()})
        line = invocation.display()
        for prefix, rule in reversed(self._rules):
            if not line.startswith(prefix):
                continue
            if rule["action"] is not None:
                rule["action"](invocation)
            if self._clock is not None and rule["duration"]:
                self._clock.advance(rule["duration"])
            outcome = rule["outcome"]
            return ProcessResult(
                command=line,
                outcome=outcome,
                exit_code=rule["exit_code"] if outcome == ProcessOutcome.EXITED else None,
                stdout=_next_output(rule),
                stderr=rule["stderr"],
                duration=rule["duration"],
            )
        return ProcessResult(command=line, outcome=ProcessOutcome.EXITED, exit_code=0)

    @property
    def commands(self) -> list[str]:
        """Command lines executed so far."""
        return [inv.display() for inv in self.calls]


def _next_output(rule: dict[str, Any]) -> str:
    # A list of outputs is replayed in order; the last one repeats.
    stdout = rule["stdout"]
    if isinstance(stdout, list):
        return stdout.pop(0) if len(stdout) > 1 else stdout[0]
    return stdout


@pytest.fixture
def scripted_runner(fake_clock: FakeClock) -> ScriptedRunner:
    """Scripted runner sharing the fake clock."""
    return ScriptedRunner(clock=fake_clock)


# ============================================================================
# NOTIFIER, GATE CLIENT, VAULT
# ============================================================================


class RecordingNotifier:
    """Notifier keeping every summary it receives."""

    def __init__(self, delivered: bool = True) -> None:
        self.summaries: list[RunSummary] = []
        self._delivered = delivered

    def notify(self, summary: RunSummary) -> bool:
        self.summaries.append(summary)
        return self._delivered


@pytest.fixture
def notifier() -> RecordingNotifier:
    """Notifier recording summaries."""
    return RecordingNotifier()


class FakeGateClient:
    """Gate client replaying a list of statuses (the last one repeats)."""

    def __init__(self, statuses: list[GateStatus]) -> None:
        self.statuses = list(statuses)
        self.polled: list[str] = []
        self.timeouts: list[float | None] = []
        self.closed = False
        self.token: str | None = None

    def poll(self, task_id: str, *, timeout: float | None = None) -> GateStatus:
        self.polled.append(task_id)
        self.timeouts.append(timeout)
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def gate_client_factory() -> Callable[[list[GateStatus]], tuple[FakeGateClient, Callable[..., FakeGateClient]]]:
    """Build a fake gate client and the factory handing it out."""

    def _build(statuses: list[GateStatus]) -> tuple[FakeGateClient, Callable[..., FakeGateClient]]:
        client = FakeGateClient(statuses)

        def factory(server_url: str, token: str | None) -> FakeGateClient:
            client.token = token
            return client

        return client, factory

    return _build


@pytest.fixture
def vault() -> CredentialVault:
    """Vault with a registry login, an API token and a scoped deploy token."""
    return CredentialVault(
        {
            "registry": {"type": "env", "var_user": "REG_USER", "var_password": "REG_PASS"},
            "sonar": {"type": "env", "var": "SONAR_TOKEN"},
            "deploy-token": {"type": "env", "var": "DEPLOY_TOKEN", "scopes": ["deploy"]},
        },
        environ={
            "REG_USER": "ci-bot",
            "REG_PASS": "hunter2-registry",
            "SONAR_TOKEN": "sq-token-123",
            "DEPLOY_TOKEN": "kube-token-456",
        },
    )


# ============================================================================
# ENGINE
# ============================================================================


@pytest.fixture
def make_engine(
    tmp_path: Path,
    scripted_runner: ScriptedRunner,
    fake_clock: FakeClock,
    notifier: RecordingNotifier,
    vault: CredentialVault,
) -> Callable[..., PipelineEngine]:
    """Build an engine wired to the scripted runner and fake clock."""

    def _make(**overrides: Any) -> PipelineEngine:
        kwargs: dict[str, Any] = {
            "runner": scripted_runner,
            "vault": vault,
            "workspace": tmp_path,
            "notifier": notifier,
            "clock": fake_clock,
            "sleep": fake_clock.sleep,
        }
        kwargs.update(overrides)
        return PipelineEngine(**kwargs)

    return _make
