"""Tests for the deploypipe.pipeline.stages package."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from deploypipe.credentials import CredentialAccessDeniedError, CredentialBinding, CredentialVault
from deploypipe.deploy import HealthProbe, RolloutPhase
from deploypipe.exceptions import FailureKind
from deploypipe.pipeline.context import RunContext
from deploypipe.pipeline.deadline import Deadline
from deploypipe.pipeline.exceptions import (
    DeploymentVerificationError,
    HealthCheckFailedError,
    NonZeroExitError,
    QualityGateFailedError,
    StageTimeoutError,
    TemplateError,
    ToolNotFoundError,
)
from deploypipe.pipeline.models import (
    Invocation,
    PipelineSpec,
    ProcessOutcome,
    RunParameters,
    StageDefinition,
    StageKind,
)
from deploypipe.pipeline.stages import (
    CommandStage,
    DeployStage,
    HealthCheckStage,
    QualityGateStage,
    RolloutStage,
    StageExecutor,
    StageRun,
    default_executors,
)
from deploypipe.pipeline.stages.base import collect_files
from deploypipe.pipeline.stages.rollout import parse_deployment_status
from deploypipe.quality import GateStatus, GateVerdict, SonarQubeError

REVISION = "1a2b3c4d5e6f7a8b9c0d1a2b3c4d5e6f7a8b9c0d"


@pytest.fixture
def context(tmp_path: Path) -> RunContext:
    spec = PipelineSpec(
        name="orders",
        stages=(StageDefinition(name="build", invocations=(Invocation(command="true"),)),),
        image_repository="registry.example.com/shop/orders",
    )
    return RunContext(spec, RunParameters(build_number=12, revision=REVISION), workspace=tmp_path, run_id="r1")


@pytest.fixture
def make_run(context: RunContext, scripted_runner: Any, vault: CredentialVault, fake_clock: Any) -> Any:
    def _make(name: str = "stage", seconds: float = 900.0) -> StageRun:
        return StageRun(
            name,
            context,
            runner=scripted_runner,
            vault=vault,
            deadline=Deadline(seconds, clock=fake_clock),
            sleep=fake_clock.sleep,
            clock=fake_clock,
        )

    return _make


# ============================================================================
# StageRun
# ============================================================================


class TestStageRun:
    """Tests for StageRun.invoke and friends."""

    def test_invoke_renders_and_captures(self, make_run: Any, scripted_runner: Any) -> None:
        """Placeholders are rendered and captured stdout is exported."""
        scripted_runner.on("git rev-parse", stdout=f"{REVISION}\n")
        run = make_run()
        run.invoke(Invocation(command="git", args=("rev-parse", "HEAD"), capture="sha"))
        run.invoke(Invocation(command="docker", args=("push", "{image}")))

        assert run.exports == {"sha": REVISION}
        assert scripted_runner.commands[1] == "docker push registry.example.com/shop/orders:12-1a2b3c4"
        assert len(run.results) == 2

    def test_non_zero_exit(self, make_run: Any, scripted_runner: Any) -> None:
        """A failing tool raises NonZeroExitError with its last stderr line."""
        scripted_runner.on("mvn", exit_code=1, stderr="[INFO] ...\n[ERROR] BUILD FAILURE\n")
        run = make_run("build")
        with pytest.raises(NonZeroExitError) as exc_info:
            run.invoke(Invocation(command="mvn", args=("package",)))
        assert exc_info.value.exit_code == 1
        assert exc_info.value.reason == "mvn package exited with status 1: [ERROR] BUILD FAILURE"
        assert exc_info.value.kind == FailureKind.NON_ZERO_EXIT
        assert len(run.results) == 1

    def test_best_effort_warns(self, make_run: Any, scripted_runner: Any) -> None:
        """Best-effort failures become warnings."""
        scripted_runner.on("trivy", exit_code=2)
        run = make_run("scan")
        result = run.invoke(Invocation(command="trivy", args=("image", "x"), best_effort=True))
        assert result.exit_code == 2
        assert run.warnings == ["trivy image x exited with status 2"]

    def test_tool_not_found(self, make_run: Any, scripted_runner: Any) -> None:
        """NOT_FOUND maps to ToolNotFoundError."""
        scripted_runner.on("helm", outcome=ProcessOutcome.NOT_FOUND)
        with pytest.raises(ToolNotFoundError, match="command not found: helm"):
            make_run().invoke(Invocation(command="helm", args=("version",)))

    def test_timed_out(self, make_run: Any, scripted_runner: Any) -> None:
        """TIMED_OUT maps to StageTimeoutError naming the timeout."""
        scripted_runner.on("mvn", outcome=ProcessOutcome.TIMED_OUT)
        with pytest.raises(StageTimeoutError, match="mvn test exceeded timeout of 30s"):
            make_run().invoke(Invocation(command="mvn", args=("test",), timeout=30))

    def test_timeout_capped_by_deadline(self, make_run: Any, scripted_runner: Any, fake_clock: Any) -> None:
        """Invocation timeouts never exceed the stage deadline."""
        run = make_run(seconds=100)
        fake_clock.advance(90)
        run.invoke(Invocation(command="true", timeout=60))
        run.invoke(Invocation(command="true"))
        assert scripted_runner.timeouts == [pytest.approx(10.0), pytest.approx(10.0)]

    def test_expired_deadline_runs_nothing(self, make_run: Any, scripted_runner: Any, fake_clock: Any) -> None:
        """Nothing starts after the stage deadline."""
        run = make_run(seconds=10)
        fake_clock.advance(11)
        with pytest.raises(StageTimeoutError):
            run.invoke(Invocation(command="true"))
        assert scripted_runner.calls == []

    def test_scoped_credentials(self, make_run: Any, scripted_runner: Any) -> None:
        """Credentials are resolved per call and scoped to the stage."""
        invocation = Invocation(command="kubectl", credentials=(CredentialBinding("deploy-token"),))
        make_run("deploy").invoke(invocation)
        assert scripted_runner.secrets_seen == [{"deploy-token": "kube-token-456"}]

        with pytest.raises(CredentialAccessDeniedError):
            make_run("build").invoke(invocation)
        assert len(scripted_runner.calls) == 1

    def test_collect_files(self, tmp_path: Path) -> None:
        """Matching files are copied; no match is fine."""
        reports = tmp_path / "source" / "target" / "surefire-reports"
        reports.mkdir(parents=True)
        (reports / "TEST-a.xml").write_text("<a/>", encoding="utf-8")
        (reports / "TEST-b.xml").write_text("<b/>", encoding="utf-8")

        destination = tmp_path / "reports" / "unit-tests"
        copied = collect_files(
            ["source/target/surefire-reports/*.xml", "nothing/*.log"], tmp_path, destination
        )
        assert copied == (
            "source/target/surefire-reports/TEST-a.xml",
            "source/target/surefire-reports/TEST-b.xml",
        )
        assert (destination / copied[1]).read_text(encoding="utf-8") == "<b/>"

    def test_collect_files_same_name_in_modules(self, tmp_path: Path) -> None:
        """Reports sharing a file name in different modules are all kept."""
        for module in ("api", "core"):
            reports = tmp_path / module / "target" / "surefire-reports"
            reports.mkdir(parents=True)
            (reports / "TEST-Suite.xml").write_text(f"<{module}/>", encoding="utf-8")

        destination = tmp_path / "reports" / "unit-tests"
        copied = collect_files(["*/target/surefire-reports/*.xml"], tmp_path, destination)

        assert copied == (
            "api/target/surefire-reports/TEST-Suite.xml",
            "core/target/surefire-reports/TEST-Suite.xml",
        )
        assert (destination / copied[0]).read_text(encoding="utf-8") == "<api/>"
        assert (destination / copied[1]).read_text(encoding="utf-8") == "<core/>"

    def test_default_executors_cover_every_kind(self) -> None:
        """Every stage kind has an executor."""
        executors = default_executors()
        assert set(executors) == set(StageKind)
        assert all(isinstance(executor, StageExecutor) for executor in executors.values())


# ============================================================================
# Command stage
# ============================================================================


class TestCommandStage:
    """Tests for CommandStage."""

    def test_stops_at_first_failure(self, make_run: Any, scripted_runner: Any) -> None:
        """Invocations after a failure do not run."""
        scripted_runner.on("false", exit_code=1)
        stage = StageDefinition(
            name="build",
            invocations=(Invocation(command="true"), Invocation(command="false"), Invocation(command="echo")),
        )
        with pytest.raises(NonZeroExitError):
            CommandStage().execute(stage, make_run("build"))
        assert scripted_runner.commands == ["true", "false"]


# ============================================================================
# Quality gate
# ============================================================================


def _gate_stage(**options: Any) -> StageDefinition:
    return StageDefinition(
        name="quality-gate",
        kind=StageKind.QUALITY_GATE,
        options={
            "server_url": "https://sonar.example.com",
            "report_file": "source/target/sonar/report-task.txt",
            "credential": "sonar",
            "poll_interval": 5,
            "timeout": 30,
            **options,
        },
    )


@pytest.fixture
def task_file(tmp_path: Path) -> Path:
    path = tmp_path / "source" / "target" / "sonar" / "report-task.txt"
    path.parent.mkdir(parents=True)
    path.write_text("projectKey=orders\nceTaskId=AYx-task-1\n", encoding="utf-8")
    return path


class TestQualityGateStage:
    """Tests for QualityGateStage."""

    @pytest.mark.usefixtures("task_file")
    def test_passes_after_polling(self, make_run: Any, gate_client_factory: Any, fake_clock: Any) -> None:
        """Pending verdicts are polled until PASSED."""
        client, factory = gate_client_factory(
            [
                GateStatus(GateVerdict.PENDING, detail="analysis task pending"),
                GateStatus(GateVerdict.PENDING, detail="analysis task in_progress"),
                GateStatus(GateVerdict.PASSED, analysis_id="A1", detail="quality gate OK"),
            ]
        )
        run = make_run("quality-gate")
        QualityGateStage(factory).execute(_gate_stage(), run)

        assert client.polled == ["AYx-task-1"] * 3
        assert client.token == "sq-token-123"
        assert client.closed
        assert fake_clock.sleeps == [5.0, 5.0]
        assert run.details["quality_gate"]["verdict"] == "passed"
        assert run.details["quality_gate"]["polls"] == 3
        assert client.timeouts == [30.0, 25.0, 20.0]

    @pytest.mark.usefixtures("task_file")
    def test_failed_verdict(self, make_run: Any, gate_client_factory: Any) -> None:
        """A failed gate fails the stage with the gate detail."""
        client, factory = gate_client_factory(
            [GateStatus(GateVerdict.FAILED, analysis_id="A1", detail="quality gate ERROR: coverage < 80")]
        )
        with pytest.raises(QualityGateFailedError, match="coverage < 80") as exc_info:
            QualityGateStage(factory).execute(_gate_stage(), make_run("quality-gate"))
        assert exc_info.value.kind == FailureKind.QUALITY_GATE_FAILED
        assert client.closed

    @pytest.mark.usefixtures("task_file")
    def test_no_verdict_before_deadline(self, make_run: Any, gate_client_factory: Any) -> None:
        """A gate that never answers times out; it never passes by default."""
        _, factory = gate_client_factory([GateStatus(GateVerdict.PENDING)])
        with pytest.raises(StageTimeoutError, match="quality gate verdict exceeded timeout of 30s"):
            QualityGateStage(factory).execute(_gate_stage(), make_run("quality-gate"))

    @pytest.mark.usefixtures("task_file")
    def test_server_rejection(self, make_run: Any, gate_client_factory: Any) -> None:
        """A 4xx from the server fails the gate."""
        client, factory = gate_client_factory([GateStatus(GateVerdict.PENDING)])

        def reject(task_id: str, *, timeout: float | None = None) -> GateStatus:
            raise SonarQubeError("SonarQube rejected /api/ce/task with HTTP 403", status_code=403)

        client.poll = reject
        with pytest.raises(QualityGateFailedError, match="HTTP 403"):
            QualityGateStage(factory).execute(_gate_stage(), make_run("quality-gate"))

    def test_missing_task_file(self, make_run: Any, gate_client_factory: Any) -> None:
        """No task file means no verdict, which fails the gate."""
        client, factory = gate_client_factory([GateStatus(GateVerdict.PASSED)])
        with pytest.raises(QualityGateFailedError, match="no analysis task to wait for"):
            QualityGateStage(factory).execute(_gate_stage(), make_run("quality-gate"))
        assert client.polled == []

    @pytest.mark.usefixtures("task_file")
    def test_body_runs_first(self, make_run: Any, gate_client_factory: Any, scripted_runner: Any) -> None:
        """The stage body (analysis submission) runs before polling."""
        _, factory = gate_client_factory([GateStatus(GateVerdict.PASSED)])
        stage = StageDefinition(
            name="quality-gate",
            kind=StageKind.QUALITY_GATE,
            invocations=(Invocation(command="sonar-scanner"),),
            options=dict(_gate_stage().options),
        )
        QualityGateStage(factory).execute(stage, make_run("quality-gate"))
        assert scripted_runner.commands == ["sonar-scanner"]


# ============================================================================
# Deploy
# ============================================================================


@pytest.fixture
def manifest(tmp_path: Path) -> Path:
    path = tmp_path / "source" / "k8s" / "deployment.yaml"
    path.parent.mkdir(parents=True)
    path.write_text(
        "metadata:\n  namespace: {namespace}\nspec:\n  image: {image}\n  args: ['{{.Values}}']\n",
        encoding="utf-8",
    )
    return path


class TestDeployStage:
    """Tests for DeployStage."""

    @pytest.mark.usefixtures("manifest")
    def test_dry_run_then_apply(self, make_run: Any, scripted_runner: Any, context: RunContext) -> None:
        """The rendered manifest is validated server-side, then applied."""
        stage = StageDefinition(
            name="deploy",
            kind=StageKind.DEPLOY,
            options={"manifest": "source/k8s/deployment.yaml", "credential": "deploy-token"},
        )
        run = make_run("deploy")
        DeployStage().execute(stage, run)

        target = context.report_dir / "manifests" / "deploy.yaml"
        assert run.details["manifest"] == str(target)
        rendered = target.read_text(encoding="utf-8")
        assert "namespace: orders-dev" in rendered
        assert "image: registry.example.com/shop/orders:12-1a2b3c4" in rendered
        assert "{{.Values}}" in rendered
        assert scripted_runner.commands == [
            f"kubectl apply -f {target} -n orders-dev --dry-run=server",
            f"kubectl apply -f {target} -n orders-dev",
        ]
        assert scripted_runner.calls[0].credentials[0].env_name == "KUBECONFIG"
        assert scripted_runner.secrets_seen[1] == {"deploy-token": "kube-token-456"}

    @pytest.mark.usefixtures("manifest")
    def test_rejected_dry_run_never_applies(self, make_run: Any, scripted_runner: Any) -> None:
        """A manifest the cluster rejects is never applied."""
        scripted_runner.on("kubectl apply", exit_code=1, stderr='error: unknown field "imagePullPolicyy"')
        stage = StageDefinition(
            name="deploy", kind=StageKind.DEPLOY, options={"manifest": "source/k8s/deployment.yaml"}
        )
        with pytest.raises(NonZeroExitError, match="unknown field"):
            DeployStage().execute(stage, make_run("deploy"))
        assert len(scripted_runner.calls) == 1

    def test_missing_manifest(self, make_run: Any, scripted_runner: Any) -> None:
        """An unreadable manifest is an invalid invocation."""
        stage = StageDefinition(name="deploy", kind=StageKind.DEPLOY, options={"manifest": "k8s/missing.yaml"})
        with pytest.raises(TemplateError, match="cannot read manifest"):
            DeployStage().execute(stage, make_run("deploy"))
        assert scripted_runner.calls == []


# ============================================================================
# Rollout
# ============================================================================


def _deployment(ready: int, *, replicas: int = 3, generation: int = 2, observed: int = 2, **status: Any) -> str:
    return json.dumps(
        {
            "metadata": {"generation": generation},
            "spec": {"replicas": replicas},
            "status": {
                "observedGeneration": observed,
                "replicas": status.pop("total", replicas),
                "updatedReplicas": status.pop("updated", replicas),
                "readyReplicas": ready,
                **status,
            },
        }
    )


def _rollout_stage(**options: Any) -> StageDefinition:
    return StageDefinition(
        name="verify-rollout",
        kind=StageKind.ROLLOUT,
        options={"deployment": "orders", "poll_interval": 5, "rollout_timeout": 60, **options},
    )


class TestParseDeploymentStatus:
    """Tests for parse_deployment_status."""

    def test_generation_not_observed(self) -> None:
        """Nothing counts before the controller observed the update."""
        observation = parse_deployment_status(json.loads(_deployment(3, observed=1)))
        assert observation.ready == 0
        assert observation.desired == 3

    def test_old_replicas_pending(self) -> None:
        """Surplus old replicas keep the rollout short of READY."""
        observation = parse_deployment_status(json.loads(_deployment(3, total=4, updated=3)))
        assert observation.ready == 2
        assert "1 old replica(s)" in observation.message

    def test_progress_deadline_exceeded(self) -> None:
        """ProgressDeadlineExceeded is unrecoverable."""
        doc = json.loads(
            _deployment(
                1,
                conditions=[
                    {
                        "type": "Progressing",
                        "status": "False",
                        "reason": "ProgressDeadlineExceeded",
                        "message": 'ReplicaSet "orders-5d9" has timed out progressing.',
                    }
                ],
            )
        )
        observation = parse_deployment_status(doc)
        assert observation.failed
        assert "timed out progressing" in observation.message


class TestRolloutStage:
    """Tests for RolloutStage."""

    def test_ready(self, make_run: Any, scripted_runner: Any) -> None:
        """READY when ready replicas reach the desired count."""
        scripted_runner.on("kubectl get deployment", stdout=_deployment(3))
        run = make_run("verify-rollout")
        RolloutStage().execute(_rollout_stage(), run)
        assert run.details["deployment"]["phase"] == "ready"
        assert run.details["deployment"]["desired_replicas"] == 3
        assert scripted_runner.commands == ["kubectl get deployment orders -n orders-dev -o json"]

    def test_eventually_ready(self, make_run: Any, scripted_runner: Any, fake_clock: Any) -> None:
        """Polling continues through partial rollouts."""
        scripted_runner.on("kubectl get deployment", stdout=[_deployment(0), _deployment(1), _deployment(3)])
        run = make_run("verify-rollout")
        RolloutStage().execute(_rollout_stage(), run)
        assert run.details["deployment"]["phase"] == "ready"
        assert run.details["deployment"]["polls"] == 3
        assert fake_clock.sleeps == [5.0, 5.0]

    def test_timeout(self, make_run: Any, scripted_runner: Any) -> None:
        """A rollout that never completes times out with the last counts."""
        scripted_runner.on("kubectl get deployment", stdout=_deployment(1))
        with pytest.raises(DeploymentVerificationError, match="timed out with 1/3 replicas ready") as exc_info:
            RolloutStage().execute(_rollout_stage(), make_run("verify-rollout"))
        assert exc_info.value.state is not None
        assert exc_info.value.state.phase == RolloutPhase.TIMED_OUT

    def test_failed(self, make_run: Any, scripted_runner: Any) -> None:
        """An unrecoverable rollout fails immediately."""
        doc = _deployment(
            0,
            conditions=[{"type": "ReplicaFailure", "status": "True", "message": "exceeded quota"}],
        )
        scripted_runner.on("kubectl get deployment", stdout=doc)
        with pytest.raises(DeploymentVerificationError, match="rollout failed: exceeded quota") as exc_info:
            RolloutStage().execute(_rollout_stage(), make_run("verify-rollout"))
        assert exc_info.value.kind == FailureKind.DEPLOYMENT_VERIFICATION_FAILED
        assert exc_info.value.state is not None
        assert exc_info.value.state.polls == 1

    def test_kubectl_errors_keep_polling(self, make_run: Any, scripted_runner: Any) -> None:
        """Transient kubectl errors count as not ready."""
        scripted_runner.on("kubectl get deployment", exit_code=1, stderr="connection refused")
        with pytest.raises(DeploymentVerificationError, match="timed out"):
            RolloutStage().execute(_rollout_stage(replicas=2), make_run("verify-rollout"))
        assert len(scripted_runner.calls) > 1

    def test_kubectl_missing(self, make_run: Any, scripted_runner: Any) -> None:
        """A missing kubectl is a tool error, not a slow rollout."""
        scripted_runner.on("kubectl", outcome=ProcessOutcome.NOT_FOUND)
        with pytest.raises(ToolNotFoundError):
            RolloutStage().execute(_rollout_stage(), make_run("verify-rollout"))


# ============================================================================
# Health check
# ============================================================================


def _probe_factory(responses: list[httpx.Response], seen: list[str]) -> Any:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return responses.pop(0) if len(responses) > 1 else responses[0]

    def factory(expected_status: int, timeout: float) -> HealthProbe:
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return HealthProbe(client, expected_status=expected_status, timeout=timeout)

    return factory


def _health_stage(**options: Any) -> StageDefinition:
    return StageDefinition(
        name="smoke-test",
        kind=StageKind.HEALTH_CHECK,
        mandatory=False,
        options={"url": "http://orders.{namespace}.svc:8080/actuator/health", "timeout": 20, **options},
    )


class TestHealthCheckStage:
    """Tests for HealthCheckStage."""

    def test_healthy_after_retries(self, make_run: Any) -> None:
        """Unhealthy answers are retried until healthy."""
        seen: list[str] = []
        factory = _probe_factory(
            [
                httpx.Response(503),
                httpx.Response(200, json={"status": "DOWN"}),
                httpx.Response(200, json={"status": "UP"}),
            ],
            seen,
        )
        run = make_run("smoke-test")
        HealthCheckStage(factory).execute(_health_stage(), run)
        assert seen[0] == "http://orders.orders-dev.svc:8080/actuator/health"
        assert run.details["health"]["attempts"] == 3
        assert run.details["health"]["healthy"] is True

    def test_never_healthy(self, make_run: Any) -> None:
        """Still unhealthy at the deadline fails the stage."""
        factory = _probe_factory([httpx.Response(500)], [])
        with pytest.raises(HealthCheckFailedError, match="expected HTTP 200, got 500") as exc_info:
            HealthCheckStage(factory).execute(_health_stage(), make_run("smoke-test"))
        assert exc_info.value.kind == FailureKind.DEPLOYMENT_VERIFICATION_FAILED

    def test_request_timeout_within_deadline(self, make_run: Any) -> None:
        """A probe request never waits past the stage deadline."""
        read_timeouts: list[float] = []

        def handler(request: httpx.Request) -> httpx.Response:
            read_timeouts.append(request.extensions["timeout"]["read"])
            return httpx.Response(200, json={"status": "UP"})

        def factory(expected_status: int, timeout: float) -> HealthProbe:
            client = httpx.Client(transport=httpx.MockTransport(handler))
            return HealthProbe(client, expected_status=expected_status, timeout=timeout)

        HealthCheckStage(factory).execute(_health_stage(timeout=3), make_run("smoke-test"))
        assert read_timeouts == [3.0]
