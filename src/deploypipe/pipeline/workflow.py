"""The standard build-test-scan-publish-deploy workflow.

Stages, in order:

======================  ===================================================
checkout                clone the repository, capture ``revision``
build                   package without tests
unit-tests              unless ``skip_tests``; junit reports collected even
                        when skipped
static-analysis         unless ``skip_static_analysis``
quality-gate            unless ``skip_static_analysis``; mandatory unless
                        the gate policy is advisory
image-build             ``docker build -t {image}``
vulnerability-scan      informational, never fails the run
image-push              registry login over stdin, then push
deploy                  render, dry-run, apply
verify-rollout          wait for all replicas
smoke-test              only when a health URL is configured; informational
======================  ===================================================

Terminal block: ``docker rmi -f {image}``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from deploypipe.credentials.models import CredentialBinding, CredentialMode
from deploypipe.pipeline.conditions import param_false
from deploypipe.pipeline.exceptions import PipelineConfigError
from deploypipe.pipeline.loader import spec_settings
from deploypipe.pipeline.models import (
    Invocation,
    PipelineSpec,
    PostAction,
    StageDefinition,
    StageKind,
)

logger = logging.getLogger(__name__)

# Margin added to polling timeouts so the stage deadline never fires first.
_STAGE_MARGIN = 60.0


def _git_credential_helper(target: str) -> str:
    return f"credential.helper=!f() {{ echo username=${target}_USR; echo password=${target}_PSW; }}; f"


def _section(settings: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = settings.get(key) or {}
    if not isinstance(value, Mapping):
        raise PipelineConfigError(f"'pipeline.{key}' must be a mapping")
    return value


def standard_workflow(settings: Mapping[str, Any]) -> PipelineSpec:
    """Build the standard pipeline from ``pipeline`` settings.

    Args:
        settings: The ``pipeline`` configuration section.

    Returns:
        The validated spec.

    Raises:
        PipelineConfigError: If a required setting is missing.

    Examples:
        >>> spec = standard_workflow({
        ...     "name": "orders",
        ...     "repository": {"url": "https://git.example.com/orders.git"},
        ...     "image": {"repository": "registry.example.com/shop/orders"},
        ... })
        >>> [s.name for s in spec.stages][:3]
        ['checkout', 'build', 'unit-tests']
    """
    name = str(settings.get("name") or "app")
    source = str(settings.get("source_dir") or "source")
    repository = _section(settings, "repository")
    build = _section(settings, "build")
    sonar = _section(settings, "sonar")
    scanner = _section(settings, "scanner")
    image = _section(settings, "image")
    kubernetes = _section(settings, "kubernetes")
    health = _section(settings, "health")

    if not repository.get("url"):
        raise PipelineConfigError(f"Pipeline '{name}': 'pipeline.repository.url' is required")
    if not image.get("repository"):
        raise PipelineConfigError(f"Pipeline '{name}': 'pipeline.image.repository' is required")

    tool = str(build.get("tool") or "mvn")
    stages: list[StageDefinition] = [
        _checkout(repository, source),
        StageDefinition(
            name="build",
            invocations=(Invocation(command=tool, args=("-B", "-DskipTests", "clean", "package"), working_dir=source),),
        ),
        StageDefinition(
            name="unit-tests",
            when=param_false("skip_tests"),
            invocations=(
                Invocation(
                    command=tool,
                    args=("-B", "test"),
                    working_dir=source,
                    best_effort=bool(build.get("tests_best_effort", False)),
                ),
            ),
            post=PostAction(
                collect=(f"{source}/{build.get('test_reports') or 'target/surefire-reports/*.xml'}",),
                cleanup=True,
            ),
        ),
    ]

    if sonar.get("url") and sonar.get("project_key"):
        stages.extend(_static_analysis(tool, source, sonar))
    else:
        logger.info("Pipeline '%s': no SonarQube server configured, static analysis disabled", name)

    stages.extend(_publish(source, image, scanner))
    stages.extend(_deploy(name, source, kubernetes))

    if health.get("url"):
        health_timeout = float(health.get("timeout") or 120)
        stages.append(
            StageDefinition(
                name="smoke-test",
                kind=StageKind.HEALTH_CHECK,
                mandatory=False,
                timeout=health_timeout + _STAGE_MARGIN,
                options={
                    "url": str(health["url"]),
                    "expected_status": int(health.get("expected_status") or 200),
                    "timeout": health_timeout,
                },
            )
        )

    return PipelineSpec(
        name=name,
        stages=tuple(stages),
        finally_actions=(Invocation(command="docker", args=("rmi", "-f", "{image}"), best_effort=True),),
        **spec_settings(settings),
    )


def _checkout(repository: Mapping[str, Any], source: str) -> StageDefinition:
    credential = repository.get("credential")
    clone_args: tuple[str, ...] = ()
    bindings: tuple[CredentialBinding, ...] = ()
    if credential:
        bindings = (CredentialBinding(str(credential), target="GIT"),)
        clone_args = ("-c", _git_credential_helper("GIT"))
    branch = str(repository.get("branch") or "main")
    return StageDefinition(
        name="checkout",
        invocations=(
            Invocation(
                command="git",
                args=(*clone_args, "clone", "--branch", branch, "--single-branch", str(repository["url"]), source),
                credentials=bindings,
            ),
            Invocation(command="git", args=("rev-parse", "HEAD"), working_dir=source, capture="revision"),
        ),
    )


def _static_analysis(tool: str, source: str, sonar: Mapping[str, Any]) -> list[StageDefinition]:
    credential = sonar.get("credential")
    bindings = (CredentialBinding(str(credential), target="SONAR_TOKEN"),) if credential else ()
    if tool == "mvn":
        analysis = Invocation(
            command="mvn",
            args=(
                "-B",
                "sonar:sonar",
                f"-Dsonar.projectKey={sonar['project_key']}",
                f"-Dsonar.host.url={sonar['url']}",
            ),
            working_dir=source,
            credentials=bindings,
        )
    else:
        analysis = Invocation(
            command="sonar-scanner",
            args=(f"-Dsonar.projectKey={sonar['project_key']}", f"-Dsonar.host.url={sonar['url']}"),
            working_dir=source,
            credentials=bindings,
        )

    gate_timeout = float(sonar.get("timeout") or 300)
    return [
        StageDefinition(name="static-analysis", when=param_false("skip_static_analysis"), invocations=(analysis,)),
        StageDefinition(
            name="quality-gate",
            kind=StageKind.QUALITY_GATE,
            when=param_false("skip_static_analysis"),
            timeout=gate_timeout + _STAGE_MARGIN,
            options={
                "server_url": str(sonar["url"]),
                "report_file": f"{source}/{sonar.get('report_file') or 'target/sonar/report-task.txt'}",
                "credential": credential,
                "poll_interval": float(sonar.get("poll_interval") or 5),
                "timeout": gate_timeout,
            },
        ),
    ]


def _publish(source: str, image: Mapping[str, Any], scanner: Mapping[str, Any]) -> list[StageDefinition]:
    dockerfile = str(image.get("dockerfile") or "Dockerfile")
    scan_tool = str(scanner.get("tool") or "trivy")
    severity = str(scanner.get("severity") or "HIGH,CRITICAL")

    push: list[Invocation] = []
    post = None
    credential = image.get("credential")
    if credential:
        push.append(
            Invocation(
                command="docker",
                args=("login", "-u", f"{{username:{credential}}}", "--password-stdin", "{registry}"),
                credentials=(CredentialBinding(str(credential), mode=CredentialMode.STDIN),),
            )
        )
        post = PostAction(invocations=(Invocation(command="docker", args=("logout", "{registry}")),))
    push.append(Invocation(command="docker", args=("push", "{image}")))

    return [
        StageDefinition(
            name="image-build",
            invocations=(
                Invocation(
                    command="docker", args=("build", "-t", "{image}", "-f", dockerfile, "."), working_dir=source
                ),
            ),
        ),
        StageDefinition(
            name="vulnerability-scan",
            mandatory=False,
            invocations=(
                Invocation(
                    command=scan_tool,
                    args=(
                        "image",
                        "--exit-code",
                        "0",
                        "--severity",
                        severity,
                        "--format",
                        "json",
                        "--output",
                        "{report_dir}/vulnerability-scan-{image_tag}.json",
                        "{image}",
                    ),
                    best_effort=True,
                ),
            ),
        ),
        StageDefinition(name="image-push", invocations=tuple(push), post=post),
    ]


def _deploy(name: str, source: str, kubernetes: Mapping[str, Any]) -> list[StageDefinition]:
    credential = kubernetes.get("credential")
    rollout_timeout = float(kubernetes.get("rollout_timeout") or 600)
    return [
        StageDefinition(
            name="deploy",
            kind=StageKind.DEPLOY,
            options={
                "manifest": f"{source}/{kubernetes.get('manifest') or 'k8s/deployment.yaml'}",
                "credential": credential,
            },
        ),
        StageDefinition(
            name="verify-rollout",
            kind=StageKind.ROLLOUT,
            timeout=rollout_timeout + _STAGE_MARGIN,
            options={
                "deployment": str(kubernetes.get("deployment") or name),
                "replicas": kubernetes.get("replicas"),
                "poll_interval": float(kubernetes.get("poll_interval") or 5),
                "rollout_timeout": rollout_timeout,
                "credential": credential,
            },
        ),
    ]


__all__ = [
    "standard_workflow",
]
