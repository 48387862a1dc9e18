"""Tests for the deploypipe.pipeline.loader module."""

from __future__ import annotations

from typing import Any

import pytest

from deploypipe.credentials import CredentialBinding, CredentialMode
from deploypipe.pipeline.conditions import ParamEquals, StageSucceeded
from deploypipe.pipeline.exceptions import PipelineConfigError
from deploypipe.pipeline.loader import load_spec, parse_invocation, parse_pipeline_spec
from deploypipe.pipeline.models import GatePolicy, StageKind


def _pipeline(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "name": "orders",
        "image": {"repository": "registry.example.com/shop/orders"},
        "stages": [
            {"name": "build", "invocations": ["mvn -B -DskipTests package"]},
            {
                "name": "unit-tests",
                "when": {"param": "skip_tests", "equals": False},
                "invocations": [{"command": "mvn", "args": ["-B", "test"], "working_dir": "source"}],
                "post": {"collect": "target/surefire-reports/*.xml", "cleanup": True},
            },
        ],
        "finally": ["docker rmi -f {image}"],
    }
    data.update(overrides)
    return data


# ============================================================================
# parse_invocation
# ============================================================================


class TestParseInvocation:
    """Tests for invocation strings and mappings."""

    def test_string_is_split_like_a_shell(self) -> None:
        """Quoted arguments stay together; no shell runs them."""
        invocation = parse_invocation("p", "s", "git commit -m 'release 1.2'")
        assert invocation.command == "git"
        assert invocation.args == ("commit", "-m", "release 1.2")
        assert invocation.best_effort is False

    def test_mapping(self) -> None:
        """Every mapping field is read."""
        invocation = parse_invocation(
            "p",
            "s",
            {
                "command": "kubectl",
                "args": ["apply", "-f", "deploy.yaml"],
                "timeout": "30",
                "env": {"KUBE_EDITOR": "true"},
                "best_effort": True,
                "capture": "applied",
                "credentials": ["kubeconfig", {"ref": "registry", "mode": "stdin"}],
            },
        )
        assert invocation.args == ("apply", "-f", "deploy.yaml")
        assert invocation.timeout == 30.0
        assert invocation.env == {"KUBE_EDITOR": "true"}
        assert invocation.best_effort is True
        assert invocation.capture == "applied"
        assert invocation.credentials == (
            CredentialBinding("kubeconfig"),
            CredentialBinding("registry", mode=CredentialMode.STDIN),
        )

    def test_forced_best_effort(self) -> None:
        """Post-actions and cleanup force best-effort."""
        assert parse_invocation("p", "finally", {"command": "docker", "args": "logout"}, best_effort=True).best_effort

    @pytest.mark.parametrize(
        ("data", "match"),
        [
            ("", "empty invocation"),
            (42, "string or a mapping"),
            ({"args": ["x"]}, "missing 'command'"),
            ({"command": "mvn test"}, "Invalid command name"),
            ({"command": "mvn", "env": ["A=1"]}, "'env' must be a mapping"),
            ({"command": "mvn", "timeout": "soon"}, "invalid timeout"),
            ({"command": "mvn", "timeout": -1}, "timeout must be positive"),
            ({"command": "mvn", "credentials": [{"mode": "env"}]}, "needs 'ref'"),
            ({"command": "mvn", "credentials": [{"ref": "r", "mode": "pipe"}]}, "invalid credential mode"),
        ],
    )
    def test_invalid(self, data: Any, match: str) -> None:
        """Invalid invocations are rejected with context."""
        with pytest.raises(PipelineConfigError, match=match):
            parse_invocation("orders", "build", data)


# ============================================================================
# parse_pipeline_spec
# ============================================================================


class TestParsePipelineSpec:
    """Tests for explicit pipelines."""

    def test_full_definition(self) -> None:
        """Stages, conditions, post-actions and terminal block are parsed."""
        spec = parse_pipeline_spec(_pipeline())
        assert spec.name == "orders"
        assert [s.name for s in spec.stages] == ["build", "unit-tests"]
        assert spec.image_repository == "registry.example.com/shop/orders"

        unit_tests = spec.stages[1]
        assert unit_tests.when == ParamEquals("skip_tests", False)
        assert unit_tests.invocations[0].working_dir == "source"
        assert unit_tests.post is not None
        assert unit_tests.post.collect == ("target/surefire-reports/*.xml",)
        assert unit_tests.post.cleanup is True

        assert spec.finally_actions[0].args == ("rmi", "-f", "{image}")
        assert spec.finally_actions[0].best_effort is True

    def test_pipeline_settings(self) -> None:
        """Deadline, timeouts, gate policy and namespaces come from the section."""
        spec = parse_pipeline_spec(
            _pipeline(
                deadline="1800",
                default_timeout=300,
                gate_policy="advisory",
                report_dir="out",
                kubernetes={"namespaces": {"prod": "orders"}},
            )
        )
        assert spec.deadline == 1800.0
        assert spec.default_timeout == 300.0
        assert spec.gate_policy == GatePolicy.ADVISORY
        assert spec.report_dir == "out"
        assert spec.namespaces == {"prod": "orders"}

    def test_kinds_and_options(self) -> None:
        """Typed stages carry their options."""
        spec = parse_pipeline_spec(
            _pipeline(
                stages=[
                    {"name": "deploy", "kind": "deploy", "options": {"manifest": "k8s/app.yaml"}},
                    {
                        "name": "verify",
                        "kind": "rollout",
                        "timeout": 660,
                        "when": {"stage_succeeded": "deploy"},
                        "options": {"deployment": "orders"},
                    },
                    {"name": "scan", "mandatory": False, "invocations": ["trivy image {image}"]},
                ]
            )
        )
        deploy, verify, scan = spec.stages
        assert deploy.kind == StageKind.DEPLOY
        assert deploy.options == {"manifest": "k8s/app.yaml"}
        assert verify.timeout == 660.0
        assert verify.when == StageSucceeded("deploy")
        assert scan.mandatory is False

    @pytest.mark.parametrize(
        ("overrides", "match"),
        [
            ({"name": ""}, "missing 'name'"),
            ({"stages": {"build": {}}}, "'stages' must be a list"),
            ({"stages": ["build"]}, "stage 0 must be a mapping"),
            ({"stages": [{"invocations": ["true"]}]}, "stage 0 missing 'name'"),
            ({"stages": [{"name": "x", "kind": "lambda"}]}, "invalid kind 'lambda'"),
            ({"stages": [{"name": "x", "invocations": "true"}]}, "'invocations' must be a list"),
            ({"stages": [{"name": "x", "invocations": ["true"], "options": "fast"}]}, "'options' must be a mapping"),
            ({"stages": [{"name": "x", "invocations": ["true"], "post": ["rm"]}]}, "'post' must be a mapping"),
            ({"stages": [{"name": "x", "invocations": ["true"], "post": {}}]}, "requires 'invocations' or 'collect'"),
            ({"stages": [{"name": "x", "invocations": ["true"], "when": "sometimes"}]}, "Invalid condition"),
            ({"stages": [{"name": "x"}]}, "requires 'invocations'"),
            ({"stages": [{"name": "x", "kind": "deploy"}]}, "requires option\\(s\\) manifest"),
            ({"finally": "docker rmi"}, "'finally' must be a list"),
            ({"gate_policy": "strict"}, "invalid gate_policy"),
            ({"deadline": "forever"}, "invalid deadline"),
        ],
    )
    def test_invalid(self, overrides: dict[str, Any], match: str) -> None:
        """Invalid definitions raise PipelineConfigError."""
        with pytest.raises(PipelineConfigError, match=match):
            parse_pipeline_spec(_pipeline(**overrides))

    def test_non_mandatory_gate_rejected(self) -> None:
        """Gates are made optional through the policy, not per stage."""
        stage = {
            "name": "gate",
            "kind": "quality_gate",
            "mandatory": False,
            "options": {"server_url": "https://sonar.example.com", "report_file": "report-task.txt"},
        }
        with pytest.raises(PipelineConfigError, match="gate_policy 'advisory'"):
            parse_pipeline_spec(_pipeline(stages=[stage]))


# ============================================================================
# load_spec
# ============================================================================


class TestLoadSpec:
    """Tests for choosing between explicit and standard pipelines."""

    def test_explicit_stages(self) -> None:
        """A stages list means an explicit pipeline."""
        spec = load_spec({"pipeline": _pipeline()})
        assert [s.name for s in spec.stages] == ["build", "unit-tests"]

    def test_standard_workflow(self) -> None:
        """Without stages the standard workflow is built."""
        config = {
            "pipeline": {
                "name": "orders",
                "repository": {"url": "https://git.example.com/shop/orders.git"},
                "image": {"repository": "registry.example.com/shop/orders"},
            }
        }
        spec = load_spec(config)
        assert spec.stages[0].name == "checkout"
        assert spec.finally_actions[0].args == ("rmi", "-f", "{image}")

    def test_gate_policy_override(self) -> None:
        """The CLI override wins over the configured policy."""
        spec = load_spec({"pipeline": _pipeline(gate_policy="enforce")}, gate_policy=GatePolicy.ADVISORY)
        assert spec.gate_policy == GatePolicy.ADVISORY

    def test_pipeline_must_be_mapping(self) -> None:
        """A scalar pipeline section is rejected."""
        with pytest.raises(PipelineConfigError, match="must be a mapping"):
            load_spec({"pipeline": ["build"]})

    def test_active_config(self, tmp_path: Any, cfg_loader: Any) -> None:
        """Without an argument the active configuration is used."""
        config_file = tmp_path / "deploypipe.conf.yml"
        config_file.write_text(
            "pipeline:\n  name: shop\n  stages:\n    - name: hello\n      invocations: ['echo hi']\n",
            encoding="utf-8",
        )
        cfg_loader.load_config(path=config_file)
        spec = load_spec()
        assert spec.name == "shop"
        assert spec.stages[0].invocations[0].args == ("hi",)
