"""Tests for the deploypipe.credentials module."""

from __future__ import annotations

from pathlib import Path

import pytest

from deploypipe.credentials import (
    Credential,
    CredentialAccessDeniedError,
    CredentialBinding,
    CredentialKind,
    CredentialNotFoundError,
    CredentialVault,
)
from deploypipe.exceptions import FailureKind
from deploypipe.logging import mask_secrets


@pytest.fixture
def kubeconfig(tmp_path: Path) -> Path:
    path = tmp_path / "kubeconfig.yaml"
    path.write_text("apiVersion: v1\nkind: Config\n", encoding="utf-8")
    return path


# ============================================================================
# Resolution
# ============================================================================


class TestResolve:
    """Tests for CredentialVault.resolve."""

    def test_token(self, vault: CredentialVault) -> None:
        """A single variable yields a token."""
        credential = vault.resolve("sonar")
        assert credential.kind == CredentialKind.TOKEN
        assert credential.reveal() == "sq-token-123"
        credential.scrub()

    def test_username_password(self, vault: CredentialVault) -> None:
        """var_user and var_password yield a login."""
        credential = vault.resolve("registry")
        assert credential.kind == CredentialKind.USERNAME_PASSWORD
        assert credential.username == "ci-bot"
        assert credential.reveal() == "hunter2-registry"
        credential.scrub()

    def test_static_username(self) -> None:
        """A literal user name can accompany a password variable."""
        vault = CredentialVault(
            {"nexus": {"type": "env", "username": "deployer", "var_password": "NEXUS_PASS"}},
            environ={"NEXUS_PASS": "n3xus"},
        )
        with vault.scoped(["nexus"]) as creds:
            assert creds["nexus"].username == "deployer"

    def test_file_path(self, kubeconfig: Path) -> None:
        """A file source reveals its path."""
        vault = CredentialVault({"kube": {"type": "file", "path": str(kubeconfig)}})
        with vault.scoped(["kube"]) as creds:
            assert creds["kube"].kind == CredentialKind.FILE
            assert creds["kube"].reveal() == str(kubeconfig)

    def test_file_token(self, tmp_path: Path) -> None:
        """format: token reads the file content."""
        token_file = tmp_path / "token"
        token_file.write_text("  file-token\n", encoding="utf-8")
        vault = CredentialVault({"api": {"type": "file", "path": str(token_file), "format": "token"}})
        with vault.scoped(["api"]) as creds:
            assert creds["api"].reveal() == "file-token"

    @pytest.mark.parametrize(
        ("definition", "match"),
        [
            ({"type": "env", "var": "MISSING"}, "'MISSING' not set"),
            ({"type": "env", "var_password": "MISSING"}, "'MISSING' not set"),
            ({"type": "env", "var_user": "MISSING", "var_password": "PRESENT"}, "'MISSING' not set"),
            ({"type": "env"}, "requires 'var' or 'var_password'"),
            ({"type": "file"}, "requires 'path'"),
            ({"type": "file", "path": "/nonexistent/kubeconfig"}, "file not found"),
            ({"type": "vault", "path": "secret/x"}, "unsupported source type 'vault'"),
        ],
    )
    def test_unresolvable(self, definition: dict, match: str) -> None:
        """Missing or malformed sources are CREDENTIAL_NOT_FOUND."""
        vault = CredentialVault({"x": definition}, environ={"PRESENT": "value"})
        with pytest.raises(CredentialNotFoundError, match=match) as exc_info:
            vault.resolve("x")
        assert exc_info.value.kind == FailureKind.CREDENTIAL_NOT_FOUND

    def test_unknown_reference(self, vault: CredentialVault) -> None:
        """An undefined reference is never skipped silently."""
        with pytest.raises(CredentialNotFoundError, match="not defined in configuration"):
            vault.resolve("nexus")

    def test_empty_token_file(self, tmp_path: Path) -> None:
        """An empty token file is not a credential."""
        token_file = tmp_path / "token"
        token_file.write_text("\n", encoding="utf-8")
        vault = CredentialVault({"api": {"type": "file", "path": str(token_file), "format": "token"}})
        with pytest.raises(CredentialNotFoundError, match="is empty"):
            vault.resolve("api")


class TestScopes:
    """Tests for per-stage credential scopes."""

    def test_allowed_scope(self, vault: CredentialVault) -> None:
        """The listed stage may use the credential."""
        with vault.scoped(["deploy-token"], scope="deploy") as creds:
            assert creds["deploy-token"].reveal() == "kube-token-456"

    @pytest.mark.parametrize("scope", ["build", None])
    def test_denied_scope(self, vault: CredentialVault, scope: str | None) -> None:
        """Other stages are denied."""
        with pytest.raises(CredentialAccessDeniedError, match="access denied") as exc_info:
            vault.resolve("deploy-token", scope=scope)
        assert exc_info.value.kind == FailureKind.CREDENTIAL_ACCESS_DENIED
        assert exc_info.value.scope == scope


# ============================================================================
# Lifetime and masking
# ============================================================================


class TestScrub:
    """Tests for scrubbing and masking."""

    def test_scoped_scrubs_on_exit(self, vault: CredentialVault) -> None:
        """Values are wiped when the block ends."""
        with vault.scoped(["registry", "sonar"]) as creds:
            kept = dict(creds)
        assert all(credential.scrubbed for credential in kept.values())
        with pytest.raises(ValueError, match="scrubbed"):
            kept["sonar"].reveal()

    def test_scoped_scrubs_on_error(self, vault: CredentialVault) -> None:
        """Values are wiped when the block raises."""
        with pytest.raises(RuntimeError):
            with vault.scoped(["sonar"]) as creds:
                kept = creds["sonar"]
                raise RuntimeError("stage crashed")
        assert kept.scrubbed

    def test_partial_resolution_scrubbed(self, vault: CredentialVault) -> None:
        """Credentials resolved before a failing one are wiped too."""
        resolved: list[Credential] = []
        original = vault.resolve

        def spy(reference: str, *, scope: str | None = None) -> Credential:
            credential = original(reference, scope=scope)
            resolved.append(credential)
            return credential

        vault.resolve = spy  # type: ignore[method-assign]
        with pytest.raises(CredentialNotFoundError):
            with vault.scoped(["sonar", "nexus"]):
                pass
        assert len(resolved) == 1
        assert resolved[0].scrubbed

    def test_masked_while_resolved(self, vault: CredentialVault) -> None:
        """Resolved values are masked in log text until scrubbed."""
        with vault.scoped(["sonar"]):
            assert mask_secrets("token sq-token-123 used") == "token **** used"
        assert mask_secrets("token sq-token-123 used") == "token sq-token-123 used"

    def test_repr_hides_secret(self, vault: CredentialVault) -> None:
        """repr never contains the value."""
        with vault.scoped(["registry"]) as creds:
            text = repr(creds["registry"])
        assert "hunter2" not in text
        assert "value=****" in text


class TestConfiguration:
    """Tests for building the vault from configuration."""

    def test_from_config(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """The credentials section defines the references."""
        monkeypatch.setenv("DP_TEST_SONAR", "from-env")
        vault = CredentialVault.from_config({"credentials": {"sonar": {"type": "env", "var": "DP_TEST_SONAR"}}})
        assert vault.references == ("sonar",)
        with vault.scoped(["sonar"]) as creds:
            assert creds["sonar"].reveal() == "from-env"

    def test_binding_env_name(self) -> None:
        """Targets default to the upper-cased reference."""
        assert CredentialBinding("docker-hub").env_name == "DOCKER_HUB"
        assert CredentialBinding("docker-hub", target="REG").env_name == "REG"
