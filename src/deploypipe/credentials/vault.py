"""Resolve named credential references into short-lived values.

Credential definitions live in the ``credentials`` configuration section::

    credentials:
      registry:
        type: env
        var_user: REGISTRY_USER
        var_password: REGISTRY_PASSWORD
        scopes: [image-push]
      sonar:
        type: env
        var: SONAR_TOKEN
      kubeconfig:
        type: file
        path: ~/.kube/deploy-qa.yaml

The vault never stores resolved values. Callers acquire them with
:meth:`CredentialVault.scoped`, which scrubs every credential on exit,
including exception and timeout paths.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from deploypipe.credentials.exceptions import (
    CredentialAccessDeniedError,
    CredentialNotFoundError,
)
from deploypipe.credentials.models import Credential, CredentialKind
from deploypipe.logging import register_secret

logger = logging.getLogger(__name__)

_SOURCE_TYPES = ("env", "file")


class CredentialVault:
    """Accessor over credential definitions.

    Args:
        definitions: Mapping of reference name to source definition.
        environ: Environment to read ``env`` sources from (defaults to
            ``os.environ``).

    Examples:
        >>> vault = CredentialVault({"sonar": {"type": "env", "var": "SONAR_TOKEN"}}, environ={"SONAR_TOKEN": "s3"})
        >>> with vault.scoped(["sonar"]) as creds:
        ...     creds["sonar"].reveal()
        's3'
    """

    def __init__(
        self,
        definitions: Mapping[str, Mapping[str, Any]] | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._definitions: dict[str, dict[str, Any]] = {
            name: dict(value) for name, value in (definitions or {}).items()
        }
        self._environ = environ

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> CredentialVault:
        """Create a vault from a loaded configuration's ``credentials`` section."""
        section = config.get("credentials") or {}
        return cls({str(name): dict(value) for name, value in section.items()})

    @property
    def references(self) -> tuple[str, ...]:
        """Known credential references, sorted."""
        return tuple(sorted(self._definitions))

    def resolve(self, reference: str, *, scope: str | None = None) -> Credential:
        """Resolve a reference into a credential value.

        The caller owns the returned credential and must :meth:`~Credential.scrub`
        it. Prefer :meth:`scoped`.

        Args:
            reference: Credential name.
            scope: Name of the stage requesting it.

        Returns:
            The resolved credential.

        Raises:
            CredentialNotFoundError: Unknown reference or empty source.
            CredentialAccessDeniedError: ``scope`` is not allowed.
        """
        definition = self._definitions.get(reference)
        if definition is None:
            raise CredentialNotFoundError(reference, "not defined in configuration")

        scopes = definition.get("scopes")
        if scopes is not None and scope not in scopes:
            raise CredentialAccessDeniedError(reference, scope)

        source_type = definition.get("type", "env")
        if source_type == "env":
            credential = self._resolve_env(reference, definition)
        elif source_type == "file":
            credential = self._resolve_file(reference, definition)
        else:
            raise CredentialNotFoundError(
                reference, f"unsupported source type {source_type!r} (expected one of {', '.join(_SOURCE_TYPES)})"
            )

        for value in credential.secret_values():
            register_secret(value)
        logger.debug("Resolved credential '%s' (%s) for scope %s", reference, credential.kind.value, scope)
        return credential

    @contextmanager
    def scoped(
        self,
        references: Iterable[str],
        *,
        scope: str | None = None,
    ) -> Iterator[dict[str, Credential]]:
        """Resolve several references for the duration of a block.

        Every credential resolved so far is scrubbed on exit, whether the
        block returns, raises, or resolution itself fails half-way.

        Args:
            references: Credential names to resolve.
            scope: Name of the stage requesting them.

        Yields:
            Mapping of reference to credential.
        """
        resolved: dict[str, Credential] = {}
        try:
            for reference in references:
                if reference not in resolved:
                    resolved[reference] = self.resolve(reference, scope=scope)
            yield resolved
        finally:
            for credential in resolved.values():
                credential.scrub()
            resolved.clear()

    def _env(self) -> Mapping[str, str]:
        return self._environ if self._environ is not None else os.environ

    def _resolve_env(self, reference: str, definition: Mapping[str, Any]) -> Credential:
        env = self._env()
        if "var" in definition:
            value = env.get(definition["var"])
            if not value:
                raise CredentialNotFoundError(reference, f"environment variable {definition['var']!r} not set")
            return Credential(reference, CredentialKind.TOKEN, secret=value)

        if "var_password" in definition:
            password = env.get(definition["var_password"])
            if not password:
                raise CredentialNotFoundError(
                    reference, f"environment variable {definition['var_password']!r} not set"
                )
            username = definition.get("username")
            if "var_user" in definition:
                username = env.get(definition["var_user"])
                if not username:
                    raise CredentialNotFoundError(
                        reference, f"environment variable {definition['var_user']!r} not set"
                    )
            return Credential(reference, CredentialKind.USERNAME_PASSWORD, secret=password, username=username)

        raise CredentialNotFoundError(reference, "env source requires 'var' or 'var_password'")

    def _resolve_file(self, reference: str, definition: Mapping[str, Any]) -> Credential:
        raw_path = definition.get("path")
        if not raw_path:
            raise CredentialNotFoundError(reference, "file source requires 'path'")
        path = Path(str(raw_path)).expanduser()
        if not path.is_file():
            raise CredentialNotFoundError(reference, f"file not found: {path}")

        if definition.get("format", "path") == "token":
            try:
                token = path.read_text(encoding="utf-8").strip()
            except OSError as exc:
                raise CredentialNotFoundError(reference, f"cannot read {path}: {exc}") from exc
            if not token:
                raise CredentialNotFoundError(reference, f"file {path} is empty")
            return Credential(reference, CredentialKind.TOKEN, secret=token)

        return Credential(reference, CredentialKind.FILE, path=str(path))


__all__ = [
    "CredentialVault",
]
