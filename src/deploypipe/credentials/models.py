"""Credential values and the way they are handed to external processes."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from deploypipe.logging import forget_secret


class CredentialKind(str, Enum):
    """Shape of a resolved credential.

    Attributes:
        USERNAME_PASSWORD: User name plus password.
        TOKEN: Single bearer token.
        FILE: Path to a file holding the secret (e.g. a kubeconfig).
    """

    USERNAME_PASSWORD = "username_password"
    TOKEN = "token"
    FILE = "file"


class CredentialMode(str, Enum):
    """How a credential reaches the external process.

    Attributes:
        ENV: Exported into the child environment only.
        STDIN: Secret piped to standard input.
        FILE: Secret written to a private temporary file.
    """

    ENV = "env"
    STDIN = "stdin"
    FILE = "file"


_TARGET_INVALID = re.compile(r"[^A-Z0-9_]")


@dataclass(frozen=True, slots=True)
class CredentialBinding:
    """Request for a credential by an invocation.

    Attributes:
        reference: Name of the credential in the vault.
        mode: Injection mode.
        target: Environment variable name (defaults to the upper-cased
            reference).

    Examples:
        >>> CredentialBinding("docker-hub").env_name
        'DOCKER_HUB'
    """

    reference: str
    mode: CredentialMode = CredentialMode.ENV
    target: str | None = None

    @property
    def env_name(self) -> str:
        """Environment variable used for this binding."""
        if self.target:
            return self.target
        return _TARGET_INVALID.sub("_", self.reference.upper())


class Credential:
    """A resolved credential, valid until :meth:`scrub`.

    The secret is held in a ``bytearray`` so it can be zeroed in place.
    ``repr`` never shows it.
    """

    __slots__ = ("_secret", "kind", "path", "reference", "username")

    def __init__(
        self,
        reference: str,
        kind: CredentialKind,
        *,
        secret: str | None = None,
        username: str | None = None,
        path: str | None = None,
    ) -> None:
        self.reference = reference
        self.kind = kind
        self.username = username
        self.path = path
        self._secret: bytearray | None = bytearray(secret.encode("utf-8")) if secret is not None else None

    @property
    def scrubbed(self) -> bool:
        """Whether the secret was already wiped."""
        return self._secret is None and self.path is None

    def reveal(self) -> str:
        """Return the secret value (the file path for FILE credentials).

        Raises:
            ValueError: If the credential was scrubbed.
        """
        if self.kind == CredentialKind.FILE:
            if self.path is None:
                raise ValueError(f"Credential '{self.reference}' was scrubbed")
            return self.path
        if self._secret is None:
            raise ValueError(f"Credential '{self.reference}' was scrubbed")
        return self._secret.decode("utf-8")

    def secret_values(self) -> tuple[str, ...]:
        """Values that must be masked in captured output."""
        if self._secret is None:
            return ()
        return (self._secret.decode("utf-8"),)

    def scrub(self) -> None:
        """Zero the secret buffer and drop every reference to it."""
        if self._secret is not None:
            forget_secret(self._secret.decode("utf-8"))
            for index in range(len(self._secret)):
                self._secret[index] = 0
        self._secret = None
        self.path = None

    def __repr__(self) -> str:
        state = "scrubbed" if self.scrubbed else "****"
        return f"Credential(reference={self.reference!r}, kind={self.kind.value}, value={state})"


__all__ = [
    "Credential",
    "CredentialBinding",
    "CredentialKind",
    "CredentialMode",
]
