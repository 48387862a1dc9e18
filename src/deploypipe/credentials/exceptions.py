"""Credential resolution errors.

Both errors are stage failures, never skipped silently.
"""

from __future__ import annotations

from deploypipe.exceptions import DeployPipeError, FailureKind


class CredentialError(DeployPipeError):
    """Base class for credential errors.

    Attributes:
        reference: Credential reference that failed.
        reason: Why it failed.
        kind: Failure kind recorded on the stage result.
    """

    kind = FailureKind.CREDENTIAL_NOT_FOUND

    def __init__(self, reference: str, reason: str) -> None:
        """Initialize CredentialError.

        Args:
            reference: Credential reference that failed.
            reason: Why it failed.
        """
        super().__init__(f"Credential '{reference}' failed: {reason}")
        self.reference = reference
        self.reason = reason


class CredentialNotFoundError(CredentialError):
    """The reference is unknown or its source holds no value.

    Examples:
        >>> raise CredentialNotFoundError("registry", "not defined")
        Traceback (most recent call last):
        ...
        deploypipe.credentials.exceptions.CredentialNotFoundError: Credential 'registry' failed: not defined
    """

    kind = FailureKind.CREDENTIAL_NOT_FOUND


class CredentialAccessDeniedError(CredentialError):
    """The requesting stage is outside the credential's scopes."""

    kind = FailureKind.CREDENTIAL_ACCESS_DENIED

    def __init__(self, reference: str, scope: str | None) -> None:
        """Initialize CredentialAccessDeniedError.

        Args:
            reference: Credential reference that was requested.
            scope: Stage (or other caller) that requested it.
        """
        super().__init__(reference, f"access denied for scope {scope!r}")
        self.scope = scope


__all__ = [
    "CredentialAccessDeniedError",
    "CredentialError",
    "CredentialNotFoundError",
]
