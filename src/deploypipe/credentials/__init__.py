"""CredentialVault accessor: scoped, scrubbed credential values."""

from deploypipe.credentials.exceptions import (
    CredentialAccessDeniedError,
    CredentialError,
    CredentialNotFoundError,
)
from deploypipe.credentials.models import (
    Credential,
    CredentialBinding,
    CredentialKind,
    CredentialMode,
)
from deploypipe.credentials.vault import CredentialVault

__all__ = [
    "Credential",
    "CredentialAccessDeniedError",
    "CredentialBinding",
    "CredentialError",
    "CredentialKind",
    "CredentialMode",
    "CredentialNotFoundError",
    "CredentialVault",
]
