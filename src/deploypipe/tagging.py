"""Deterministic artifact identifiers.

An image tag is ``<build ordinal>-<short hash>``: the ordinal makes tags
unique across runs, the short hash ties the artifact to the source
revision it was built from.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

#: Default length of the short hash (same as ``git rev-parse --short``).
DEFAULT_HASH_LENGTH = 7

_COMMIT_SHA = re.compile(r"^[0-9a-fA-F]{7,64}$")


@dataclass(frozen=True, slots=True)
class ArtifactIdentifier:
    """Identifier shared by every stage of one run.

    Attributes:
        build_ordinal: Monotonic build number of the run.
        short_hash: Short hash derived from the source revision.

    Examples:
        >>> ident = ArtifactIdentifier(build_ordinal=42, short_hash="1a2b3c4")
        >>> ident.tag
        '42-1a2b3c4'
        >>> ident.reference("registry.example.com/team/app")
        'registry.example.com/team/app:42-1a2b3c4'
    """

    build_ordinal: int
    short_hash: str

    @property
    def tag(self) -> str:
        """Container image tag."""
        return f"{self.build_ordinal}-{self.short_hash}"

    def reference(self, repository: str) -> str:
        """Full image reference in ``repository``."""
        return f"{repository}:{self.tag}"


class ArtifactTagger:
    """Derive :class:`ArtifactIdentifier` values.

    ``tag`` is a pure function of its inputs. Commit SHAs are shortened
    the way git does (lower-cased prefix); any other revision string
    (a tag name, a branch@timestamp) is hashed with SHA-256 first.

    Args:
        hash_length: Number of hex characters kept.

    Examples:
        >>> ArtifactTagger().tag(7, "9F86D081884C7D659A2FEAA0C55AD015A3BF4F1B").tag
        '7-9f86d08'
    """

    def __init__(self, hash_length: int = DEFAULT_HASH_LENGTH) -> None:
        if not 4 <= hash_length <= 40:
            raise ValueError(f"hash_length must be between 4 and 40, got {hash_length}")
        self._hash_length = hash_length

    @property
    def hash_length(self) -> int:
        """Number of hex characters in the short hash."""
        return self._hash_length

    def short_hash(self, revision: str) -> str:
        """Return the short hash for ``revision``."""
        revision = revision.strip()
        if _COMMIT_SHA.match(revision) and len(revision) >= self._hash_length:
            return revision[: self._hash_length].lower()
        return hashlib.sha256(revision.encode("utf-8")).hexdigest()[: self._hash_length]

    def tag(self, build_ordinal: int, revision: str) -> ArtifactIdentifier:
        """Build the identifier for a run.

        Args:
            build_ordinal: Positive build number.
            revision: Source revision (commit SHA or any stable string).

        Returns:
            The artifact identifier.

        Raises:
            ValueError: If the ordinal is not positive or the revision is empty.
        """
        if isinstance(build_ordinal, bool) or not isinstance(build_ordinal, int) or build_ordinal < 1:
            raise ValueError(f"build_ordinal must be a positive integer, got {build_ordinal!r}")
        if not revision or not revision.strip():
            raise ValueError("revision cannot be empty")
        return ArtifactIdentifier(build_ordinal=build_ordinal, short_hash=self.short_hash(revision))


__all__ = [
    "DEFAULT_HASH_LENGTH",
    "ArtifactIdentifier",
    "ArtifactTagger",
]
