"""Print the artifact identifier of a build."""

from __future__ import annotations

import json
import sys

import typer

from deploypipe.cli.common import JSON_OPTION, console, exit_error
from deploypipe.tagging import ArtifactTagger


def tag(
    build_number: int = typer.Option(..., "--build-number", "-b", envvar="BUILD_NUMBER", help="Build number."),
    revision: str = typer.Option(..., "--revision", "-r", help="Source revision (commit SHA)."),
    repository: str | None = typer.Option(None, "--repository", help="Print the full image reference."),
    hash_length: int = typer.Option(7, "--hash-length", help="Characters kept from the revision hash."),
    as_json: bool = JSON_OPTION,
) -> None:
    """Derive the image tag for a build number and revision."""
    try:
        identifier = ArtifactTagger(hash_length).tag(build_number, revision)
    except ValueError as exc:
        exit_error(str(exc))

    reference = identifier.reference(repository) if repository else None
    if as_json:
        payload = {
            "build_ordinal": identifier.build_ordinal,
            "short_hash": identifier.short_hash,
            "tag": identifier.tag,
            "reference": reference,
        }
        sys.stdout.write(json.dumps(payload) + "\n")
        return
    console.print(reference or identifier.tag, highlight=False)


__all__ = ["tag"]
