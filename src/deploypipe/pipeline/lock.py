"""One active run per pipeline and workspace."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from deploypipe.pipeline.exceptions import PipelineLockedError

logger = logging.getLogger(__name__)

#: Directory (inside the workspace) holding lock files.
LOCK_DIR = ".deploypipe"


def lock_path(workspace: str | Path, name: str) -> Path:
    """Lock file of pipeline ``name`` in ``workspace``."""
    return Path(workspace) / LOCK_DIR / f"{name}.lock"


@contextmanager
def run_lock(workspace: str | Path, name: str, *, run_id: str = "") -> Iterator[Path]:
    """Hold the run lock of pipeline ``name`` for the duration of the block.

    The lock file is created atomically and holds the owner pid and run id.
    A lock left behind by a crashed run must be removed by hand.

    Raises:
        PipelineLockedError: Another run holds the lock.
    """
    path = lock_path(workspace, name)
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        raise PipelineLockedError(name, str(path)) from None

    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(f"pid={os.getpid()}\nrun_id={run_id}\nsince={datetime.now(timezone.utc).isoformat()}\n")
    logger.debug("Acquired run lock %s", path)
    try:
        yield path
    finally:
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning("Run lock %s vanished before release", path)
        else:
            logger.debug("Released run lock %s", path)


__all__ = [
    "LOCK_DIR",
    "lock_path",
    "run_lock",
]
