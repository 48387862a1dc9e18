"""External process runner.

Executes one :class:`~deploypipe.pipeline.models.Invocation` without a
shell. Non-zero exits, timeouts and missing executables are all reported
through :class:`~deploypipe.pipeline.models.ProcessResult`; the runner only
raises on interruption (after killing the child).

Credentials reach the child through its environment, its standard input,
or a private temporary file, and never through the argument list (except
``{username:REF}``, which expands to the non-secret user name).
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import signal
import subprocess
import tempfile
import time
from collections.abc import Mapping
from pathlib import Path

from deploypipe.credentials.models import Credential, CredentialKind, CredentialMode
from deploypipe.logging import mask_secrets
from deploypipe.pipeline.models import Invocation, ProcessOutcome, ProcessResult

logger = logging.getLogger(__name__)

#: ``{username:REF}`` argument placeholder.
USERNAME_PLACEHOLDER = re.compile(r"\{username:([A-Za-z0-9_.-]+)\}")

# Seconds granted to collect output after the process group was killed.
_DRAIN_TIMEOUT = 5.0


class ExternalProcessRunner:
    """Run external commands with deadlines and scoped credentials.

    Args:
        workspace: Base directory; relative ``working_dir`` values resolve
            against it (defaults to the current directory).
        environ: Base environment for children (defaults to ``os.environ``).

    Examples:
        >>> from deploypipe.pipeline.models import Invocation
        >>> runner = ExternalProcessRunner()
        >>> result = runner.execute(Invocation(command="git", args=("--version",)), timeout=10)  # doctest: +SKIP
        >>> result.ok  # doctest: +SKIP
        True
    """

    def __init__(
        self,
        workspace: str | Path | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._workspace = Path(workspace) if workspace is not None else None
        self._environ = environ

    def execute(
        self,
        invocation: Invocation,
        *,
        timeout: float | None = None,
        credentials: Mapping[str, Credential] | None = None,
    ) -> ProcessResult:
        """Run ``invocation`` to completion or until ``timeout``.

        Args:
            invocation: Rendered invocation.
            timeout: Seconds before the process group is killed.
            credentials: Resolved credentials by reference; every binding of
                the invocation must be present.

        Returns:
            The process result. Output is masked.
        """
        credentials = credentials or {}
        command_line = invocation.display()
        env = {**(self._environ if self._environ is not None else os.environ), **invocation.env}

        executable = shutil.which(invocation.command, path=env.get("PATH"))
        if executable is None:
            logger.warning("Command not found: %s", invocation.command)
            return ProcessResult(
                command=command_line,
                outcome=ProcessOutcome.NOT_FOUND,
                stderr=f"command not found: {invocation.command}",
            )

        secrets: list[str] = []
        for credential in credentials.values():
            secrets.extend(credential.secret_values())

        temp_files: list[str] = []
        start = time.monotonic()
        try:
            stdin_data = self._bind_credentials(invocation, credentials, env, temp_files)
            args = [_expand_usernames(arg, credentials) for arg in invocation.args]
            logger.debug("Running %s (timeout=%s)", command_line, timeout)
            return self._run(
                [executable, *args],
                command_line=command_line,
                cwd=self._resolve_cwd(invocation.working_dir),
                env=env,
                stdin_data=stdin_data,
                timeout=timeout,
                secrets=tuple(secrets),
                start=start,
            )
        finally:
            for path in temp_files:
                _shred(path)

    def _run(
        self,
        argv: list[str],
        *,
        command_line: str,
        cwd: Path | None,
        env: dict[str, str],
        stdin_data: str | None,
        timeout: float | None,
        secrets: tuple[str, ...],
        start: float,
    ) -> ProcessResult:
        try:
            proc = subprocess.Popen(  # noqa: S603
                argv,
                stdin=subprocess.PIPE if stdin_data is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=env,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except OSError as exc:
            logger.warning("Cannot start %s: %s", command_line, exc)
            return ProcessResult(
                command=command_line,
                outcome=ProcessOutcome.NOT_FOUND,
                stderr=str(exc),
                duration=time.monotonic() - start,
            )

        try:
            stdout, stderr = proc.communicate(input=stdin_data, timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill_group(proc)
            stdout, stderr = _drain(proc)
            duration = time.monotonic() - start
            logger.warning("%s timed out after %.1fs, process group killed", command_line, duration)
            return ProcessResult(
                command=command_line,
                outcome=ProcessOutcome.TIMED_OUT,
                stdout=mask_secrets(stdout, secrets),
                stderr=mask_secrets(stderr, secrets),
                duration=duration,
            )
        except BaseException:
            _kill_group(proc)
            proc.wait()
            raise

        duration = time.monotonic() - start
        if proc.returncode != 0:
            logger.debug("%s exited with status %d", command_line, proc.returncode)
        return ProcessResult(
            command=command_line,
            outcome=ProcessOutcome.EXITED,
            exit_code=proc.returncode,
            stdout=mask_secrets(stdout, secrets),
            stderr=mask_secrets(stderr, secrets),
            duration=duration,
        )

    def _resolve_cwd(self, working_dir: str | None) -> Path | None:
        if working_dir is None:
            return self._workspace
        path = Path(working_dir)
        if self._workspace is not None and not path.is_absolute():
            path = self._workspace / path
        return path

    @staticmethod
    def _bind_credentials(
        invocation: Invocation,
        credentials: Mapping[str, Credential],
        env: dict[str, str],
        temp_files: list[str],
    ) -> str | None:
        stdin_data = None
        for binding in invocation.credentials:
            credential = credentials[binding.reference]
            target = binding.env_name

            if binding.mode == CredentialMode.STDIN:
                if credential.kind == CredentialKind.FILE:
                    stdin_data = Path(credential.reveal()).read_text(encoding="utf-8")
                else:
                    stdin_data = credential.reveal()
                continue

            if binding.mode == CredentialMode.FILE and credential.kind != CredentialKind.FILE:
                value = _write_private_file(credential.reveal())
                temp_files.append(value)
            else:
                value = credential.reveal()

            if credential.kind == CredentialKind.USERNAME_PASSWORD:
                env[f"{target}_USR"] = credential.username or ""
                env[f"{target}_PSW"] = value
            else:
                env[target] = value
        return stdin_data


def _expand_usernames(arg: str, credentials: Mapping[str, Credential]) -> str:
    def replacer(match: re.Match[str]) -> str:
        credential = credentials.get(match.group(1))
        if credential is None or credential.username is None:
            return match.group(0)
        return credential.username

    return USERNAME_PLACEHOLDER.sub(replacer, arg)


def _write_private_file(secret: str) -> str:
    fd, path = tempfile.mkstemp(prefix="deploypipe-cred-")
    try:
        os.write(fd, secret.encode("utf-8"))
    finally:
        os.close(fd)
    return path


def _shred(path: str) -> None:
    try:
        size = os.path.getsize(path)
        with open(path, "r+b") as handle:
            handle.write(b"\0" * size)
            handle.flush()
            os.fsync(handle.fileno())
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Cannot remove credential file %s: %s", path, exc)


def _kill_group(proc: subprocess.Popen[str]) -> None:
    # The group outlives its leader while any descendant is alive, and the
    # leader is not reaped yet, so its pid cannot have been reused.
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


def _drain(proc: subprocess.Popen[str]) -> tuple[str, str]:
    try:
        stdout, stderr = proc.communicate(timeout=_DRAIN_TIMEOUT)
    except subprocess.TimeoutExpired:
        # A descendant left the group and still holds the pipes.
        proc.kill()
        proc.wait()
        return "", ""
    return stdout or "", stderr or ""


__all__ = [
    "USERNAME_PLACEHOLDER",
    "ExternalProcessRunner",
]
