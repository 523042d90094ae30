"""Child process helpers with uniform failure reporting."""

from __future__ import annotations

import shlex
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from cargo_wasix.errors import CargoWasixError, ConfigurationError, ProcessError
from cargo_wasix.observability import StructuredLogger

Argv = Sequence[str | Path]


def describe(argv: Argv) -> str:
    return shlex.join(str(arg) for arg in argv)


def run(
    argv: Argv,
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> None:
    """Run *argv* with inherited stdio and raise ProcessError on failure.

    Spawn failures (missing binary, permission denied) propagate as the
    underlying ``OSError`` so callers can tell them apart from exit codes.
    """
    completed = subprocess.run(
        [str(arg) for arg in argv],
        cwd=cwd,
        env=dict(env) if env is not None else None,
        check=False,
    )
    if completed.returncode != 0:
        raise ProcessError(command=describe(argv), returncode=completed.returncode)


def run_verbose(
    argv: Argv,
    *,
    logger: StructuredLogger,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> None:
    logger.status("Running", f"`{describe(argv)}`", operation="process")
    run(argv, cwd=cwd, env=env)


def capture_stdout(
    argv: Argv,
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> str:
    """Run *argv*, stream stderr to the user, and return decoded stdout."""
    completed = subprocess.run(
        [str(arg) for arg in argv],
        cwd=cwd,
        env=dict(env) if env is not None else None,
        stdout=subprocess.PIPE,
        check=False,
    )
    if completed.returncode != 0:
        raise ProcessError(
            command=describe(argv),
            returncode=completed.returncode,
            stdout=completed.stdout or b"",
        )
    try:
        return completed.stdout.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ConfigurationError(
            "Process output was not utf-8.",
            context={"command": describe(argv)},
        ) from exc


def ensure_binary(command: str, args: Sequence[str] = ("--version",)) -> None:
    """Make sure *command* exists and runs successfully with *args*."""
    try:
        completed = subprocess.run(
            [command, *args],
            capture_output=True,
            check=False,
        )
    except OSError as exc:
        raise ConfigurationError(
            f"Could not find or execute binary: {command}",
            hint=f"Install `{command}` and make sure it is on $PATH.",
            context={"error": str(exc)},
        ) from exc
    if completed.returncode != 0:
        raise ConfigurationError(
            f"Could not find or execute binary: {command}",
            context={
                "returncode": str(completed.returncode),
                "stderr": completed.stderr.decode("utf-8", errors="replace")[:2000],
            },
        )


def hide_normal_process_exit(error: CargoWasixError, *, verbose: bool) -> CargoWasixError:
    """Flag a ProcessError that looks like a normal program exit as hidden.

    Hidden errors are not printed at the top level: the program already
    reported whatever it had to say and its exit code is propagated verbatim.
    """
    if verbose or not isinstance(error, ProcessError):
        return error
    if 0 <= error.returncode < 128 and not error.stdout and not error.stderr:
        error.hidden = True
    return error


def normal_process_exit_code(error: BaseException) -> int | None:
    if isinstance(error, ProcessError) and error.hidden:
        return error.returncode
    return None
