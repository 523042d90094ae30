"""Advisory, cross-process exclusive locks on filesystem paths."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import IO

from cargo_wasix.errors import ConfigurationError

if sys.platform == "win32":
    import msvcrt

    def _lock(handle: IO[bytes]) -> None:
        handle.seek(0)
        while True:
            try:
                msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, 1)
                return
            except OSError:
                # LK_LOCK gives up after ~10 attempts; keep waiting.
                continue

    def _unlock(handle: IO[bytes]) -> None:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _lock(handle: IO[bytes]) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)

    def _unlock(handle: IO[bytes]) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def file_lock(path: str | Path) -> Iterator[Path]:
    """Hold an exclusive advisory lock on *path* for the body of the block.

    The lock file is created (with its parent directories) if missing. The
    lock is released on every exit path, including exceptions.
    """
    lock_path = Path(path)
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(lock_path, "a+b")  # noqa: SIM115 - closed in finally
    except OSError as exc:
        raise ConfigurationError(
            "Failed to open lock file.",
            context={"operation": "lock", "path": str(lock_path), "error": str(exc)},
        ) from exc
    try:
        _lock(handle)
        try:
            yield lock_path
        finally:
            _unlock(handle)
    finally:
        handle.close()
