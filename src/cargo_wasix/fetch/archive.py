"""Download an archive and extract selected sub-paths into a cache directory.

The operation is idempotent: when every expected sub-path already exists the
network is not touched. The whole check/download/extract sequence runs under
an advisory lock so concurrent invocations sharing a cache converge on one
download.
"""

from __future__ import annotations

import os
import posixpath
import shutil
import stat
import tarfile
import tempfile
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

from cargo_wasix.config import Config, ensure_network_allowed
from cargo_wasix.errors import ValidationError
from cargo_wasix.fetch.http import download
from cargo_wasix.locking import file_lock
from cargo_wasix.observability import StructuredLogger

Downloader = Callable[[str, Path], Path]


def all_present(root: Path, sub_paths: Sequence[str]) -> bool:
    return all((root / sub).exists() for sub in sub_paths)


def fetch_and_extract(
    url: str,
    dest: str | Path,
    *,
    members: Mapping[str, str],
    lock_path: str | Path,
    config: Config,
    expected: Sequence[str] | None = None,
    downloader: Downloader | None = None,
    logger: StructuredLogger | None = None,
) -> Path:
    """Ensure *dest* holds the *members* of the archive at *url*.

    *members* maps an archive path prefix to a destination sub-path under
    *dest* (``""`` selects the whole archive, ``"."`` is *dest* itself).
    *expected* lists the sub-paths whose presence means the extraction is
    complete; it defaults to the destination sub-paths of *members*.
    """
    dest_path = Path(dest)
    required = tuple(expected) if expected is not None else _destinations(members)
    if not required:
        raise ValueError("fetch_and_extract() needs at least one expected sub-path")
    if all_present(dest_path, required):
        return dest_path

    with file_lock(lock_path):
        # Another process may have finished while we waited for the lock.
        if all_present(dest_path, required):
            return dest_path
        ensure_network_allowed(config=config, operation="fetch_and_extract")
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        fetch = downloader if downloader is not None else _default_downloader

        with tempfile.TemporaryDirectory(prefix=".fetch-", dir=dest_path.parent) as scratch:
            scratch_path = Path(scratch)
            archive = scratch_path / posixpath.basename(url.split("?", 1)[0])
            if logger is not None:
                logger.status("Downloading", url, operation="fetch")
            fetch(url, archive)
            staging = scratch_path / "staging"
            extract_members(archive, staging, members)
            _install(staging, dest_path)

        if not all_present(dest_path, required):
            missing = [sub for sub in required if not (dest_path / sub).exists()]
            raise ValidationError(
                "Archive did not contain the expected paths.",
                context={"url": url, "dest": str(dest_path), "missing": ", ".join(missing)},
            )
    return dest_path


def extract_members(archive: Path, target: Path, members: Mapping[str, str]) -> None:
    """Extract the archive entries selected by *members* into *target*."""
    target.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive, "r:*") as tar:
        selected: list[tarfile.TarInfo] = []
        for member in tar.getmembers():
            relocated = relocate(member.name, members)
            if relocated is None:
                continue
            if member.islnk():
                linked = relocate(member.linkname, members)
                if linked is None:
                    continue
                member.linkname = linked
            member.name = relocated
            selected.append(member)
        tar.extractall(target, members=selected, filter="data")


def relocate(name: str, members: Mapping[str, str]) -> str | None:
    """Map an archive entry name to its destination, longest prefix first."""
    normalized = name.removeprefix("./").rstrip("/")
    for prefix in sorted(members, key=len, reverse=True):
        clean = prefix.strip("/")
        if clean and normalized != clean and not normalized.startswith(clean + "/"):
            continue
        rest = normalized[len(clean) :].lstrip("/")
        destination = posixpath.normpath(posixpath.join(members[prefix], rest))
        if destination == ".":
            return None
        return destination
    return None


def mark_executable(directory: Path) -> None:
    """Restore owner/group/other execute bits on every file in *directory*."""
    if os.name == "nt" or not directory.is_dir():
        return
    for entry in directory.iterdir():
        if entry.is_file() and not entry.is_symlink():
            mode = entry.stat().st_mode
            entry.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def _destinations(members: Mapping[str, str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(value for value in members.values() if value != "."))


def _install(staging: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    for entry in sorted(staging.iterdir()):
        final = dest / entry.name
        if final.is_dir() and not final.is_symlink():
            shutil.rmtree(final)
        elif final.exists() or final.is_symlink():
            final.unlink()
        shutil.move(str(entry), final)


def _default_downloader(url: str, archive: Path) -> Path:
    return download(url, archive, token=None)
