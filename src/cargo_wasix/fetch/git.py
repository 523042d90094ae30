"""Pinned source checkouts for from-source toolchain builds."""

from __future__ import annotations

from pathlib import Path

from cargo_wasix.errors import ConfigurationError, ProcessError
from cargo_wasix.observability import StructuredLogger
from cargo_wasix.process import ensure_binary, run_verbose


def prepare_git_repo(
    source: str,
    ref: str,
    path: str | Path,
    *,
    logger: StructuredLogger,
    all_submodules: bool = True,
) -> Path:
    """Clone *source* into *path* if needed and hard-reset it to *ref*."""
    checkout = Path(path)
    logger.info(f"Preparing git repo {source} with tag/branch {ref}", operation="fetch_git")
    ensure_binary("git")

    try:
        if not (checkout / ".git").is_dir():
            checkout.parent.mkdir(parents=True, exist_ok=True)
            _git(["clone", source, str(checkout)], cwd=None, logger=logger)
        _git(["fetch", "origin", ref], cwd=checkout, logger=logger)
        _git(["reset", "--hard", ref], cwd=checkout, logger=logger)
        if all_submodules:
            _git(
                ["submodule", "update", "--init", "--recursive", "--progress"],
                cwd=checkout,
                logger=logger,
            )
    except ProcessError as exc:
        raise ConfigurationError(
            "Git command failed.",
            hint="Inspect repository/ref inputs and git installation.",
            context={"operation": "fetch_git", "repo": source, "ref": ref},
        ) from exc

    logger.info(f"Git repo ready at {checkout}", operation="fetch_git")
    return checkout


def _git(argv: list[str], *, cwd: Path | None, logger: StructuredLogger) -> None:
    run_verbose(["git", *argv], cwd=cwd, logger=logger)
