"""External tool resolution with one-shot acquisition on a missing binary."""

from __future__ import annotations

import os
import shutil
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from cargo_wasix.cache import Cache
from cargo_wasix.config import Config
from cargo_wasix.errors import ConfigurationError
from cargo_wasix.fetch.archive import Downloader, fetch_and_extract, mark_executable
from cargo_wasix.observability import StructuredLogger
from cargo_wasix.process import Argv, describe
from cargo_wasix.process import run as run_process

Runner = Callable[..., None]
Which = Callable[[str], str | None]


class ToolOrigin(StrEnum):
    OVERRIDE = "override"
    SEARCH_PATH = "search_path"
    CACHE = "cache"


@dataclass(frozen=True, slots=True)
class ToolPath:
    binary: Path
    origin: ToolOrigin
    cache_sub_paths: tuple[str, ...] = ()

    @property
    def may_acquire(self) -> bool:
        return self.origin is not ToolOrigin.OVERRIDE


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """Where a tool comes from when it is not already installed."""

    name: str
    override_env: str
    binary_sub_path: str
    url: str | None
    members: Mapping[str, str] = field(default_factory=dict)

    def cache_dir(self, cache: Cache) -> Path:
        return cache.tool_dir(self.name)

    def locate(
        self,
        cache: Cache,
        *,
        env: Mapping[str, str] | None = None,
        which: Which = shutil.which,
    ) -> ToolPath:
        """Resolve the tool: explicit override, then $PATH, then the cache."""
        env = os.environ if env is None else env
        override = env.get(self.override_env)
        if override:
            return ToolPath(binary=Path(override), origin=ToolOrigin.OVERRIDE)
        cached = self.cache_dir(cache) / self.binary_sub_path
        if cached.exists():
            return self._cached(cache)
        found = which(self.name)
        if found is not None:
            return ToolPath(binary=Path(found), origin=ToolOrigin.SEARCH_PATH)
        return self._cached(cache)

    def acquire(
        self,
        cache: Cache,
        *,
        config: Config,
        logger: StructuredLogger | None = None,
        downloader: Downloader | None = None,
    ) -> ToolPath:
        if self.url is None:
            raise ConfigurationError(
                f"No prebuilt `{self.name}` is available for this platform.",
                hint=f"Install `{self.name}` yourself and point ${self.override_env} at it.",
                context={"operation": "acquire", "tool": self.name},
            )
        target = self.cache_dir(cache)
        fetch_and_extract(
            self.url,
            target,
            members=self.members,
            expected=(self.binary_sub_path,),
            lock_path=cache.lock_path(self.name),
            config=config,
            downloader=downloader,
            logger=logger,
        )
        mark_executable((target / self.binary_sub_path).parent)
        return self._cached(cache)

    def _cached(self, cache: Cache) -> ToolPath:
        return ToolPath(
            binary=self.cache_dir(cache) / self.binary_sub_path,
            origin=ToolOrigin.CACHE,
            cache_sub_paths=(self.binary_sub_path,),
        )


def run_with_acquire(
    tool: ToolPath,
    args: Sequence[str | Path],
    *,
    acquire: Callable[[], ToolPath],
    run: Runner = run_process,
) -> ToolPath:
    """Run *tool* with *args*, acquiring it once if it is missing.

    Only a spawn failure of kind "not found" or "permission denied" on a tool
    that was not explicitly overridden triggers acquisition, followed by
    exactly one retry. Returns the tool that finally ran.
    """
    try:
        run([tool.binary, *args])
        return tool
    except (FileNotFoundError, PermissionError) as exc:
        if not tool.may_acquire:
            raise _spawn_failure(tool, args, exc) from exc

    acquired = acquire()
    try:
        run([acquired.binary, *args])
    except (FileNotFoundError, PermissionError) as exc:
        raise _spawn_failure(acquired, args, exc) from exc
    return acquired


def _spawn_failure(tool: ToolPath, args: Sequence[str | Path], exc: OSError) -> ConfigurationError:
    return ConfigurationError(
        f"Failed to run `{tool.binary}`.",
        context={
            "command": describe([tool.binary, *args]),
            "origin": tool.origin.value,
            "error": str(exc),
        },
    )
