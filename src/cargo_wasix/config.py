"""Runtime configuration read from the environment."""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from cargo_wasix import __version__
from cargo_wasix.errors import ConfigurationError

OFFLINE_ENV = "CARGO_WASIX_OFFLINE"
CACHE_DIR_ENV = "CARGO_WASIX_CACHE_DIR"
LOG_FILE_ENV = "CARGO_WASIX_LOG_FILE"


@dataclass(frozen=True, slots=True)
class Config:
    offline: bool = False
    verbose: bool = False
    cache_base: Path | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None, *, verbose: bool = False) -> Config:
        env = os.environ if env is None else env
        cache_base = env.get(CACHE_DIR_ENV)
        return cls(
            offline=bool(env.get(OFFLINE_ENV)),
            verbose=verbose,
            cache_base=Path(cache_base) if cache_base else None,
        )

    @property
    def version(self) -> str:
        return __version__


def ensure_network_allowed(*, config: Config, operation: str) -> None:
    if config.offline:
        raise ConfigurationError(
            "Network operations are disabled in offline mode.",
            hint=f"Unset ${OFFLINE_ENV} to allow downloads.",
            context={"operation": operation},
        )


def default_cache_base(env: Mapping[str, str] | None = None) -> Path:
    """Return the per-user cache directory that holds every tool version."""
    env = os.environ if env is None else env
    if sys.platform == "win32":
        local = env.get("LOCALAPPDATA")
        if local:
            return Path(local) / "cargo-wasix"
    elif sys.platform == "darwin":
        return Path.home() / "Library" / "Caches" / "cargo-wasix"
    else:
        xdg = env.get("XDG_CACHE_HOME")
        if xdg:
            return Path(xdg) / "cargo-wasix"
    try:
        return Path.home() / ".cache" / "cargo-wasix"
    except RuntimeError as exc:
        raise ConfigurationError(
            "Failed to find the home directory.",
            hint=f"Set $HOME or ${CACHE_DIR_ENV}.",
        ) from exc


@dataclass(frozen=True, slots=True)
class BuildToolchainOptions:
    """Inputs of the ``build-toolchain`` action."""

    root: Path
    build_libc: bool = True
    build_rust: bool = True
    rust_host_triple: str | None = None
    update_repos: bool = True

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> BuildToolchainOptions:
        env = os.environ if env is None else env
        components = env.get("WASIX_COMPONENTS", "")
        if components in ("", "all"):
            build_libc, build_rust = True, True
        elif components in ("libc", "libc-only"):
            build_libc, build_rust = True, False
        elif components in ("rust", "compiler-only"):
            build_libc, build_rust = False, True
        else:
            raise ConfigurationError(
                f"Invalid env var WASIX_COMPONENTS with value '{components}'.",
                hint="Expected 'all', 'libc-only' or 'compiler-only'.",
                context={"operation": "build-toolchain"},
            )

        build_dir = env.get("WASIX_BUILD_DIR")
        if build_dir:
            root = Path(build_dir)
        else:
            try:
                root = Path.home() / ".wasix"
            except RuntimeError as exc:
                raise ConfigurationError(
                    "Could not determine home dir.",
                    hint="Set the WASIX_BUILD_DIR env var.",
                ) from exc

        return cls(
            root=root,
            build_libc=build_libc,
            build_rust=build_rust,
            rust_host_triple=env.get("WASIX_RUST_HOST") or None,
            update_repos="WASIX_NO_UPDATE_REPOS" not in env,
        )
