"""Versioned on-disk cache layout shared by concurrent invocations."""

from __future__ import annotations

from pathlib import Path

from cargo_wasix.config import Config, default_cache_base


class Cache:
    def __init__(self, all_versions_root: str | Path, version: str) -> None:
        self.all_versions_root = Path(all_versions_root)
        self.root = self.all_versions_root / version

    @classmethod
    def from_config(cls, config: Config) -> Cache:
        base = config.cache_base if config.cache_base is not None else default_cache_base()
        return cls(base, config.version)

    @property
    def toolchains_dir(self) -> Path:
        return self.root / "toolchains"

    @property
    def toolchain_lock(self) -> Path:
        return self.root / "toolchain.lock"

    @property
    def source_build_dir(self) -> Path:
        return self.root / "build"

    def tool_dir(self, name: str) -> Path:
        return self.root / name

    def lock_path(self, name: str) -> Path:
        return self.root / f"{name}.lock"
