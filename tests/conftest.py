"""Shared test fixtures."""

from __future__ import annotations

import io
import tarfile
from collections.abc import Callable, Mapping
from pathlib import Path

import pytest

from cargo_wasix.cache import Cache
from cargo_wasix.config import Config
from cargo_wasix.observability import StructuredLogger


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(cache_base=tmp_path / "cache")


@pytest.fixture
def cache(config: Config) -> Cache:
    return Cache.from_config(config)


@pytest.fixture
def logger() -> StructuredLogger:
    """Logger whose terminal output goes to a buffer instead of stderr."""
    return StructuredLogger(stream=io.StringIO())


@pytest.fixture
def make_tarball(tmp_path: Path) -> Callable[[str, Mapping[str, bytes]], Path]:
    """Build a gzipped tarball from ``{archive path: content}``."""

    def build(name: str, files: Mapping[str, bytes]) -> Path:
        archive = tmp_path / "archives" / name
        archive.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive, "w:gz") as tar:
            for member, content in files.items():
                info = tarfile.TarInfo(member)
                info.size = len(content)
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(content))
        return archive

    return build
