"""Core typed dataclasses for build events, results, and toolchain handles."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path

TOOLCHAIN_NAME = "wasix"
WASM_EXTENSION = ".wasm"


class TargetWidth(IntEnum):
    """Pointer width of the WASIX output format."""

    W32 = 32
    W64 = 64

    @property
    def triple(self) -> str:
        return f"wasm{self.value}-wasmer-wasi"

    @property
    def runner_env(self) -> str:
        """Name of the cargo variable that selects the runner for this target."""
        return f"CARGO_TARGET_{self.triple.upper().replace('-', '_')}_RUNNER"

    @property
    def rustlib_dir(self) -> str:
        return f"lib/rustlib/{self.triple}"

    @property
    def libc_archive(self) -> str:
        return f"sysroot{self.value}/lib/wasm{self.value}-wasi/libc.a"


@dataclass(frozen=True, slots=True)
class Profile:
    """Compilation profile reported by cargo for a single artifact."""

    opt_level: str
    debuginfo: int | str | None = None
    test: bool = False

    @property
    def has_debuginfo(self) -> bool:
        return self.debuginfo not in (None, 0, "0", "none", "")

    @property
    def optimizes(self) -> bool:
        return self.opt_level != "0"

    @classmethod
    def from_payload(cls, payload: dict[str, object]) -> Profile:
        opt_level = payload.get("opt_level")
        debuginfo = payload.get("debuginfo")
        test = payload.get("test", False)
        if not isinstance(opt_level, str | int) or isinstance(opt_level, bool):
            raise TypeError(f"invalid profile opt_level: {opt_level!r}")
        if debuginfo is not None and (
            not isinstance(debuginfo, int | str) or isinstance(debuginfo, bool)
        ):
            raise TypeError(f"invalid profile debuginfo: {debuginfo!r}")
        if not isinstance(test, bool):
            raise TypeError(f"invalid profile test flag: {test!r}")
        return cls(opt_level=str(opt_level), debuginfo=debuginfo, test=test)


@dataclass(frozen=True, slots=True)
class ManifestConfig:
    """``[package.metadata]`` switches; ``None`` means "not set"."""

    run_optimizer: bool | None = None
    keep_name_section: bool | None = None
    keep_producers_section: bool | None = None

    @classmethod
    def from_metadata(cls, metadata: dict[str, object]) -> ManifestConfig:
        return cls(
            run_optimizer=_optional_bool(metadata, "wasm-opt"),
            keep_name_section=_optional_bool(metadata, "wasm-name-section"),
            keep_producers_section=_optional_bool(metadata, "wasm-producers-section"),
        )


def _optional_bool(metadata: dict[str, object], key: str) -> bool | None:
    value = metadata.get(key)
    if value is None or isinstance(value, bool):
        return value
    raise TypeError(f"`package.metadata.{key}` must be a boolean, got {value!r}")


# ── Structured build events ─────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ArtifactProduced:
    filenames: tuple[Path, ...]
    package_id: str
    profile: Profile
    fresh: bool


@dataclass(frozen=True, slots=True)
class ScriptExecuted:
    pass


@dataclass(frozen=True, slots=True)
class DeferredRun:
    args: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class Finished:
    pass


BuildEvent = ArtifactProduced | ScriptExecuted | DeferredRun | Finished


@dataclass(frozen=True, slots=True)
class WasmArtifact:
    path: Path
    profile: Profile
    fresh: bool


@dataclass(slots=True)
class BuildResult:
    """Aggregate of everything observed during one build invocation."""

    wasms: list[WasmArtifact] = field(default_factory=list)
    runs: list[tuple[str, ...]] = field(default_factory=list)
    wasm_bindgen: str | None = None
    manifest_config: ManifestConfig = field(default_factory=ManifestConfig)


@dataclass(frozen=True, slots=True)
class ToolchainHandle:
    """A rustup toolchain registration and the directory it points at."""

    name: str
    path: Path

    def has_target(self, width: TargetWidth) -> bool:
        return (self.path / width.rustlib_dir).is_dir()

    def sysroot_dir(self, width: TargetWidth) -> Path | None:
        candidate = self.path.parent / f"sysroot{width.value}"
        if candidate.is_dir():
            return candidate
        return None


def rustc_exe() -> str:
    return "rustc.exe" if sys.platform == "win32" else "rustc"


__all__ = [
    "ArtifactProduced",
    "BuildEvent",
    "BuildResult",
    "DeferredRun",
    "Finished",
    "ManifestConfig",
    "Profile",
    "ScriptExecuted",
    "TOOLCHAIN_NAME",
    "TargetWidth",
    "ToolchainHandle",
    "WASM_EXTENSION",
    "WasmArtifact",
    "rustc_exe",
]
