"""binaryen ``wasm-opt``: where to get it and how to call it."""

from __future__ import annotations

import platform
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path

from cargo_wasix.cache import Cache
from cargo_wasix.config import Config
from cargo_wasix.models import ManifestConfig, Profile
from cargo_wasix.observability import StructuredLogger
from cargo_wasix.process import run as run_process
from cargo_wasix.tools import Runner, ToolPath, ToolSpec, run_with_acquire

BINARYEN_VERSION = "version_116"
WASM_OPT_ENV = "WASM_OPT"

_BINARYEN_HOSTS: dict[tuple[str, str], str] = {
    ("Linux", "x86_64"): "x86_64-linux",
    ("Linux", "aarch64"): "aarch64-linux",
    ("Darwin", "x86_64"): "x86_64-macos",
    ("Darwin", "arm64"): "arm64-macos",
    ("Windows", "AMD64"): "x86_64-windows",
}


def binaryen_host(system: str | None = None, machine: str | None = None) -> str | None:
    return _BINARYEN_HOSTS.get((system or platform.system(), machine or platform.machine()))


def wasm_opt_spec(system: str | None = None, machine: str | None = None) -> ToolSpec:
    """ToolSpec for the pinned binaryen release; ``url`` is None on unknown hosts."""
    windows = (system or platform.system()) == "Windows"
    binary = "bin/wasm-opt.exe" if windows else "bin/wasm-opt"
    host = binaryen_host(system, machine)
    root = f"binaryen-{BINARYEN_VERSION}"
    url = None
    if host is not None:
        url = (
            "https://github.com/WebAssembly/binaryen/releases/download/"
            f"{BINARYEN_VERSION}/{root}-{host}.tar.gz"
        )
    return ToolSpec(
        name="wasm-opt",
        override_env=WASM_OPT_ENV,
        binary_sub_path=binary,
        url=url,
        members={f"{root}/{binary}": binary, f"{root}/lib": "lib"},
    )


def should_optimize(profile: Profile, manifest: ManifestConfig) -> bool:
    # wasm-opt mangles DWARF, so debug builds are never optimized.
    if profile.has_debuginfo or not profile.optimizes:
        return False
    return manifest.run_optimizer is not False


def optimizer_args(profile: Profile, *, keep_names: bool, source: Path, output: Path) -> list[str]:
    return [
        f"-O{profile.opt_level}",
        "--strip-producers",
        "--asyncify",
        # Artifacts are compiled with +atomics.
        "--enable-threads",
        "--enable-bulk-memory",
        "--debuginfo" if keep_names else "--strip-debug",
        str(source),
        "-o",
        str(output),
    ]


@dataclass(slots=True)
class WasmOptimizer:
    cache: Cache
    config: Config
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    spec: ToolSpec = field(default_factory=wasm_opt_spec)
    run: Runner = run_process

    def optimize(self, source: Path, output: Path, profile: Profile, *, keep_names: bool) -> ToolPath:
        self.logger.status("Optimizing", "with wasm-opt", operation="optimize")
        tool = self.spec.locate(self.cache)
        acquire = partial(self.spec.acquire, self.cache, config=self.config, logger=self.logger)
        return run_with_acquire(
            tool,
            optimizer_args(profile, keep_names=keep_names, source=source, output=output),
            acquire=acquire,
            run=self.run,
        )
