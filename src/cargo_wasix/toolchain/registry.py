"""Toolchain registration through rustup."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from cargo_wasix.errors import ConfigurationError, ProcessError
from cargo_wasix.models import ToolchainHandle, rustc_exe
from cargo_wasix.observability import StructuredLogger
from cargo_wasix.process import capture_stdout, run, run_verbose

_LIST_MARKERS = ("(default)", "(override)", "(active)", "(active, default)")


class ToolchainRegistry(Protocol):
    def find(self, name: str) -> ToolchainHandle | None:
        """Return the registration for *name*, if any."""

    def link(self, name: str, directory: Path) -> ToolchainHandle:
        """Register *directory* as toolchain *name*, replacing a stale entry."""

    def sysroot(self, name: str) -> Path:
        """Ask the compiler of toolchain *name* for its sysroot."""


@dataclass(slots=True)
class RustupRegistry:
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    rustup: str = "rustup"

    def find(self, name: str) -> ToolchainHandle | None:
        try:
            listing = capture_stdout([self.rustup, "toolchain", "list", "--verbose"])
        except OSError as exc:
            raise ConfigurationError(
                "Could not list rustup toolchains.",
                hint="Install rustup: https://rustup.rs",
                context={"error": str(exc)},
            ) from exc
        return parse_toolchain_list(listing, name)

    def link(self, name: str, directory: Path) -> ToolchainHandle:
        self.logger.info(
            f"Activating rustup toolchain {name} at {directory}...", operation="toolchain"
        )
        compiler = directory / "bin" / rustc_exe()
        if not compiler.is_file():
            raise ConfigurationError(
                "Invalid toolchain directory: rustc executable not found.",
                context={"path": str(compiler)},
            )

        # Re-linking over an existing registration leaves rustup in a bad state.
        if self.find(name) is not None:
            try:
                run([self.rustup, "toolchain", "remove", name])
            except ProcessError as exc:
                raise ConfigurationError(
                    f"Could not remove {name} toolchain.", context={"name": name}
                ) from exc

        try:
            run_verbose(
                [self.rustup, "toolchain", "link", name, directory], logger=self.logger
            )
        except (ProcessError, OSError) as exc:
            raise ConfigurationError(
                "Could not link toolchain: rustup not installed?",
                context={"name": name, "path": str(directory)},
            ) from exc

        self.logger.info(
            f"rustup toolchain {name} was linked and is now available!", operation="toolchain"
        )
        return ToolchainHandle(name=name, path=directory)

    def sysroot(self, name: str) -> Path:
        env = dict(os.environ)
        env["RUSTUP_TOOLCHAIN"] = name
        try:
            output = capture_stdout([rustc_exe(), "--print", "sysroot"], env=env)
        except (ProcessError, OSError) as exc:
            raise ConfigurationError(
                "Could not execute rustc.", context={"toolchain": name}
            ) from exc
        return Path(output.strip())


def parse_toolchain_list(listing: str, name: str) -> ToolchainHandle | None:
    """Find *name* in ``rustup toolchain list --verbose`` output."""
    for line in listing.splitlines():
        stripped = line.strip()
        head, _, rest = stripped.partition(" ")
        if head != name:
            continue
        rest = rest.strip()
        for marker in _LIST_MARKERS:
            rest = rest.removeprefix(marker).strip()
        if rest:
            return ToolchainHandle(name=name, path=Path(rest))
    return None
