"""Resolve a validated ``wasix`` toolchain, acquiring it when needed.

The flow is CHECK_LINKED, then (when nothing is linked) ACQUIRE_PREBUILT with
BUILD_FROM_SOURCE as the fallback, then LINK and VALIDATE. The whole sequence
runs under the cache-wide toolchain lock because rustup registration is not
safe under concurrent attempts.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path

from cargo_wasix.cache import Cache
from cargo_wasix.config import OFFLINE_ENV, Config
from cargo_wasix.errors import CargoWasixError, ConfigurationError, ValidationError
from cargo_wasix.locking import file_lock
from cargo_wasix.models import TOOLCHAIN_NAME, TargetWidth, ToolchainHandle
from cargo_wasix.observability import StructuredLogger
from cargo_wasix.toolchain import prebuilt
from cargo_wasix.toolchain.registry import RustupRegistry, ToolchainRegistry
from cargo_wasix.toolchain.source import SourceBuilder

PrebuiltInstaller = Callable[[str], Path]
SourceBuild = Callable[[], Path]


@dataclass(slots=True)
class ToolchainResolver:
    cache: Cache
    config: Config
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    registry: ToolchainRegistry | None = None
    install_prebuilt: PrebuiltInstaller | None = None
    build_from_source: SourceBuild | None = None
    host: str | None = None

    def __post_init__(self) -> None:
        if self.registry is None:
            self.registry = RustupRegistry(logger=self.logger)
        if self.install_prebuilt is None:
            self.install_prebuilt = partial(
                prebuilt.install_prebuilt,
                cache=self.cache,
                config=self.config,
                logger=self.logger,
            )
        if self.build_from_source is None:
            self.build_from_source = SourceBuilder(
                root=self.cache.source_build_dir,
                config=self.config,
                logger=self.logger,
            ).build
        if self.host is None:
            self.host = prebuilt.guess_host_target()

    def resolve(self, width: TargetWidth) -> ToolchainHandle:
        """Return the linked toolchain after checking it can target *width*."""
        with file_lock(self.cache.toolchain_lock):
            handle = self.registry.find(TOOLCHAIN_NAME)
            if handle is None:
                if self.config.offline:
                    raise ConfigurationError(
                        f"The {TOOLCHAIN_NAME} toolchain is not installed.",
                        hint=(
                            f"Unset ${OFFLINE_ENV} to download it, "
                            "or run `cargo wasix build-toolchain`."
                        ),
                        context={"target": width.triple},
                    )
                directory = self._acquire()
                handle = self.registry.link(TOOLCHAIN_NAME, directory)
            self._validate(handle, width)
            return handle

    def _acquire(self) -> Path:
        if self.host is not None:
            try:
                return self.install_prebuilt(self.host)
            except (CargoWasixError, OSError) as exc:
                self.logger.log(
                    operation="toolchain",
                    phase="acquire_prebuilt",
                    target=self.host,
                    message=str(exc),
                    level="warning",
                )
                self.logger.info(
                    f"Could not install a pre-built toolchain for {self.host}; "
                    "building from source.",
                    operation="toolchain",
                )
        else:
            self.logger.info(
                "No pre-built toolchain is available for this host; building from source.",
                operation="toolchain",
            )
        return self.build_from_source()

    def _validate(self, handle: ToolchainHandle, width: TargetWidth) -> None:
        sysroot = self.registry.sysroot(handle.name)
        if sysroot.resolve() != handle.path.resolve():
            raise ValidationError(
                f"The {handle.name} toolchain reports an unexpected sysroot.",
                hint=f"Remove it with `rustup toolchain remove {handle.name}` and retry.",
                context={"expected": str(handle.path), "actual": str(sysroot)},
            )
        if not handle.has_target(width):
            raise ValidationError(
                f"The {handle.name} toolchain does not support {width.triple}.",
                hint=f"Remove it with `rustup toolchain remove {handle.name}` and retry.",
                context={"path": str(handle.path / width.rustlib_dir)},
            )
