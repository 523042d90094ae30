"""Turn a raw ``rustc`` wasm artifact into its final form in place.

For ``foo.wasm`` two staging files live next to it: ``foo.rustc.wasm`` holds
what cargo produced and ``foo.wasix.wasm`` holds the finalized module, which
is then hard-linked (or copied) back to ``foo.wasm``. The finalized module is
assembled in ``foo.wasix.wasm.tmp`` and only moved into place once every step
succeeded.
"""

from __future__ import annotations

import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from cargo_wasix.errors import CargoWasixError, ValidationError
from cargo_wasix.models import ManifestConfig, Profile, WasmArtifact
from cargo_wasix.observability import StructuredLogger
from cargo_wasix.postprocess.demangle import demangle
from cargo_wasix.postprocess.optimizer import should_optimize
from cargo_wasix.postprocess.wasm import (
    NAME_SECTION,
    PRODUCERS_SECTION,
    Module,
    Section,
    is_debug_section,
    rename_functions,
)

RAW_SUFFIX = ".rustc.wasm"
FINAL_SUFFIX = ".wasix.wasm"
PENDING_SUFFIX = ".tmp"


@dataclass(frozen=True, slots=True)
class SectionPolicy:
    keep_debug: bool
    keep_names: bool
    keep_producers: bool

    @classmethod
    def for_artifact(cls, profile: Profile, manifest: ManifestConfig) -> SectionPolicy:
        debug = profile.has_debuginfo
        return cls(
            keep_debug=debug,
            keep_names=debug or manifest.keep_name_section is not False,
            keep_producers=debug or manifest.keep_producers_section is not False,
        )

    def keeps(self, name: str) -> bool:
        if is_debug_section(name):
            return self.keep_debug
        if name == NAME_SECTION:
            return self.keep_names
        if name == PRODUCERS_SECTION:
            return self.keep_producers
        return True


Rewriter = Callable[[bytes, SectionPolicy], bytes]


class Optimizer(Protocol):
    def optimize(self, source: Path, output: Path, profile: Profile, *, keep_names: bool) -> object:
        """Optimize *source* into *output*."""


def rewrite_module(
    data: bytes,
    policy: SectionPolicy,
    *,
    rename: Callable[[str], str] = demangle,
) -> bytes:
    """Drop custom sections *policy* excludes and demangle function names."""
    module = Module.parse(data)
    module.retain_custom(policy.keeps)
    for index, section in enumerate(module.sections):
        if section.custom_name == NAME_SECTION:
            body = rename_functions(section.custom_body(), rename)
            module.sections[index] = Section.custom(NAME_SECTION, body)
    return module.encode()


def staging_paths(path: Path) -> tuple[Path, Path]:
    stem = path.name.removesuffix(path.suffix)
    return path.with_name(stem + RAW_SUFFIX), path.with_name(stem + FINAL_SUFFIX)


def pending_path(final: Path) -> Path:
    return final.with_name(final.name + PENDING_SUFFIX)


@dataclass(slots=True)
class ArtifactPostProcessor:
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    optimizer: Optimizer | None = None
    rewrite: Rewriter = rewrite_module

    def process(self, artifact: WasmArtifact, manifest: ManifestConfig) -> Path:
        path = artifact.path
        raw, final = staging_paths(path)
        try:
            # cargo may hard-link this file from its own cache; it must not be
            # written through `path`.
            os.replace(path, raw)
            if artifact.fresh and final.exists():
                self.logger.log(
                    operation="postprocess",
                    phase="reuse",
                    target=str(path),
                    message="artifact is fresh, reusing finalized module",
                )
            else:
                self._finalize(raw, final, artifact.profile, manifest)
            _link_or_copy(final, path)
        except CargoWasixError as exc:
            exc.context.setdefault("artifact", str(path))
            raise
        except OSError as exc:
            raise ValidationError(
                "failed to process wasm file",
                context={"artifact": str(path), "error": str(exc)},
            ) from exc
        return path

    def _finalize(
        self, raw: Path, final: Path, profile: Profile, manifest: ManifestConfig
    ) -> None:
        # Only a fully finalized module may ever sit at `final`; a fresh
        # rebuild reuses whatever is there.
        final.unlink(missing_ok=True)
        pending = pending_path(final)
        policy = SectionPolicy.for_artifact(profile, manifest)
        try:
            pending.write_bytes(self.rewrite(raw.read_bytes(), policy))
            if self.optimizer is not None and should_optimize(profile, manifest):
                self.optimizer.optimize(pending, pending, profile, keep_names=policy.keep_names)
            os.replace(pending, final)
        finally:
            pending.unlink(missing_ok=True)


def _link_or_copy(source: Path, dest: Path) -> None:
    if dest.exists() or dest.is_symlink():
        dest.unlink()
    try:
        os.link(source, dest)
    except OSError:
        shutil.copyfile(source, dest)
