"""Run cargo, fold its structured output into a BuildResult."""

from __future__ import annotations

import json
import subprocess
import sys
import tomllib
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, TextIO

from cargo_wasix.build.events import is_record, parse_line, wasm_bindgen_version
from cargo_wasix.errors import ConfigurationError, ParseError, ProcessError
from cargo_wasix.models import (
    TOOLCHAIN_NAME,
    WASM_EXTENSION,
    ArtifactProduced,
    BuildResult,
    DeferredRun,
    ManifestConfig,
    TargetWidth,
    WasmArtifact,
)
from cargo_wasix.observability import StructuredLogger
from cargo_wasix.process import capture_stdout, describe

MESSAGE_FORMAT = "json-render-diagnostics"


class DeferredExecutor(Protocol):
    def defer(self, args: Sequence[str]) -> None:
        """Record a program run that cargo asked for, to execute later."""


@dataclass(slots=True)
class DeferredRuns:
    """Executor that only remembers what it was asked to run."""

    runs: list[tuple[str, ...]] = field(default_factory=list)

    def defer(self, args: Sequence[str]) -> None:
        self.runs.append(tuple(args))


def cargo_argv(
    subcommand: str,
    width: TargetWidth,
    passthrough: Sequence[str] = (),
    *,
    cargo: str = "cargo",
) -> list[str]:
    return [
        cargo,
        f"+{TOOLCHAIN_NAME}",
        subcommand,
        "--target",
        width.triple,
        "--message-format",
        MESSAGE_FORMAT,
        *passthrough,
    ]


def collect_events(
    output: str,
    *,
    executor: DeferredExecutor | None = None,
    echo: TextIO | None = None,
) -> BuildResult:
    """Fold cargo's stdout into a BuildResult, echoing non-record lines."""
    result = BuildResult()
    stream = echo if echo is not None else sys.stdout
    for line in output.splitlines():
        if not is_record(line):
            print(line, file=stream)
            continue
        event = parse_line(line)
        if isinstance(event, ArtifactProduced):
            version = wasm_bindgen_version(event.package_id)
            if version is not None:
                result.wasm_bindgen = version
            for filename in event.filenames:
                if filename.suffix == WASM_EXTENSION:
                    result.wasms.append(
                        WasmArtifact(path=filename, profile=event.profile, fresh=event.fresh)
                    )
        elif isinstance(event, DeferredRun):
            result.runs.append(event.args)
            if executor is not None:
                executor.defer(event.args)
    return result


@dataclass(slots=True)
class BuildDriver:
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    echo: TextIO | None = None

    def build(
        self,
        argv: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        executor: DeferredExecutor | None = None,
    ) -> BuildResult:
        """Run *argv* and return everything cargo reported.

        stdout is captured in full; stderr goes straight to the user. The
        manifest switches of the workspace root are attached afterwards.
        """
        self.logger.verbose(lambda: self.logger.status("Running", f"`{describe(argv)}`"))
        completed = subprocess.run(
            list(argv),
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdout=subprocess.PIPE,
            check=False,
        )
        if completed.returncode != 0:
            raise ProcessError(
                command=describe(argv),
                returncode=completed.returncode,
                stdout=completed.stdout or b"",
            )
        output = completed.stdout.decode("utf-8", errors="replace")
        result = collect_events(output, executor=executor, echo=self.echo)
        result.manifest_config = self.manifest_config(argv[0], env=env, cwd=cwd)
        self.logger.log(
            operation="build",
            phase="finished",
            target=None,
            message=f"{len(result.wasms)} wasm artifact(s), {len(result.runs)} deferred run(s)",
        )
        return result

    def manifest_config(
        self,
        cargo: str = "cargo",
        *,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> ManifestConfig:
        metadata_out = capture_stdout(
            [cargo, "metadata", "--no-deps", "--format-version=1"], cwd=cwd, env=env
        )
        try:
            metadata = json.loads(metadata_out)
            workspace_root = Path(metadata["workspace_root"])
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            raise ParseError("failed to parse `cargo metadata` output") from exc
        return read_manifest_config(workspace_root / "Cargo.toml")


def read_manifest_config(manifest_path: Path) -> ManifestConfig:
    """Read the ``[package.metadata]`` switches of one Cargo.toml."""
    try:
        with manifest_path.open("rb") as handle:
            manifest = tomllib.load(handle)
    except OSError as exc:
        raise ConfigurationError(
            "failed to read the workspace manifest", context={"path": str(manifest_path)}
        ) from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(
            "failed to parse the workspace manifest",
            context={"path": str(manifest_path), "error": str(exc)},
        ) from exc

    package = manifest.get("package")
    metadata = package.get("metadata") if isinstance(package, dict) else None
    if not isinstance(metadata, dict):
        return ManifestConfig()
    try:
        return ManifestConfig.from_metadata(metadata)
    except TypeError as exc:
        raise ConfigurationError(str(exc), context={"path": str(manifest_path)}) from exc
