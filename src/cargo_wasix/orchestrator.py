"""Compose toolchain resolution, the cargo build, post-processing and runs."""

from __future__ import annotations

import os
import shutil
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from cargo_wasix.build.driver import BuildDriver, cargo_argv
from cargo_wasix.build.shim import runner_command
from cargo_wasix.cache import Cache
from cargo_wasix.config import Config
from cargo_wasix.errors import ConfigurationError, ProcessError
from cargo_wasix.models import BuildResult, TargetWidth, ToolchainHandle
from cargo_wasix.observability import StructuredLogger
from cargo_wasix.postprocess.optimizer import WasmOptimizer
from cargo_wasix.postprocess.processor import ArtifactPostProcessor
from cargo_wasix.process import describe, hide_normal_process_exit
from cargo_wasix.process import run as run_process
from cargo_wasix.tools import Runner, Which
from cargo_wasix.toolchain.resolver import ToolchainResolver

DEFAULT_RUNTIME = "wasmer"
ATOMICS_FLAG = "-C target-feature=+atomics"
SDK_DIR_ENV = "WASI_SDK_DIR"

BUILD_ACTIONS = ("build", "run", "test", "bench", "check", "fix", "tree")
RUN_ACTIONS = frozenset({"run", "test", "bench"})


def parse_action(action: str) -> tuple[str, TargetWidth] | None:
    """Map ``build``/``build64`` style actions to (subcommand, width)."""
    if action in BUILD_ACTIONS:
        return action, TargetWidth.W32
    base = action.removesuffix("64")
    if base != action and base in BUILD_ACTIONS:
        return base, TargetWidth.W64
    return None


def is_verbose_flag(arg: str) -> bool:
    return arg.startswith(("--verbose", "-v"))


@dataclass(frozen=True, slots=True)
class Invocation:
    subcommand: str
    width: TargetWidth
    args: tuple[str, ...] = ()

    @property
    def verbose(self) -> bool:
        return any(is_verbose_flag(arg) for arg in self.args)

    @property
    def runs_binaries(self) -> bool:
        return self.subcommand in RUN_ACTIONS


def resolve_runtime(
    env: Mapping[str, str], width: TargetWidth, *, which: Which = shutil.which
) -> str:
    """Pick the wasm runtime for deferred runs, failing early if it is missing."""
    variable = width.runner_env
    override = env.get(variable)
    if override:
        if Path(override).exists() or which(override) is not None:
            return override
        raise ConfigurationError(
            f"failed to find `{override}` (specified by ${variable}) on the filesystem or in $PATH",
            hint=f"Fix the path or unset the ${variable} environment variable.",
        )
    if which(DEFAULT_RUNTIME) is None:
        raise ConfigurationError(
            f"failed to find `{DEFAULT_RUNTIME}` in $PATH",
            hint=f"Install `{DEFAULT_RUNTIME}`: curl https://get.wasmer.io -sSfL | sh",
        )
    return DEFAULT_RUNTIME


def build_environment(
    env: Mapping[str, str], handle: ToolchainHandle, width: TargetWidth
) -> dict[str, str]:
    child = dict(env)
    if SDK_DIR_ENV not in child:
        sysroot = handle.sysroot_dir(width)
        if sysroot is not None:
            child[SDK_DIR_ENV] = str(sysroot)
    flags = child.get("RUSTFLAGS", "").strip()
    if ATOMICS_FLAG not in flags:
        child["RUSTFLAGS"] = f"{flags} {ATOMICS_FLAG}".strip()
    return child


@dataclass(slots=True)
class DeferredRunner:
    """Collects the runs cargo asked for and executes them later."""

    runtime: str
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    verbose: bool = False
    run: Runner = run_process
    pending: list[tuple[str, ...]] = field(default_factory=list)

    def defer(self, args: Sequence[str]) -> None:
        self.pending.append(tuple(args))

    def run_all(self) -> None:
        for args in self.pending:
            if not args:
                continue
            self.logger.status("Running", f"`{' '.join(args)}`")
            try:
                self.run([self.runtime, args[0], "--", *args[1:]])
            except ProcessError as exc:
                hide_normal_process_exit(exc, verbose=self.verbose)
                raise


@dataclass(slots=True)
class Orchestrator:
    config: Config
    logger: StructuredLogger
    resolver: ToolchainResolver
    driver: BuildDriver
    postprocessor: ArtifactPostProcessor
    env: Mapping[str, str] | None = None
    which: Which = shutil.which
    run: Runner = run_process

    @classmethod
    def from_config(cls, config: Config, logger: StructuredLogger) -> Orchestrator:
        cache = Cache.from_config(config)
        return cls(
            config=config,
            logger=logger,
            resolver=ToolchainResolver(cache=cache, config=config, logger=logger),
            driver=BuildDriver(logger=logger),
            postprocessor=ArtifactPostProcessor(
                logger=logger,
                optimizer=WasmOptimizer(cache=cache, config=config, logger=logger),
            ),
        )

    def execute(self, invocation: Invocation) -> BuildResult | None:
        env = dict(os.environ if self.env is None else self.env)
        verbose = self.config.verbose or invocation.verbose

        runner: DeferredRunner | None = None
        if invocation.runs_binaries:
            runtime = resolve_runtime(env, invocation.width, which=self.which)
            runner = DeferredRunner(runtime=runtime, logger=self.logger, verbose=verbose, run=self.run)
            env[invocation.width.runner_env] = runner_command()

        handle = self.resolver.resolve(invocation.width)
        child_env = build_environment(env, handle, invocation.width)
        if SDK_DIR_ENV in child_env:
            self.logger.verbose(
                lambda: self.logger.status(SDK_DIR_ENV, child_env[SDK_DIR_ENV])
            )

        if invocation.subcommand == "tree":
            argv = ["cargo", f"+{handle.name}", "tree", "--target", invocation.width.triple]
            argv.extend(invocation.args)
            self.logger.verbose(lambda: self.logger.status("Running", f"`{describe(argv)}`"))
            try:
                self.run(argv, env=child_env)
            except ProcessError as exc:
                hide_normal_process_exit(exc, verbose=verbose)
                raise
            return None

        argv = cargo_argv(invocation.subcommand, invocation.width, invocation.args)
        try:
            result = self.driver.build(argv, env=child_env, executor=runner)
        except ProcessError as exc:
            # cargo already rendered its diagnostics on stderr.
            hide_normal_process_exit(exc, verbose=verbose)
            raise

        if result.wasms:
            self.logger.info("Post-processing WebAssembly files")
        for wasm in result.wasms:
            self.postprocessor.process(wasm, result.manifest_config)

        if runner is not None:
            runner.run_all()
        return result
