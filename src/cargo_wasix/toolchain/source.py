"""Build the WASIX toolchain (libc sysroots and rustc) from source.

This takes a long time and a lot of disk space. It is the fallback when no
pre-built toolchain can be installed, and the body of ``build-toolchain``.
"""

from __future__ import annotations

import os
import shutil
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path

from cargo_wasix.config import BuildToolchainOptions, Config
from cargo_wasix.errors import ConfigurationError, ProcessError, ValidationError
from cargo_wasix.fetch.archive import fetch_and_extract
from cargo_wasix.fetch.git import prepare_git_repo
from cargo_wasix.models import TOOLCHAIN_NAME, TargetWidth, ToolchainHandle
from cargo_wasix.observability import StructuredLogger
from cargo_wasix.process import ensure_binary, run_verbose
from cargo_wasix.toolchain.prebuilt import RUST_REPO
from cargo_wasix.toolchain.registry import ToolchainRegistry

RUST_BRANCH = "wasix"
LIBC_REPO = "https://github.com/wasix-org/wasix-libc.git"
LIBC_REF = "main"

LLVM_RELEASE = "clang+llvm-15.0.2-x86_64-unknown-linux-gnu-rhel86"
LLVM_LINUX_SOURCE = (
    "https://github.com/llvm/llvm-project/releases/download/llvmorg-15.0.2/"
    f"{LLVM_RELEASE}.tar.xz"
)

APT_PACKAGES = ("curl", "xz-utils", "build-essential", "git", "python3")

RUST_CONFIG_TEMPLATE = textwrap.dedent("""\
    changelog-seen = 2

    # Cached CI LLVM cannot build rust-lld, which the toolchain needs.
    [llvm]
    download-ci-llvm = false

    [build]
    target = ["wasm32-wasmer-wasi", "wasm64-wasmer-wasi"]
    extended = true
    tools = [ "clippy", "rustfmt" ]
    configure-args = []

    [rust]
    lld = true
    llvm-tools = true

    [target.wasm32-wasmer-wasi]
    wasi-root = "{sysroot32}"

    [target.wasm64-wasmer-wasi]
    wasi-root = "{sysroot64}"
""")


def ensure_libc_dir_valid(libc_dir: Path) -> None:
    """Check that both sysroots and their ``libc.a`` archives exist."""
    for width in TargetWidth:
        _ensure_sysroot_valid(libc_dir, width)


def _ensure_sysroot_valid(libc_dir: Path, width: TargetWidth) -> None:
    sysroot = libc_dir / f"sysroot{width.value}"
    archive = libc_dir / width.libc_archive
    if not sysroot.is_dir():
        raise ValidationError(
            "Invalid libc dir: directory does not exist.",
            context={"path": str(sysroot)},
        )
    if not archive.is_file():
        raise ValidationError(
            "Invalid libc dir: archive does not exist.",
            context={"path": str(archive)},
        )


def render_rust_config(sysroot32: Path, sysroot64: Path) -> str:
    # TOML basic strings need escaped backslashes for Windows paths.
    return RUST_CONFIG_TEMPLATE.replace(
        "{sysroot32}", str(sysroot32).replace("\\", "\\\\")
    ).replace("{sysroot64}", str(sysroot64).replace("\\", "\\\\"))


def find_stage2(rust_dir: Path, host_triple: str | None) -> Path:
    """Locate the stage-2 compiler produced by ``x.py``."""
    build_dir = rust_dir / "build"
    if host_triple is not None:
        candidate = build_dir / host_triple / "stage2"
        if candidate.is_dir():
            return candidate
    elif build_dir.is_dir():
        # TODO: read the host triple from the x.py output instead of picking the
        # first stage2 directory, which is wrong when several hosts were built.
        for entry in sorted(build_dir.iterdir()):
            candidate = entry / "stage2"
            if candidate.is_dir():
                return candidate
    raise ValidationError(
        "Could not find build directory.",
        context={"path": str(build_dir), "host": host_triple or ""},
    )


@dataclass(slots=True)
class SourceBuilder:
    root: Path
    config: Config
    logger: StructuredLogger
    update_repos: bool = True
    host_triple: str | None = None

    @property
    def libc_dir(self) -> Path:
        return self.root / "wasix-libc"

    @property
    def rust_dir(self) -> Path:
        return self.root / "wasix-rust"

    @property
    def llvm_dir(self) -> Path:
        return self.root / "llvm-15"

    def build(self) -> Path:
        """Build libc then rustc; return the stage-2 toolchain directory."""
        self.build_libc()
        return self.build_rust()

    def build_libc(self) -> Path:
        if not sys.platform.startswith("linux"):
            raise ConfigurationError(
                "libc builds are only supported on Linux.",
                context={"platform": sys.platform},
            )
        self.logger.info("Building wasix-libc...", operation="build_libc")
        ensure_binary("git")
        self.root.mkdir(parents=True, exist_ok=True)
        if self.update_repos:
            prepare_git_repo(LIBC_REPO, LIBC_REF, self.libc_dir, logger=self.logger)

        llvm_bin = self._ensure_llvm()
        env = dict(os.environ)
        env["PATH"] = os.pathsep.join([str(llvm_bin), env.get("PATH", "")])

        # `make clean` wipes every sysroot, so park the 32-bit one while the
        # 64-bit build runs.
        parked = self.root / ".sysroot32.parked"
        if parked.exists():
            shutil.rmtree(parked)
        for width in TargetWidth:
            self.logger.info(f"Building wasm{width.value}...", operation="build_libc")
            try:
                run_verbose(["make", "clean"], cwd=self.libc_dir, logger=self.logger)
                run_verbose(
                    ["bash", f"./build{width.value}.sh"],
                    cwd=self.libc_dir,
                    env=env,
                    logger=self.logger,
                )
            except (ProcessError, OSError) as exc:
                raise ConfigurationError(
                    f"Could not build sysroot{width.value}.",
                    context={"path": str(self.libc_dir)},
                ) from exc
            _ensure_sysroot_valid(self.libc_dir, width)
            if width is TargetWidth.W32:
                shutil.move(str(self.libc_dir / "sysroot32"), parked)

        sysroot32 = self.libc_dir / "sysroot32"
        if sysroot32.exists():
            shutil.rmtree(sysroot32)
        shutil.move(str(parked), sysroot32)
        ensure_libc_dir_valid(self.libc_dir)
        self.logger.info(
            f"wasix-libc build complete!\n{sysroot32}\n{self.libc_dir / 'sysroot64'}",
            operation="build_libc",
        )
        return self.libc_dir

    def build_rust(self) -> Path:
        ensure_libc_dir_valid(self.libc_dir)
        if self.update_repos:
            prepare_git_repo(RUST_REPO, RUST_BRANCH, self.rust_dir, logger=self.logger)
        if not self.rust_dir.is_dir():
            raise ConfigurationError(
                "Rust source checkout is missing.",
                hint="Unset WASIX_NO_UPDATE_REPOS so the repository can be cloned.",
                context={"path": str(self.rust_dir)},
            )

        (self.rust_dir / "config.toml").write_text(
            render_rust_config(self.libc_dir / "sysroot32", self.libc_dir / "sysroot64"),
            encoding="utf-8",
        )

        python = "python3" if shutil.which("python3") else "python"
        # x.py changes behaviour under GitHub Actions in ways that break the build.
        env = dict(os.environ)
        env["GITHUB_ACTIONS"] = "false"
        host_args = ["--host", self.host_triple] if self.host_triple else []
        try:
            run_verbose(
                [python, "x.py", "build", *host_args],
                cwd=self.rust_dir,
                env=env,
                logger=self.logger,
            )
            run_verbose(
                [python, "x.py", "build", "--stage", "2", *host_args],
                cwd=self.rust_dir,
                env=env,
                logger=self.logger,
            )
        except (ProcessError, OSError) as exc:
            raise ConfigurationError(
                "Rust toolchain build failed.", context={"path": str(self.rust_dir)}
            ) from exc

        self.logger.info("Rust build complete!", operation="build_rust")
        return find_stage2(self.rust_dir, self.host_triple)

    def _ensure_llvm(self) -> Path:
        self.logger.info("Ensuring LLVM...", operation="build_libc")
        fetch_and_extract(
            LLVM_LINUX_SOURCE,
            self.llvm_dir,
            members={LLVM_RELEASE: "."},
            expected=("bin/clang",),
            lock_path=self.root / "llvm.lock",
            config=self.config,
            logger=self.logger,
        )
        clang = self.llvm_dir / "bin" / "clang"
        try:
            run_verbose([clang, "--version"], logger=self.logger)
        except (ProcessError, OSError) as exc:
            raise ConfigurationError(
                "The downloaded clang does not run.", context={"path": str(clang)}
            ) from exc
        return self.llvm_dir / "bin"


def setup_apt(logger: StructuredLogger) -> None:
    """Install the base build packages on Debian-like systems."""
    argv = ["apt-get", "install", "-y", *APT_PACKAGES]
    if shutil.which("sudo") is not None:
        argv.insert(0, "sudo")
    run_verbose(argv, logger=logger)


def build_toolchain(
    options: BuildToolchainOptions,
    *,
    config: Config,
    logger: StructuredLogger,
    registry: ToolchainRegistry,
) -> ToolchainHandle | None:
    """Run the ``build-toolchain`` action; link the compiler if one was built."""
    logger.info("Building the wasix toolchain...", operation="build_toolchain")
    logger.info(
        "WARNING: this could take a long time and use a lot of disk space!",
        operation="build_toolchain",
    )
    if shutil.which("apt-get") is not None:
        setup_apt(logger)

    builder = SourceBuilder(
        root=options.root,
        config=config,
        logger=logger,
        update_repos=options.update_repos,
        host_triple=options.rust_host_triple,
    )
    if options.build_libc:
        builder.build_libc()
    else:
        logger.info("Skipping libc build!", operation="build_toolchain")
        try:
            ensure_libc_dir_valid(builder.libc_dir)
        except ValidationError as exc:
            raise ConfigurationError(
                "libc build skipped, but specified path invalid.",
                context={"path": str(builder.libc_dir)},
            ) from exc

    if not options.build_rust:
        return None
    stage2 = builder.build_rust()
    return registry.link(TOOLCHAIN_NAME, stage2)
