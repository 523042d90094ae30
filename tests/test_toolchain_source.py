import shutil
import tomllib
from pathlib import Path

import pytest

from cargo_wasix.config import BuildToolchainOptions, Config
from cargo_wasix.errors import ConfigurationError, ProcessError, ValidationError
from cargo_wasix.models import TargetWidth, ToolchainHandle
from cargo_wasix.observability import StructuredLogger
from cargo_wasix.toolchain.source import (
    SourceBuilder,
    build_toolchain,
    ensure_libc_dir_valid,
    find_stage2,
    render_rust_config,
)


def _sysroots(libc_dir: Path, *widths: TargetWidth) -> None:
    for width in widths:
        archive = libc_dir / width.libc_archive
        archive.parent.mkdir(parents=True, exist_ok=True)
        archive.write_bytes(b"!<arch>\n")


class FakeLibcBuild:
    """Stands in for make/bash: `make clean` wipes sysroots, buildNN.sh makes one."""

    def __init__(self, libc_dir: Path, fail_width: int | None = None) -> None:
        self.libc_dir = libc_dir
        self.fail_width = fail_width
        self.calls: list[tuple[list[str], Path | None]] = []

    def __call__(self, argv: list[str | Path], *, logger: object, cwd: Path | None = None, env: object = None) -> None:
        argv = [str(arg) for arg in argv]
        self.calls.append((argv, cwd))
        if argv == ["make", "clean"]:
            for width in TargetWidth:
                shutil.rmtree(self.libc_dir / f"sysroot{width.value}", ignore_errors=True)
        elif argv[0] == "bash":
            width = 32 if argv[1] == "./build32.sh" else 64
            if width == self.fail_width:
                raise ProcessError(command=" ".join(argv), returncode=2)
            _sysroots(self.libc_dir, TargetWidth(width))


def test_render_rust_config_points_targets_at_sysroots() -> None:
    rendered = render_rust_config(Path("/w/sysroot32"), Path(r"C:\w\sysroot64"))
    config = tomllib.loads(rendered)

    assert config["build"]["target"] == ["wasm32-wasmer-wasi", "wasm64-wasmer-wasi"]
    assert config["build"]["extended"] is True
    assert config["rust"]["lld"] is True
    assert config["llvm"]["download-ci-llvm"] is False
    assert config["target"]["wasm32-wasmer-wasi"]["wasi-root"] == "/w/sysroot32"
    assert config["target"]["wasm64-wasmer-wasi"]["wasi-root"] == r"C:\w\sysroot64"


def test_find_stage2_with_and_without_host(tmp_path: Path) -> None:
    (tmp_path / "build" / "bootstrap").mkdir(parents=True)
    (tmp_path / "build" / "x86_64-unknown-linux-gnu" / "stage2").mkdir(parents=True)

    assert find_stage2(tmp_path, None) == tmp_path / "build" / "x86_64-unknown-linux-gnu" / "stage2"
    assert find_stage2(tmp_path, "x86_64-unknown-linux-gnu").name == "stage2"
    with pytest.raises(ValidationError):
        find_stage2(tmp_path, "aarch64-unknown-linux-gnu")


def test_ensure_libc_dir_valid_requires_both_archives(tmp_path: Path) -> None:
    _sysroots(tmp_path, TargetWidth.W32)

    with pytest.raises(ValidationError) as excinfo:
        ensure_libc_dir_valid(tmp_path)

    assert "sysroot64" in excinfo.value.context["path"]
    _sysroots(tmp_path, TargetWidth.W64)
    ensure_libc_dir_valid(tmp_path)


def test_build_libc_requires_linux(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, logger: StructuredLogger
) -> None:
    monkeypatch.setattr("cargo_wasix.toolchain.source.sys.platform", "darwin")

    with pytest.raises(ConfigurationError):
        SourceBuilder(root=tmp_path, config=Config(), logger=logger).build_libc()


def _patch_libc_environment(monkeypatch: pytest.MonkeyPatch, fake: FakeLibcBuild) -> None:
    monkeypatch.setattr("cargo_wasix.toolchain.source.sys.platform", "linux")
    monkeypatch.setattr("cargo_wasix.toolchain.source.ensure_binary", lambda *args, **kwargs: None)
    monkeypatch.setattr("cargo_wasix.toolchain.source.fetch_and_extract", lambda *args, **kwargs: None)
    monkeypatch.setattr("cargo_wasix.toolchain.source.run_verbose", fake)


def test_build_libc_keeps_both_sysroots(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, logger: StructuredLogger
) -> None:
    builder = SourceBuilder(root=tmp_path, config=Config(), logger=logger, update_repos=False)
    builder.libc_dir.mkdir(parents=True)
    fake = FakeLibcBuild(builder.libc_dir)
    _patch_libc_environment(monkeypatch, fake)

    libc_dir = builder.build_libc()

    ensure_libc_dir_valid(libc_dir)
    commands = [argv for argv, _ in fake.calls]
    assert commands == [
        [str(builder.llvm_dir / "bin" / "clang"), "--version"],
        ["make", "clean"],
        ["bash", "./build32.sh"],
        ["make", "clean"],
        ["bash", "./build64.sh"],
    ]
    assert not (tmp_path / ".sysroot32.parked").exists()


def test_build_libc_failure_is_fatal(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, logger: StructuredLogger
) -> None:
    builder = SourceBuilder(root=tmp_path, config=Config(), logger=logger, update_repos=False)
    builder.libc_dir.mkdir(parents=True)
    _patch_libc_environment(monkeypatch, FakeLibcBuild(builder.libc_dir, fail_width=64))

    with pytest.raises(ConfigurationError) as excinfo:
        builder.build_libc()

    assert "sysroot64" in str(excinfo.value)


def test_build_rust_runs_both_stages(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, logger: StructuredLogger
) -> None:
    builder = SourceBuilder(
        root=tmp_path,
        config=Config(),
        logger=logger,
        update_repos=False,
        host_triple="x86_64-unknown-linux-gnu",
    )
    _sysroots(builder.libc_dir, TargetWidth.W32, TargetWidth.W64)
    builder.rust_dir.mkdir()
    calls: list[tuple[list[str], dict[str, str]]] = []

    def fake_run(argv: list[str], *, logger: object, cwd: Path | None = None, env: dict[str, str] | None = None) -> None:
        calls.append(([str(arg) for arg in argv], dict(env or {})))
        (builder.rust_dir / "build" / "x86_64-unknown-linux-gnu" / "stage2").mkdir(parents=True, exist_ok=True)

    monkeypatch.setattr("cargo_wasix.toolchain.source.run_verbose", fake_run)
    monkeypatch.setattr("cargo_wasix.toolchain.source.shutil.which", lambda name: "/usr/bin/python3")

    stage2 = builder.build_rust()

    assert stage2 == builder.rust_dir / "build" / "x86_64-unknown-linux-gnu" / "stage2"
    assert [argv for argv, _ in calls] == [
        ["python3", "x.py", "build", "--host", "x86_64-unknown-linux-gnu"],
        ["python3", "x.py", "build", "--stage", "2", "--host", "x86_64-unknown-linux-gnu"],
    ]
    assert all(env["GITHUB_ACTIONS"] == "false" for _, env in calls)
    config = tomllib.loads((builder.rust_dir / "config.toml").read_text(encoding="utf-8"))
    assert config["target"]["wasm32-wasmer-wasi"]["wasi-root"] == str(builder.libc_dir / "sysroot32")


class FakeRegistry:
    def __init__(self) -> None:
        self.links: list[tuple[str, Path]] = []

    def find(self, name: str) -> ToolchainHandle | None:
        return None

    def link(self, name: str, directory: Path) -> ToolchainHandle:
        self.links.append((name, directory))
        return ToolchainHandle(name=name, path=directory)

    def sysroot(self, name: str) -> Path:
        raise AssertionError("not used")


def test_build_toolchain_with_skipped_libc_requires_valid_sysroots(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, logger: StructuredLogger
) -> None:
    monkeypatch.setattr("cargo_wasix.toolchain.source.shutil.which", lambda name: None)
    options = BuildToolchainOptions(root=tmp_path, build_libc=False, build_rust=True)

    with pytest.raises(ConfigurationError) as excinfo:
        build_toolchain(options, config=Config(), logger=logger, registry=FakeRegistry())

    assert "libc build skipped" in str(excinfo.value)


def test_build_toolchain_links_compiler_as_wasix(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, logger: StructuredLogger
) -> None:
    monkeypatch.setattr("cargo_wasix.toolchain.source.shutil.which", lambda name: None)
    stage2 = tmp_path / "wasix-rust" / "build" / "host" / "stage2"
    monkeypatch.setattr(SourceBuilder, "build_rust", lambda self: stage2)
    _sysroots(tmp_path / "wasix-libc", TargetWidth.W32, TargetWidth.W64)
    registry = FakeRegistry()
    options = BuildToolchainOptions(root=tmp_path, build_libc=False, build_rust=True)

    handle = build_toolchain(options, config=Config(), logger=logger, registry=registry)

    assert handle == ToolchainHandle(name="wasix", path=stage2)
    assert registry.links == [("wasix", stage2)]
