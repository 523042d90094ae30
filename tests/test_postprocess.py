import dataclasses
import os
from collections.abc import Callable, Mapping
from pathlib import Path

import pytest

from cargo_wasix.cache import Cache
from cargo_wasix.config import Config
from cargo_wasix.errors import ConfigurationError, ParseError, ProcessError, ValidationError
from cargo_wasix.models import ManifestConfig, Profile, WasmArtifact
from cargo_wasix.observability import StructuredLogger
from cargo_wasix.postprocess import (
    ArtifactPostProcessor,
    SectionPolicy,
    WasmOptimizer,
    optimizer_args,
    rewrite_module,
    should_optimize,
    staging_paths,
    wasm_opt_spec,
)
from cargo_wasix.postprocess.wasm import MAGIC, VERSION_1, Module, Section, function_names, write_name, write_uleb

MakeTarball = Callable[[str, Mapping[str, bytes]], Path]

RELEASE = Profile(opt_level="3")
DEBUG = Profile(opt_level="0", debuginfo=2)


def _module(*customs: tuple[str, bytes]) -> bytes:
    sections = [Section(id=1, payload=b"\x01\x60\x00\x00")]
    sections += [Section.custom(name, body) for name, body in customs]
    return MAGIC + VERSION_1 + b"".join(section.encode() for section in sections)


def _names(**names: str) -> bytes:
    content = write_uleb(len(names)) + b"".join(
        write_uleb(int(index.removeprefix("f"))) + write_name(name) for index, name in names.items()
    )
    return b"\x01" + write_uleb(len(content)) + content


WASM = _module(
    (".debug_info", b"\x01"),
    ("name", _names(f0="_ZN3app4main17h0123456789abcdefE")),
    ("producers", b"\x00"),
    ("target_features", b"\x00"),
)


class FakeOptimizer:
    def __init__(self) -> None:
        self.calls: list[tuple[Path, Path, Profile, bool]] = []

    def optimize(self, source: Path, output: Path, profile: Profile, *, keep_names: bool) -> None:
        self.calls.append((source, output, profile, keep_names))
        output.write_bytes(source.read_bytes() + b"\x00\x01\x00")


def _artifact(tmp_path: Path, profile: Profile = RELEASE, *, fresh: bool = False, data: bytes = WASM) -> WasmArtifact:
    path = tmp_path / "target" / "foo.wasm"
    path.parent.mkdir(parents=True, exist_ok=True)
    # cargo replaces the file rather than writing through an existing link.
    path.unlink(missing_ok=True)
    path.write_bytes(data)
    return WasmArtifact(path=path, profile=profile, fresh=fresh)


def test_section_policy_follows_profile_and_manifest() -> None:
    assert SectionPolicy.for_artifact(DEBUG, ManifestConfig(keep_name_section=False)) == SectionPolicy(
        keep_debug=True, keep_names=True, keep_producers=True
    )
    assert SectionPolicy.for_artifact(RELEASE, ManifestConfig()) == SectionPolicy(
        keep_debug=False, keep_names=True, keep_producers=True
    )
    policy = SectionPolicy.for_artifact(
        RELEASE, ManifestConfig(keep_name_section=False, keep_producers_section=False)
    )
    assert not policy.keeps("name")
    assert not policy.keeps("producers")
    assert not policy.keeps(".debug_line")
    assert policy.keeps("target_features")


def test_rewrite_drops_debug_sections_and_demangles_names() -> None:
    rewritten = Module.parse(rewrite_module(WASM, SectionPolicy.for_artifact(RELEASE, ManifestConfig())))

    assert rewritten.custom_names() == ["name", "producers", "target_features"]
    name_section = next(s for s in rewritten.custom_sections() if s.custom_name == "name")
    assert function_names(name_section.custom_body()) == {0: "app::main::h0123456789abcdef"}


def test_debug_output_keeps_debug_and_name_sections(tmp_path: Path, logger: StructuredLogger) -> None:
    artifact = _artifact(tmp_path, DEBUG)

    ArtifactPostProcessor(logger=logger, optimizer=FakeOptimizer()).process(
        artifact, ManifestConfig(keep_name_section=False, keep_producers_section=False)
    )

    module = Module.parse(artifact.path.read_bytes())
    assert module.custom_names() == [".debug_info", "name", "producers", "target_features"]
    name_section = next(s for s in module.custom_sections() if s.custom_name == "name")
    assert function_names(name_section.custom_body()) == {0: "app::main::h0123456789abcdef"}


def test_staging_paths() -> None:
    assert staging_paths(Path("/t/foo.wasm")) == (Path("/t/foo.rustc.wasm"), Path("/t/foo.wasix.wasm"))


def test_process_stages_and_links_final_module(tmp_path: Path, logger: StructuredLogger) -> None:
    artifact = _artifact(tmp_path)
    optimizer = FakeOptimizer()
    raw, final = staging_paths(artifact.path)

    result = ArtifactPostProcessor(logger=logger, optimizer=optimizer).process(artifact, ManifestConfig())

    assert result == artifact.path
    assert raw.read_bytes() == WASM
    assert artifact.path.read_bytes() == final.read_bytes()
    assert os.path.samefile(artifact.path, final)
    pending = final.with_name("foo.wasix.wasm.tmp")
    assert optimizer.calls == [(pending, pending, RELEASE, True)]
    assert not pending.exists()


def test_process_skips_optimizer_for_debug_and_opted_out_builds(
    tmp_path: Path, logger: StructuredLogger
) -> None:
    optimizer = FakeOptimizer()
    processor = ArtifactPostProcessor(logger=logger, optimizer=optimizer)

    processor.process(_artifact(tmp_path, DEBUG), ManifestConfig())
    processor.process(_artifact(tmp_path), ManifestConfig(run_optimizer=False))

    assert optimizer.calls == []


def test_fresh_artifact_reuses_previous_result(tmp_path: Path, logger: StructuredLogger) -> None:
    processor = ArtifactPostProcessor(logger=logger, optimizer=FakeOptimizer())
    first = _artifact(tmp_path)
    processor.process(first, ManifestConfig())
    previous = first.path.read_bytes()

    def no_rewrite(data: bytes, policy: SectionPolicy) -> bytes:
        raise AssertionError("fresh artifacts must not be rewritten")

    optimizer = FakeOptimizer()
    reuse = ArtifactPostProcessor(logger=logger, optimizer=optimizer, rewrite=no_rewrite)
    reuse.process(_artifact(tmp_path, fresh=True), ManifestConfig())

    assert first.path.read_bytes() == previous
    assert optimizer.calls == []
    assert [r["phase"] for r in logger.records_for("postprocess")] == ["reuse"]


def test_fresh_artifact_without_previous_result_is_processed(
    tmp_path: Path, logger: StructuredLogger
) -> None:
    artifact = _artifact(tmp_path, fresh=True)

    ArtifactPostProcessor(logger=logger).process(artifact, ManifestConfig())

    assert Module.parse(artifact.path.read_bytes()).custom_names() == ["name", "producers", "target_features"]


def test_invalid_module_error_names_the_artifact(tmp_path: Path, logger: StructuredLogger) -> None:
    artifact = _artifact(tmp_path, data=b"not wasm")

    with pytest.raises(ParseError) as excinfo:
        ArtifactPostProcessor(logger=logger).process(artifact, ManifestConfig())

    assert excinfo.value.context["artifact"] == str(artifact.path)


def test_missing_artifact_is_a_validation_error(tmp_path: Path, logger: StructuredLogger) -> None:
    artifact = WasmArtifact(path=tmp_path / "gone.wasm", profile=RELEASE, fresh=False)

    with pytest.raises(ValidationError) as excinfo:
        ArtifactPostProcessor(logger=logger).process(artifact, ManifestConfig())

    assert excinfo.value.context["artifact"] == str(tmp_path / "gone.wasm")


@pytest.mark.parametrize(
    ("profile", "manifest", "expected"),
    [
        (RELEASE, ManifestConfig(), True),
        (RELEASE, ManifestConfig(run_optimizer=True), True),
        (RELEASE, ManifestConfig(run_optimizer=False), False),
        (Profile(opt_level="0"), ManifestConfig(), False),
        (Profile(opt_level="s", debuginfo="line-tables-only"), ManifestConfig(), False),
        (Profile(opt_level="z", debuginfo=0), ManifestConfig(), True),
    ],
)
def test_should_optimize(profile: Profile, manifest: ManifestConfig, expected: bool) -> None:
    assert should_optimize(profile, manifest) is expected


def test_optimizer_args() -> None:
    args = optimizer_args(Profile(opt_level="s"), keep_names=False, source=Path("in.wasm"), output=Path("out.wasm"))

    assert args[0] == "-Os"
    assert {"--asyncify", "--enable-threads", "--enable-bulk-memory", "--strip-producers", "--strip-debug"} <= set(args)
    assert args[-3:] == ["in.wasm", "-o", "out.wasm"]
    assert "--debuginfo" in optimizer_args(RELEASE, keep_names=True, source=Path("a"), output=Path("b"))


def test_wasm_opt_spec_per_host() -> None:
    linux = wasm_opt_spec("Linux", "x86_64")
    windows = wasm_opt_spec("Windows", "AMD64")

    assert linux.url == (
        "https://github.com/WebAssembly/binaryen/releases/download/"
        "version_116/binaryen-version_116-x86_64-linux.tar.gz"
    )
    assert linux.binary_sub_path == "bin/wasm-opt"
    assert windows.binary_sub_path == "bin/wasm-opt.exe"
    assert wasm_opt_spec("Plan9", "mips").url is None


class FakeRunner:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls: list[list[str]] = []

    def __call__(self, argv: list[str | Path], **kwargs: object) -> None:
        self.calls.append([str(arg) for arg in argv])
        if len(self.calls) <= self.failures:
            raise FileNotFoundError(2, "No such file or directory", str(argv[0]))


def test_optimizer_override_is_never_replaced(
    tmp_path: Path, cache: Cache, config: Config, logger: StructuredLogger, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("WASM_OPT", str(tmp_path / "missing-wasm-opt"))
    runner = FakeRunner(failures=1)
    optimizer = WasmOptimizer(cache=cache, config=config, logger=logger, run=runner)

    with pytest.raises(ConfigurationError) as excinfo:
        optimizer.optimize(tmp_path / "a.wasm", tmp_path / "a.wasm", RELEASE, keep_names=True)

    assert excinfo.value.context["origin"] == "override"
    assert len(runner.calls) == 1


def test_optimizer_is_acquired_once_when_missing(
    tmp_path: Path,
    cache: Cache,
    config: Config,
    logger: StructuredLogger,
    make_tarball: MakeTarball,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("WASM_OPT", raising=False)
    monkeypatch.setattr("cargo_wasix.tools.shutil.which", lambda name: None)
    archive = make_tarball(
        "binaryen.tar.gz",
        {
            "binaryen-version_116/bin/wasm-opt": b"#!/bin/sh\n",
            "binaryen-version_116/lib/libbinaryen.so": b"",
            "binaryen-version_116/include/binaryen-c.h": b"",
        },
    )
    spec = dataclasses.replace(wasm_opt_spec("Linux", "x86_64"), url=archive.as_uri())
    runner = FakeRunner(failures=1)
    optimizer = WasmOptimizer(cache=cache, config=config, logger=logger, spec=spec, run=runner)

    tool = optimizer.optimize(tmp_path / "a.wasm", tmp_path / "a.wasm", RELEASE, keep_names=False)

    installed = cache.tool_dir("wasm-opt")
    assert tool.binary == installed / "bin" / "wasm-opt"
    assert (installed / "lib" / "libbinaryen.so").is_file()
    assert not (installed / "include").exists()
    assert [call[0] for call in runner.calls] == [str(tool.binary), str(tool.binary)]
    assert os.access(tool.binary, os.X_OK)


class FailingOptimizer:
    def __init__(self) -> None:
        self.calls = 0

    def optimize(self, source: Path, output: Path, profile: Profile, *, keep_names: bool) -> None:
        self.calls += 1
        output.write_bytes(b"half written")
        raise ProcessError(command="wasm-opt", returncode=1)


def test_failed_optimization_leaves_nothing_to_reuse(tmp_path: Path, logger: StructuredLogger) -> None:
    failing = FailingOptimizer()
    _, final = staging_paths(tmp_path / "target" / "foo.wasm")

    with pytest.raises(ProcessError) as excinfo:
        ArtifactPostProcessor(logger=logger, optimizer=failing).process(_artifact(tmp_path), ManifestConfig())

    assert excinfo.value.context["artifact"] == str(tmp_path / "target" / "foo.wasm")
    assert not final.exists()
    assert list((tmp_path / "target").glob("*.tmp")) == []

    optimizer = FakeOptimizer()
    artifact = _artifact(tmp_path, fresh=True)
    ArtifactPostProcessor(logger=logger, optimizer=optimizer).process(artifact, ManifestConfig())

    assert len(optimizer.calls) == 1
    assert artifact.path.read_bytes().endswith(b"\x00\x01\x00")


def test_failed_rewrite_discards_previous_final_module(tmp_path: Path, logger: StructuredLogger) -> None:
    processor = ArtifactPostProcessor(logger=logger)
    processor.process(_artifact(tmp_path), ManifestConfig())
    _, final = staging_paths(tmp_path / "target" / "foo.wasm")
    assert final.exists()

    with pytest.raises(ParseError):
        processor.process(_artifact(tmp_path, data=b"not wasm"), ManifestConfig())

    assert not final.exists()
    rebuilt = _artifact(tmp_path, fresh=True)
    processor.process(rebuilt, ManifestConfig())
    assert [r["phase"] for r in logger.records_for("postprocess")] == []
    assert Module.parse(rebuilt.path.read_bytes()).custom_names() == ["name", "producers", "target_features"]
