"""``cargo wasix`` command-line entry point."""

from __future__ import annotations

import argparse
import os
import shutil
import sys
from collections.abc import Sequence

from cargo_wasix import __version__
from cargo_wasix.cache import Cache
from cargo_wasix.config import LOG_FILE_ENV, BuildToolchainOptions, Config
from cargo_wasix.errors import CargoWasixError, ConfigurationError
from cargo_wasix.observability import StructuredLogger
from cargo_wasix.orchestrator import Invocation, Orchestrator, is_verbose_flag, parse_action
from cargo_wasix.process import normal_process_exit_code
from cargo_wasix.toolchain.registry import RustupRegistry
from cargo_wasix.toolchain.source import build_toolchain

SUBCOMMAND = "wasix"

HELP_EPILOG = """\
Actions:
    build, build64        Compile the current package to wasm32/wasm64
    run, run64            Compile and run a binary with the wasm runtime
    test, test64          Compile and run tests
    bench, bench64        Compile and run benchmarks
    check, check64        Check the package for errors
    fix, fix64            Apply compiler suggestions
    tree, tree64          Display the dependency tree for the target
    build-toolchain       Build the wasix toolchain from source
    self clean            Remove every cached tool and toolchain
    version               Print version information

Any other arguments are passed to cargo unchanged.
"""


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cargo wasix",
        description="Compile Rust projects for WASIX and post-process the wasm output.",
        epilog=HELP_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
    )
    parser.add_argument("-h", "--help", action="store_true", help="Print this help")
    parser.add_argument("-V", "--version", action="store_true", help="Print version information")
    parser.add_argument("action", nargs="?")
    parser.add_argument("args", nargs=argparse.REMAINDER)
    return parser


def self_command(args: Sequence[str], *, config: Config, logger: StructuredLogger) -> None:
    if list(args) != ["clean"]:
        raise ConfigurationError(
            f"unknown `self` command: {' '.join(args) or '<none>'}",
            hint="The only supported command is `cargo wasix self clean`.",
        )
    root = Cache.from_config(config).all_versions_root
    if root.exists():
        shutil.rmtree(root)
    logger.status("Removed", str(root))


def run(argv: Sequence[str], *, logger: StructuredLogger | None = None) -> int:
    argv = list(argv)
    # cargo runs `cargo-wasix wasix <action> ...` for `cargo wasix <action> ...`.
    if argv[:1] == [SUBCOMMAND]:
        argv = argv[1:]
    parser = _parser()
    args = parser.parse_args(argv)
    verbose = any(is_verbose_flag(arg) for arg in args.args)
    config = Config.from_env(verbose=verbose)
    if logger is None:
        logger = StructuredLogger(verbose_enabled=verbose)

    try:
        if args.version or args.action == "version":
            print(f"cargo-wasix {__version__}")
            return 0
        if args.help or args.action is None or args.action == "help":
            parser.print_help()
            return 0
        if args.action == "self":
            self_command(args.args, config=config, logger=logger)
            return 0
        if args.action == "build-toolchain":
            build_toolchain(
                BuildToolchainOptions.from_env(),
                config=config,
                logger=logger,
                registry=RustupRegistry(logger=logger),
            )
            return 0

        parsed = parse_action(args.action)
        if parsed is None:
            parser.print_help()
            return 0
        subcommand, width = parsed
        orchestrator = Orchestrator.from_config(config, logger)
        orchestrator.execute(Invocation(subcommand=subcommand, width=width, args=tuple(args.args)))
        return 0
    except CargoWasixError as exc:
        code = normal_process_exit_code(exc)
        if code is not None:
            return code
        logger.error(str(exc))
        return 1
    finally:
        log_file = os.environ.get(LOG_FILE_ENV)
        if log_file:
            logger.to_json_lines(log_file)


def main() -> int:
    return run(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(main())
