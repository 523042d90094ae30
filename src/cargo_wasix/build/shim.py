"""Stand-in runner that cargo invokes instead of executing a wasm binary.

It prints one ``run-with-args`` record on stdout and exits successfully, so the
real run can happen after post-processing.
"""

from __future__ import annotations

import json
import shutil
import sys
from collections.abc import Sequence

from cargo_wasix.build.events import RUN_WITH_ARGS
from cargo_wasix.errors import ConfigurationError

RUNNER_SCRIPT = "cargo-wasix-runner"


def record(args: Sequence[str]) -> str:
    return json.dumps({"reason": RUN_WITH_ARGS, "args": list(args)})


def runner_command() -> str:
    """Command cargo should use as the target runner.

    cargo splits the runner value on whitespace, so the program path itself
    must not contain any.
    """
    script = shutil.which(RUNNER_SCRIPT)
    program = script if script is not None else sys.executable
    if any(char.isspace() for char in program):
        raise ConfigurationError(
            f"cannot register `{program}` as the cargo runner: its path contains whitespace",
            hint=f"Install cargo-wasix so that `{RUNNER_SCRIPT}` is on $PATH at a path without spaces.",
            context={"program": program},
        )
    if script is not None:
        return script
    return f"{sys.executable} -m cargo_wasix.build.shim"


def main(argv: Sequence[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    print(record(args), flush=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
