"""Cargo invocation and structured build-event processing."""

from .driver import (
    BuildDriver,
    DeferredExecutor,
    DeferredRuns,
    cargo_argv,
    collect_events,
    read_manifest_config,
)
from .events import parse_line

__all__ = [
    "BuildDriver",
    "DeferredExecutor",
    "DeferredRuns",
    "cargo_argv",
    "collect_events",
    "parse_line",
    "read_manifest_config",
]
