"""Decode cargo's ``--message-format json`` records into build events."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from cargo_wasix.errors import ParseError
from cargo_wasix.models import (
    ArtifactProduced,
    BuildEvent,
    DeferredRun,
    Finished,
    Profile,
    ScriptExecuted,
)

RECORD_MARKER = "{"
RUN_WITH_ARGS = "run-with-args"


def is_record(line: str) -> bool:
    return line.startswith(RECORD_MARKER)


def parse_line(line: str) -> BuildEvent:
    """Decode one structured line; anything malformed is a ParseError."""
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ParseError(
            "failed to parse cargo output line",
            context={"line": _excerpt(line), "error": str(exc)},
        ) from exc
    if not isinstance(payload, dict):
        raise ParseError("cargo record is not an object", context={"line": _excerpt(line)})

    reason = payload.get("reason")
    try:
        if reason == "compiler-artifact":
            return _artifact(payload)
        if reason == "build-script-executed":
            return ScriptExecuted()
        if reason == RUN_WITH_ARGS:
            return DeferredRun(args=_strings(payload["args"]))
        if reason == "build-finished":
            return Finished()
    except (KeyError, TypeError, ValueError) as exc:
        raise ParseError(
            f"malformed `{reason}` record",
            context={"line": _excerpt(line), "error": str(exc)},
        ) from exc
    raise ParseError(f"unknown cargo record reason: {reason!r}", context={"line": _excerpt(line)})


def _artifact(payload: dict[str, Any]) -> ArtifactProduced:
    package_id = payload["package_id"]
    fresh = payload["fresh"]
    profile = payload["profile"]
    if not isinstance(package_id, str):
        raise TypeError("package_id must be a string")
    if not isinstance(fresh, bool):
        raise TypeError("fresh must be a boolean")
    if not isinstance(profile, dict):
        raise TypeError("profile must be an object")
    return ArtifactProduced(
        filenames=tuple(Path(name) for name in _strings(payload["filenames"])),
        package_id=package_id,
        profile=Profile.from_payload(profile),
        fresh=fresh,
    )


def _strings(value: object) -> tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise TypeError(f"expected a list of strings, got {value!r}")
    return tuple(value)


def package_name_version(package_id: str) -> tuple[str, str] | None:
    """Split a cargo package id into name and version.

    Both the legacy ``name version (source)`` form and the newer
    ``source#name@version`` / ``source#version`` forms are understood.
    """
    if "#" in package_id:
        source, _, fragment = package_id.rpartition("#")
        if "@" in fragment:
            name, _, version = fragment.partition("@")
        else:
            name, version = source.rstrip("/").rsplit("/", 1)[-1], fragment
        return (name, version) if name and version else None
    parts = package_id.split(" ")
    if len(parts) >= 2:
        return parts[0], parts[1]
    return None


def wasm_bindgen_version(package_id: str) -> str | None:
    parsed = package_name_version(package_id)
    if parsed is not None and parsed[0] == "wasm-bindgen":
        return parsed[1]
    return None


def _excerpt(line: str, limit: int = 200) -> str:
    return line if len(line) <= limit else line[:limit] + "..."
