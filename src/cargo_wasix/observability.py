"""Structured logging and cargo-style status output."""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TextIO

_GREEN = "\x1b[1;32m"
_CYAN = "\x1b[1;36m"
_RED = "\x1b[1;31m"
_RESET = "\x1b[0m"


@dataclass(slots=True)
class StructuredLogger:
    verbose_enabled: bool = False
    stream: TextIO | None = None
    records: list[dict[str, Any]] = field(default_factory=list)

    def log(
        self,
        *,
        operation: str,
        phase: str | None,
        target: str | None,
        message: str,
        level: str = "info",
        extra: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "level": level,
            "operation": operation,
            "phase": phase,
            "target": target,
            "message": message,
        }
        if extra is not None:
            record["extra"] = extra
        self.records.append(record)

    def status(self, label: str, message: str, *, operation: str = "status") -> None:
        """Print a right-aligned cargo-style status line and record it."""
        self.log(operation=operation, phase=label.lower(), target=None, message=message)
        self._emit(f"{self._paint(f'{label:>12}', _GREEN)} {message}")

    def info(self, message: str, *, operation: str = "status") -> None:
        self.log(operation=operation, phase="info", target=None, message=message)
        self._emit(f"{self._paint('info', _CYAN)}: {message}")

    def error(self, message: str) -> None:
        self.log(operation="error", phase=None, target=None, message=message, level="error")
        self._emit(f"{self._paint('error', _RED)}: {message}")

    def verbose(self, emit: Callable[[], None]) -> None:
        if self.verbose_enabled:
            emit()

    def records_for(self, operation: str) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("operation") == operation]

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        lines = [json.dumps(record, sort_keys=True) for record in self.records]
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path

    def _emit(self, line: str) -> None:
        stream = self.stream if self.stream is not None else sys.stderr
        print(line, file=stream, flush=True)

    def _paint(self, text: str, color: str) -> str:
        stream = self.stream if self.stream is not None else sys.stderr
        if stream.isatty():
            return f"{color}{text}{_RESET}"
        return text
