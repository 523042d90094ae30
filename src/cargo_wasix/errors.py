"""Coded error taxonomy shared by every pipeline stage."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum

OUTPUT_TAIL_LINES = 20


class ErrorCode(StrEnum):
    """Stable error identifiers used across the pipeline."""

    CONFIGURATION = "E_CONFIGURATION"
    NETWORK = "E_NETWORK"
    PROCESS = "E_PROCESS"
    PARSE = "E_PARSE"
    VALIDATION = "E_VALIDATION"


class CargoWasixError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: dict[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        cause = self.__cause__
        if isinstance(cause, CargoWasixError):
            parts.append(f"Caused by: {cause}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ConfigurationError(CargoWasixError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CONFIGURATION, hint=hint, context=context)


class NetworkError(CargoWasixError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.NETWORK, hint=hint, context=context)


class ParseError(CargoWasixError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.PARSE, hint=hint, context=context)


class ValidationError(CargoWasixError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION, hint=hint, context=context)


class ProcessError(CargoWasixError):
    """A child process exited unsuccessfully.

    ``hidden`` marks a "normal" exit whose output the child already showed to
    the user; the CLI then propagates ``returncode`` without printing.
    """

    command: str
    returncode: int
    stdout: bytes
    stderr: bytes
    hidden: bool

    def __init__(
        self,
        *,
        command: str,
        returncode: int,
        stdout: bytes = b"",
        stderr: bytes = b"",
        hint: str | None = None,
    ) -> None:
        super().__init__(
            f"failed to execute {command}",
            code=ErrorCode.PROCESS,
            hint=hint,
            context={"status": f"exit status: {returncode}"},
        )
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.hidden = False

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.stdout:
            parts.append(_output_block("stdout", self.stdout))
        if self.stderr:
            parts.append(_output_block("stderr", self.stderr))
        return "\n".join(parts)


def _output_block(label: str, data: bytes) -> str:
    """Render the tail of captured output; cargo's stdout can be thousands of records."""
    lines = data.decode("utf-8", errors="replace").rstrip("\n").split("\n")
    if len(lines) > OUTPUT_TAIL_LINES:
        omitted = len(lines) - OUTPUT_TAIL_LINES
        lines = [f"... {omitted} earlier line(s) omitted", *lines[-OUTPUT_TAIL_LINES:]]
    return f"  {label}:\n      " + "\n      ".join(lines)


__all__ = [
    "CargoWasixError",
    "ConfigurationError",
    "ErrorCode",
    "NetworkError",
    "ParseError",
    "ProcessError",
    "ValidationError",
]
