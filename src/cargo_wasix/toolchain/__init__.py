"""Toolchain provisioning: registration, pre-built installs, source builds."""

from .registry import RustupRegistry, ToolchainRegistry
from .resolver import ToolchainResolver
from .source import SourceBuilder, build_toolchain

__all__ = [
    "RustupRegistry",
    "SourceBuilder",
    "ToolchainRegistry",
    "ToolchainResolver",
    "build_toolchain",
]
