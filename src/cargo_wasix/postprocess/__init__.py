"""WebAssembly artifact post-processing."""

from .demangle import demangle
from .optimizer import WasmOptimizer, optimizer_args, should_optimize, wasm_opt_spec
from .processor import ArtifactPostProcessor, SectionPolicy, rewrite_module, staging_paths

__all__ = [
    "ArtifactPostProcessor",
    "SectionPolicy",
    "WasmOptimizer",
    "demangle",
    "optimizer_args",
    "rewrite_module",
    "should_optimize",
    "staging_paths",
    "wasm_opt_spec",
]
