"""Build Rust projects for WASIX: toolchain provisioning, cargo, wasm post-processing."""

__version__ = "0.1.25"

from .cache import Cache  # noqa: E402
from .config import BuildToolchainOptions, Config  # noqa: E402
from .errors import (  # noqa: E402
    CargoWasixError,
    ConfigurationError,
    ErrorCode,
    NetworkError,
    ParseError,
    ProcessError,
    ValidationError,
)
from .models import (  # noqa: E402
    ArtifactProduced,
    BuildEvent,
    BuildResult,
    DeferredRun,
    Finished,
    ManifestConfig,
    Profile,
    ScriptExecuted,
    TargetWidth,
    ToolchainHandle,
    WasmArtifact,
)
from .observability import StructuredLogger  # noqa: E402

__all__ = [
    "ArtifactProduced",
    "BuildEvent",
    "BuildResult",
    "BuildToolchainOptions",
    "Cache",
    "CargoWasixError",
    "Config",
    "ConfigurationError",
    "DeferredRun",
    "ErrorCode",
    "Finished",
    "ManifestConfig",
    "NetworkError",
    "ParseError",
    "ProcessError",
    "Profile",
    "ScriptExecuted",
    "StructuredLogger",
    "TargetWidth",
    "ToolchainHandle",
    "ValidationError",
    "WasmArtifact",
    "__version__",
]
