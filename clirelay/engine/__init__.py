"""clirelay engine — drive agent CLIs one process per conversation turn."""
from .models import (
    Attachment,
    BufferedIncrement,
    EventKind,
    NormalizedEvent,
    ProtocolKind,
    ToolSettings,
    TurnResult,
    TurnSettings,
)
from .config import RelayConfig, build_spawn_env
from .errors import (
    AttachmentError,
    OrchestratorError,
    ProcessExitError,
    ProtocolParseError,
    RelayError,
    SessionBusyError,
    SpawnError,
    TurnAbortedError,
    TurnTimeoutError,
    UnknownProviderError,
)

__all__ = [
    # Core orchestrator (lazy import to avoid circular deps)
    "Orchestrator",
    # Models
    "Attachment",
    "BufferedIncrement",
    "EventKind",
    "NormalizedEvent",
    "ProtocolKind",
    "ToolSettings",
    "TurnResult",
    "TurnSettings",
    # Config
    "RelayConfig",
    "build_spawn_env",
    "load_yaml_config",
    # Pipeline pieces (lazy import)
    "ProcessRegistry",
    "ResponseBuffer",
    "ArtifactStager",
    "ProviderRegistry",
    "build_provider_registry",
    # Errors
    "AttachmentError",
    "OrchestratorError",
    "ProcessExitError",
    "ProtocolParseError",
    "RelayError",
    "SessionBusyError",
    "SpawnError",
    "TurnAbortedError",
    "TurnTimeoutError",
    "UnknownProviderError",
]


def __getattr__(name: str):
    if name == "Orchestrator":
        from .orchestrator import Orchestrator
        return Orchestrator
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "ProcessRegistry":
        from .process_registry import ProcessRegistry
        return ProcessRegistry
    if name == "ResponseBuffer":
        from .response_buffer import ResponseBuffer
        return ResponseBuffer
    if name == "ArtifactStager":
        from .artifacts import ArtifactStager
        return ArtifactStager
    if name == "ProviderRegistry":
        from .providers.registry import ProviderRegistry
        return ProviderRegistry
    if name == "build_provider_registry":
        from .providers.registry import build_provider_registry
        return build_provider_registry
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
