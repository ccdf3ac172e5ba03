"""Provider profiles for the supported agent CLIs."""
from .base import BENIGN_STDERR_MARKERS, ModelInfo, ProviderProfile
from .registry import ProviderRegistry, build_provider_registry
from .bmad_provider import BmadProvider
from .claude_provider import ClaudeProvider
from .codex_provider import CodexProvider
from .gemini_provider import GeminiProvider
from .ollama_provider import OllamaProvider

__all__ = [
    "BENIGN_STDERR_MARKERS",
    "ModelInfo",
    "ProviderProfile",
    "ProviderRegistry",
    "build_provider_registry",
    "BmadProvider",
    "ClaudeProvider",
    "CodexProvider",
    "GeminiProvider",
    "OllamaProvider",
]
