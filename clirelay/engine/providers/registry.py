"""Provider registry — maps provider tags to ProviderProfile instances."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..errors import UnknownProviderError
from .base import ProviderProfile

if TYPE_CHECKING:
    from ..config import RelayConfig

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry of supported agent CLIs.

    Maps short tags (e.g. 'codex', 'gemini') to profile instances. The
    set is closed: every tag the relay knows about is registered once at
    startup and a request for anything else fails before a process is
    spawned.
    """

    def __init__(self) -> None:
        self._providers: dict[str, ProviderProfile] = {}

    def register(self, provider: ProviderProfile) -> None:
        """Register a profile under its own tag."""
        self._providers[provider.name] = provider
        logger.info(
            "Provider registered: %s (command=%s, available=%s)",
            provider.name,
            provider.command,
            provider.is_available(),
        )

    def get(self, name: str) -> ProviderProfile | None:
        """Get a profile by tag, or None if not registered."""
        return self._providers.get(name)

    def get_or_raise(self, name: str) -> ProviderProfile:
        """Get a profile by tag, raising UnknownProviderError if not found."""
        provider = self._providers.get(name)
        if provider is None:
            raise UnknownProviderError(name, self.list_names())
        return provider

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def list_names(self) -> list[str]:
        """Return all registered provider tags."""
        return list(self._providers.keys())

    def list_available(self) -> list[str]:
        """Return tags of providers whose CLI is installed."""
        return [
            name for name, p in self._providers.items()
            if p.is_available()
        ]

    def validate(self) -> dict[str, bool]:
        """Log which CLIs are installed and return tag -> available."""
        report = {name: p.is_available() for name, p in self._providers.items()}
        available = [n for n, ok in report.items() if ok]
        unavailable = [n for n, ok in report.items() if not ok]

        if available:
            logger.info("Available providers: %s", ", ".join(available))
        if unavailable:
            logger.warning(
                "Unavailable providers (CLI not installed): %s",
                ", ".join(unavailable),
            )
        return report

    def describe(self) -> list[dict[str, Any]]:
        """Catalog of providers, their labels and model lists."""
        return [p.describe() for p in self._providers.values()]

    @property
    def count(self) -> int:
        return len(self._providers)


def build_provider_registry(config: RelayConfig | None = None) -> ProviderRegistry:
    """Build a registry holding every supported provider.

    Per-provider command, default model and timeout overrides come from
    *config* (environment or YAML); anything unset keeps the profile's
    built-in default.
    """
    from .bmad_provider import BmadProvider
    from .claude_provider import ClaudeProvider
    from .codex_provider import CodexProvider
    from .gemini_provider import GeminiProvider
    from .ollama_provider import OllamaProvider

    registry = ProviderRegistry()
    for cls in (CodexProvider, GeminiProvider, ClaudeProvider, OllamaProvider, BmadProvider):
        override = config.override_for(cls.default_command) if config else None
        if override is None:
            registry.register(cls())
            continue
        registry.register(cls(
            command=override.command,
            default_model=override.default_model,
            timeout_seconds=override.timeout_seconds,
        ))
    return registry
