"""Abstract base for provider profiles.

Each profile describes one agent CLI: how to resolve its binary, how to
build an argument vector for a turn, which output protocol it speaks and
which temporary directory holds its staged images. The orchestrator
never branches on provider names; everything provider-specific lives in
a subclass.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass
import logging
import shutil
from typing import Any

from ..models import ProtocolKind, ToolSettings
from ..normalizer import OutputNormalizer

logger = logging.getLogger(__name__)

# stderr lines that every CLI prints and nobody needs to see.
BENIGN_STDERR_MARKERS = (
    "[DEP0040]",
    "DeprecationWarning",
    "--trace-deprecation",
    "Loaded cached credentials",
)


@dataclass(frozen=True)
class ModelInfo:
    """One entry in a provider's model catalog."""
    value: str
    label: str
    description: str = ""


class ProviderProfile(abc.ABC):
    """Static description of an agent CLI.

    Subclasses set the class attributes below and implement
    build_args() and create_normalizer().
    """

    label: str = ""
    protocol: ProtocolKind = ProtocolKind.PLAIN_FILTERED
    default_command: str = ""
    default_model: str | None = None
    models: tuple[ModelInfo, ...] = ()
    timeout_seconds: float = 30.0
    temp_dir_name: str = "tmp_images"
    supports_images: bool = True
    # Images go on the command line rather than as a note in the prompt.
    images_as_flags: bool = False
    # Accepts an external correlation id and resumes the thread itself.
    native_resume: bool = False
    # Accepts locally rebuilt prior-turn context in the prompt.
    uses_local_context: bool = True
    # Streams response increments while running; otherwise one batch at exit.
    streams_live: bool = True
    # Always added to the allow-list when permissions are not skipped.
    critical_tools: tuple[str, ...] = ()

    def __init__(
        self,
        command: str | None = None,
        default_model: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._command = self.resolve_command(command or "", self.default_command)
        if default_model:
            self.default_model = default_model
        if timeout_seconds is not None and timeout_seconds > 0:
            self.timeout_seconds = timeout_seconds

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider tag (e.g. 'codex', 'gemini')."""

    @property
    def command(self) -> str:
        return self._command

    @property
    def structured_errors(self) -> bool:
        """Whether errors arrive as stdout events (stderr only matters on failure)."""
        return self.protocol is ProtocolKind.JSON_LINES

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a provider binary by preferring explicit command, then fallback.

        The command may point to a CLI that is not on PATH when using
        custom wrappers or tests. In that case, keep the raw value so
        callers can surface the configured command in error messages.
        """
        if command:
            if shutil.which(command):
                return command
            if fallback and shutil.which(fallback):
                logger.debug(
                    "Command %s not found; falling back to %s for provider %s",
                    command, fallback, type(self).__name__,
                )
                return fallback
            return command
        return fallback or command

    def is_available(self) -> bool:
        """Check if the CLI is installed."""
        return shutil.which(self._command) is not None

    def resolve_model(self, override: str | None) -> str | None:
        return override or self.default_model

    def resolve_allowed_tools(self, tools: ToolSettings) -> list[str]:
        """Caller tools followed by critical tools, deduplicated in order."""
        allowed: list[str] = []
        for tool in [*tools.allowed_tools, *self.critical_tools]:
            if tool not in allowed:
                allowed.append(tool)
        return allowed

    def compose_prompt(self, prompt: str, image_paths: list[str]) -> str:
        """Append a note listing staged images when they are not passed as flags."""
        if self.images_as_flags or not image_paths or not prompt:
            return prompt
        listing = "\n".join(f"{i}. {p}" for i, p in enumerate(image_paths, start=1))
        return (
            f"{prompt}\n\n[Attached {len(image_paths)} image(s), "
            f"saved at the following paths:]\n{listing}"
        )

    def prompt_args(self, prompt: str) -> list[str]:
        """How the prompt lands on the command line (last)."""
        return [prompt] if prompt else []

    @abc.abstractmethod
    def build_args(
        self,
        prompt: str,
        *,
        tools: ToolSettings,
        model: str | None = None,
        external_session_id: str | None = None,
        image_paths: list[str] | None = None,
        working_dir: str | None = None,
        debug: bool = False,
    ) -> list[str]:
        """Build the argument vector (without the executable)."""

    @abc.abstractmethod
    def create_normalizer(self) -> OutputNormalizer:
        """Return a fresh normalizer for one turn."""

    def filter_stderr(self, text: str) -> str | None:
        """Return stderr text worth surfacing, or None to suppress it."""
        if any(marker in text for marker in BENIGN_STDERR_MARKERS):
            return None
        return text

    def session_prefix(self) -> str:
        return self.name

    def describe(self) -> dict[str, Any]:
        return {
            "provider": self.name,
            "display_name": self.label,
            "command": self._command,
            "available": self.is_available(),
            "default_model": self.default_model,
            "protocol": self.protocol.value,
            "timeout_seconds": self.timeout_seconds,
            "models": [
                {"value": m.value, "label": m.label, "description": m.description}
                for m in self.models
            ],
        }
