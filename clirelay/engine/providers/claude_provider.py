"""Claude Code CLI profile (print mode, plain text)."""
from __future__ import annotations

from ..models import ProtocolKind, ToolSettings
from ..normalizer import FilteredTextNormalizer, OutputNormalizer
from .base import ModelInfo, ProviderProfile


class ClaudeProvider(ProviderProfile):
    """Profile for the ``claude`` CLI.

    Output is trimmed plain text. No model flag is passed unless a model
    is chosen, so the CLI's own default applies.
    """

    label = "Claude"
    protocol = ProtocolKind.PLAIN_FILTERED
    default_command = "claude"
    default_model = None
    models = (
        ModelInfo("sonnet", "Claude Sonnet", "Balanced default for coding tasks"),
        ModelInfo("opus", "Claude Opus", "Most capable model for complex work"),
        ModelInfo("haiku", "Claude Haiku", "Fast, lightweight model"),
    )
    timeout_seconds = 30.0
    temp_dir_name = "claude_tmp_images"

    @property
    def name(self) -> str:
        return "claude"

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
        args = ["-p"]
        resolved_model = self.resolve_model(model)
        if resolved_model:
            args.extend(["--model", resolved_model])
        args.extend(self.prompt_args(prompt))
        return args

    def create_normalizer(self) -> OutputNormalizer:
        return FilteredTextNormalizer()
