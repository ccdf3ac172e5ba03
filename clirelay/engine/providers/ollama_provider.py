"""Ollama profile.

``ollama run`` decorates its output with ANSI sequences and a braille
spinner and is not useful to stream, so the response is collected and
delivered once when the process exits.
"""
from __future__ import annotations

from ..models import ProtocolKind, ToolSettings
from ..normalizer import OutputNormalizer, SpinnerTextNormalizer, sanitize_cli_output, strip_spinner
from .base import ModelInfo, ProviderProfile


class OllamaProvider(ProviderProfile):
    label = "Ollama"
    protocol = ProtocolKind.PLAIN_SPINNER
    default_command = "ollama"
    default_model = "llama3.1"
    models = (
        ModelInfo("llama3.1", "Llama 3.1 8B", "General-purpose local model"),
        ModelInfo("qwen2.5-coder", "Qwen 2.5 Coder", "Local coding model"),
        ModelInfo("mistral", "Mistral 7B", "Balanced performance and quality"),
        ModelInfo("llava", "LLaVA", "Vision-capable local model"),
    )
    timeout_seconds = 120.0
    temp_dir_name = "ollama_tmp_images"
    streams_live = False

    @property
    def name(self) -> str:
        return "ollama"

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
        args = ["run", self.resolve_model(model) or "llama3.1"]
        args.extend(self.prompt_args(prompt))
        return args

    def create_normalizer(self) -> OutputNormalizer:
        return SpinnerTextNormalizer()

    def filter_stderr(self, text: str) -> str | None:
        if super().filter_stderr(text) is None:
            return None
        cleaned = strip_spinner(sanitize_cli_output(text)).strip()
        return cleaned or None
