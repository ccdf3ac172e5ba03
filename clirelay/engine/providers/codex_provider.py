"""OpenAI Codex CLI profile.

Runs ``codex exec --json`` and reads its JSONL event stream. Codex is
the one provider with native thread resume: the ``thread.started``
event's id is stored on the session and passed back as
``resume <thread_id>`` on the next turn.
"""
from __future__ import annotations

from ..models import ProtocolKind, ToolSettings
from ..normalizer import JsonLinesNormalizer, OutputNormalizer
from .base import ModelInfo, ProviderProfile


class CodexProvider(ProviderProfile):
    """Profile for the Codex CLI.

    Sandbox mapping: skip_permissions -> ``--full-auto --sandbox
    danger-full-access``; otherwise ``--sandbox read-only``.
    """

    label = "Codex"
    protocol = ProtocolKind.JSON_LINES
    default_command = "codex"
    default_model = "gpt-5.1-codex-max"
    models = (
        ModelInfo("gpt-5.1-codex-max", "GPT-5.1 Codex Max", "Largest Codex reasoning profile and tool depth"),
        ModelInfo("gpt-5.1-codex", "GPT-5.1 Codex", "Balanced Codex model for coding tasks"),
        ModelInfo("gpt-5.1", "GPT-5.1", "General-purpose GPT-5.1 for mixed workloads"),
        ModelInfo("gpt-5.2", "GPT-5.2", "Latest general model with strong reasoning"),
        ModelInfo("o3", "o3", "Reasoning-focused model"),
        ModelInfo("o4-mini", "o4-mini", "Fast, lightweight reasoning model"),
    )
    timeout_seconds = 120.0
    temp_dir_name = "codex_tmp_images"
    images_as_flags = True
    native_resume = True

    @property
    def name(self) -> str:
        return "codex"

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
        args = ["exec", "--skip-git-repo-check", "--json"]
        resolved_model = self.resolve_model(model)
        if resolved_model:
            args.extend(["--model", resolved_model])
        if tools.skip_permissions:
            args.extend(["--full-auto", "--sandbox", "danger-full-access"])
        else:
            args.extend(["--sandbox", "read-only"])
        if image_paths:
            args.extend(["--image", ",".join(image_paths)])
        if external_session_id:
            args.extend(["resume", external_session_id])
        args.extend(self.prompt_args(prompt))
        return args

    def create_normalizer(self) -> OutputNormalizer:
        return JsonLinesNormalizer()
