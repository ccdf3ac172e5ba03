"""Gemini CLI profile.

Plain-text output with debug/telemetry lines filtered out. MCP servers
configured in ``~/.gemini.json`` (globally or for the working directory)
are enabled through ``--mcp-config``.
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from ..models import ProtocolKind, ToolSettings
from ..normalizer import GEMINI_NOISE_MARKERS, FilteredTextNormalizer, OutputNormalizer
from .base import ModelInfo, ProviderProfile

logger = logging.getLogger(__name__)


def _has_servers(section: object) -> bool:
    return isinstance(section, dict) and bool(section.get("mcpServers"))


class GeminiProvider(ProviderProfile):
    """Profile for the Gemini CLI."""

    label = "Gemini"
    protocol = ProtocolKind.PLAIN_FILTERED
    default_command = "gemini"
    default_model = "gemini-2.5-flash"
    models = (
        ModelInfo("gemini-3-pro-preview", "Gemini 3.0 Pro", "Next generation reasoning and capabilities"),
        ModelInfo("gemini-3.0-flash", "Gemini 3.0 Flash", "Ultra-fast next gen model"),
        ModelInfo("gemini-2.5-flash", "Gemini 2.5 Flash", "Fast and efficient latest model (Recommended)"),
        ModelInfo("gemini-2.5-pro", "Gemini 2.5 Pro", "Most advanced model (Note: May have quota limits)"),
        ModelInfo("gemini-2.0-flash-thinking-exp-01-21", "Gemini 2.0 Flash Thinking", "Thinking model with extended reasoning capabilities"),
        ModelInfo("gemini-2.0-pro-exp-02-05", "Gemini 2.0 Pro", "Advanced experimental model"),
        ModelInfo("gemini-1.5-pro", "Gemini 1.5 Pro", "Balanced performance and capabilities"),
        ModelInfo("gemini-1.5-flash", "Gemini 1.5 Flash", "Fast and cost-effective"),
    )
    timeout_seconds = 30.0
    temp_dir_name = "gemini_tmp_images"
    critical_tools = (
        "run_shell_command",
        "Bash",
        "Bash(git log:*)",
        "Bash(git diff:*)",
        "Bash(git status:*)",
        "write_file",
        "read_file",
        "search_file_content",
        "save_memory",
        "replace",
        "Write",
        "Read",
        "Edit",
        "Glob",
        "Grep",
    )

    def __init__(
        self,
        command: str | None = None,
        default_model: str | None = None,
        timeout_seconds: float | None = None,
        config_path: str | Path | None = None,
    ) -> None:
        super().__init__(command, default_model, timeout_seconds)
        self._config_path = Path(config_path) if config_path else None

    @property
    def name(self) -> str:
        return "gemini"

    @property
    def config_path(self) -> Path:
        return self._config_path or Path.home() / ".gemini.json"

    def mcp_config_path(self, working_dir: str | None = None) -> str | None:
        """Return the Gemini config path when it declares any MCP servers."""
        path = self.config_path
        if not path.exists():
            return None
        try:
            config = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.debug("Ignoring unreadable Gemini config %s: %s", path, exc)
            return None
        if _has_servers(config):
            return str(path)
        projects = config.get("geminiProjects") if isinstance(config, dict) else None
        if isinstance(projects, dict):
            project_key = working_dir or os.getcwd()
            if _has_servers(projects.get(project_key)):
                return str(path)
        return None

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
        args: list[str] = []
        if debug:
            args.append("--debug")

        mcp_config = self.mcp_config_path(working_dir)
        if mcp_config:
            args.extend(["--mcp-config", mcp_config])

        args.extend(["--model", self.resolve_model(model) or "gemini-2.5-flash"])

        if tools.skip_permissions:
            args.append("--yolo")
        else:
            allowed = self.resolve_allowed_tools(tools)
            if allowed:
                args.extend(["--allowed-tools", *allowed])

        args.extend(self.prompt_args(prompt))
        return args

    def create_normalizer(self) -> OutputNormalizer:
        return FilteredTextNormalizer(GEMINI_NOISE_MARKERS)
