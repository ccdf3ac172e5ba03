"""Tests for provider profiles: argument vectors, catalog, registry."""
from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from clirelay.engine.config import ProviderOverride, RelayConfig
from clirelay.engine.errors import UnknownProviderError
from clirelay.engine.models import ProtocolKind, ToolSettings
from clirelay.engine.normalizer import FilteredTextNormalizer, JsonLinesNormalizer, SpinnerTextNormalizer
from clirelay.engine.providers.bmad_provider import BmadProvider, split_command_args
from clirelay.engine.providers.claude_provider import ClaudeProvider
from clirelay.engine.providers.codex_provider import CodexProvider
from clirelay.engine.providers.gemini_provider import GeminiProvider
from clirelay.engine.providers.ollama_provider import OllamaProvider
from clirelay.engine.providers.registry import build_provider_registry


def test_codex_args_default_sandbox_and_model():
    provider = CodexProvider()

    args = provider.build_args("hi", tools=ToolSettings())

    assert args == [
        "exec", "--skip-git-repo-check", "--json",
        "--model", "gpt-5.1-codex-max",
        "--sandbox", "read-only",
        "hi",
    ]


def test_codex_args_resume_images_and_full_access():
    provider = CodexProvider()

    args = provider.build_args(
        "next",
        tools=ToolSettings(skip_permissions=True),
        model="o3",
        external_session_id="th_42",
        image_paths=["/w/codex_tmp_images/1/image_0.png", "/w/codex_tmp_images/1/image_1.jpeg"],
    )

    assert args == [
        "exec", "--skip-git-repo-check", "--json",
        "--model", "o3",
        "--full-auto", "--sandbox", "danger-full-access",
        "--image", "/w/codex_tmp_images/1/image_0.png,/w/codex_tmp_images/1/image_1.jpeg",
        "resume", "th_42",
        "next",
    ]
    assert args[-1] == "next"


def test_codex_profile_traits():
    provider = CodexProvider()

    assert provider.protocol is ProtocolKind.JSON_LINES
    assert provider.structured_errors is True
    assert provider.native_resume is True
    assert provider.timeout_seconds == 120.0
    assert isinstance(provider.create_normalizer(), JsonLinesNormalizer)


def test_gemini_allow_list_merges_critical_tools_without_duplicates(tmp_path):
    provider = GeminiProvider(config_path=tmp_path / "missing.json")

    args = provider.build_args(
        "do it",
        tools=ToolSettings(allowed_tools=["mcp_tool", "Bash", "mcp_tool"]),
    )

    assert args[:2] == ["--model", "gemini-2.5-flash"]
    tools = args[args.index("--allowed-tools") + 1:-1]
    assert tools[0] == "mcp_tool"
    assert tools.count("Bash") == 1
    assert tools.count("mcp_tool") == 1
    assert set(GeminiProvider.critical_tools) <= set(tools)
    assert args[-1] == "do it"


def test_gemini_skip_permissions_uses_yolo_and_debug(tmp_path):
    provider = GeminiProvider(config_path=tmp_path / "missing.json")

    args = provider.build_args("go", tools=ToolSettings(skip_permissions=True), model="gemini-2.5-pro", debug=True)

    assert args == ["--debug", "--model", "gemini-2.5-pro", "--yolo", "go"]


def test_gemini_mcp_config_global_and_per_project(tmp_path):
    config_path = tmp_path / ".gemini.json"
    provider = GeminiProvider(config_path=config_path)

    config_path.write_text(json.dumps({"mcpServers": {"fs": {"command": "x"}}}))
    assert provider.mcp_config_path("/anywhere") == str(config_path)

    config_path.write_text(json.dumps({"geminiProjects": {"/proj": {"mcpServers": {"db": {}}}}}))
    assert provider.mcp_config_path("/proj") == str(config_path)
    assert provider.mcp_config_path("/other") is None

    args = provider.build_args("q", tools=ToolSettings(skip_permissions=True), working_dir="/proj")
    assert args[:2] == ["--mcp-config", str(config_path)]

    config_path.write_text("{broken")
    assert provider.mcp_config_path("/proj") is None


def test_claude_args_only_pass_model_when_chosen():
    provider = ClaudeProvider()

    assert provider.build_args("hello", tools=ToolSettings()) == ["-p", "hello"]
    assert provider.build_args("hello", tools=ToolSettings(), model="opus") == ["-p", "--model", "opus", "hello"]
    assert isinstance(provider.create_normalizer(), FilteredTextNormalizer)


def test_ollama_is_batch_and_sanitizes_stderr():
    provider = OllamaProvider()

    assert provider.build_args("why?", tools=ToolSettings()) == ["run", "llama3.1", "why?"]
    assert provider.streams_live is False
    assert isinstance(provider.create_normalizer(), SpinnerTextNormalizer)
    assert provider.filter_stderr("\x1b[?25l⠋ \x1b[?25h") is None
    assert provider.filter_stderr("\x1b[31mError: model not found\x1b[0m\n") == "Error: model not found"


def test_bmad_splits_prompt_shell_style_and_takes_no_context():
    provider = BmadProvider()

    args = provider.build_args('run "build docs" --fast', tools=ToolSettings(), model="ignored")

    assert args == ["run", "build docs", "--fast"]
    assert provider.uses_local_context is False
    assert provider.supports_images is False
    assert split_command_args('say "unterminated') == ["say", '"unterminated']


def test_benign_stderr_is_suppressed():
    provider = ClaudeProvider()

    assert provider.filter_stderr("(node:1) [DEP0040] DeprecationWarning: punycode") is None
    assert provider.filter_stderr("Loaded cached credentials.") is None
    assert provider.filter_stderr("fatal: quota exceeded") == "fatal: quota exceeded"


def test_compose_prompt_appends_image_note_for_non_flag_providers():
    provider = ClaudeProvider()

    composed = provider.compose_prompt("describe", ["claude_tmp_images/1/image_0.png"])

    assert composed.startswith("describe\n\n[Attached 1 image(s)")
    assert composed.endswith("1. claude_tmp_images/1/image_0.png")
    assert CodexProvider().compose_prompt("describe", ["/abs/image_0.png"]) == "describe"


def test_resolve_command_keeps_configured_value_when_not_on_path():
    with patch("shutil.which", return_value=None):
        provider = CodexProvider(command="/opt/missing/codex")
    assert provider.command == "/opt/missing/codex"

    with patch("shutil.which", side_effect=lambda c: "/usr/bin/codex" if c == "codex" else None):
        provider = CodexProvider(command="/opt/missing/codex")
    assert provider.command == "codex"


def test_registry_applies_overrides_and_rejects_unknown():
    config = RelayConfig(providers={
        "gemini": ProviderOverride(command="/bin/gemini-wrapper", default_model="gemini-1.5-pro", timeout_seconds=45),
    })

    with patch("shutil.which", return_value=None):
        registry = build_provider_registry(config)

    assert sorted(registry.list_names()) == ["bmad", "claude", "codex", "gemini", "ollama"]
    gemini = registry.get_or_raise("gemini")
    assert gemini.command == "/bin/gemini-wrapper"
    assert gemini.default_model == "gemini-1.5-pro"
    assert gemini.timeout_seconds == 45
    assert registry.get_or_raise("codex").timeout_seconds == 120.0
    with pytest.raises(UnknownProviderError) as excinfo:
        registry.get_or_raise("webllm")
    assert "codex" in str(excinfo.value)


def test_registry_describe_lists_catalog():
    registry = build_provider_registry()

    with patch("shutil.which", return_value=None):
        catalog = {entry["provider"]: entry for entry in registry.describe()}

    assert catalog["codex"]["protocol"] == "json-lines"
    assert catalog["ollama"]["protocol"] == "plain-spinner"
    assert catalog["gemini"]["available"] is False
    assert {m["value"] for m in catalog["claude"]["models"]} == {"sonnet", "opus", "haiku"}
