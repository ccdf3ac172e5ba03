"""Tests for environment and YAML configuration."""
from __future__ import annotations

import os

import pytest
import yaml

from clirelay.engine.config import PROVIDER_TAGS, ProviderOverride, RelayConfig, build_spawn_env
from clirelay.engine.yaml_config import load_yaml_config


def test_from_env_defaults(monkeypatch):
    for key in list(os.environ):
        if key.startswith("RELAY_"):
            monkeypatch.delenv(key)
    monkeypatch.delenv("CLI_PROVIDER", raising=False)
    for tag in PROVIDER_TAGS:
        monkeypatch.delenv(f"{tag.upper()}_PATH", raising=False)

    config = RelayConfig.from_env()

    assert config.default_provider == "gemini"
    assert (config.buffer_partial_delay, config.buffer_max_wait, config.buffer_min_size) == (0.3, 1.5, 30)
    assert config.providers == {}


def test_from_env_reads_overrides(monkeypatch):
    monkeypatch.setenv("CLI_PROVIDER", "Codex")
    monkeypatch.setenv("CODEX_PATH", "/opt/codex")
    monkeypatch.setenv("RELAY_TIMEOUT_CODEX", "200")
    monkeypatch.setenv("RELAY_MODEL_GEMINI", "gemini-2.5-pro")
    monkeypatch.setenv("RELAY_BUFFER_MIN_SIZE", "10")
    monkeypatch.setenv("RELAY_DEBUG", "true")

    config = RelayConfig.from_env()

    assert config.default_provider == "codex"
    assert config.buffer_min_size == 10
    assert config.debug is True
    assert config.override_for("codex").command == "/opt/codex"
    assert config.override_for("codex").timeout_seconds == 200.0
    assert config.override_for("gemini").default_model == "gemini-2.5-pro"
    assert config.override_for("ollama").command is None


def test_unknown_env_provider_keeps_default(monkeypatch):
    monkeypatch.setenv("CLI_PROVIDER", "cursor")

    assert RelayConfig.from_env().default_provider == "gemini"


def test_yaml_merges_over_base(tmp_path):
    path = tmp_path / "relay.yaml"
    path.write_text(yaml.safe_dump({
        "relay": {"default_provider": "ollama", "abort_grace_seconds": 5, "bogus": 1},
        "providers": {
            "codex": {"timeout_seconds": 180},
            "mystery": {"command": "x"},
        },
    }))
    base = RelayConfig(providers={"codex": ProviderOverride(command="/opt/codex")})

    config = load_yaml_config(path, base=base)

    assert config.default_provider == "ollama"
    assert config.abort_grace_seconds == 5
    assert config.override_for("codex").command == "/opt/codex"
    assert config.override_for("codex").timeout_seconds == 180.0
    assert "mystery" not in config.providers


def test_yaml_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "absent.yaml", base=RelayConfig())


def test_build_spawn_env_extends_path_once():
    env = build_spawn_env({"PATH": "/usr/bin:/usr/local/bin", "HOME": "/home/u"})

    parts = env["PATH"].split(os.pathsep)
    assert parts[:2] == ["/usr/bin", "/usr/local/bin"]
    assert parts.count("/usr/local/bin") == 1
    assert "/opt/homebrew/bin" in parts
    assert env["HOME"] == "/home/u"
