"""YAML configuration loader.

Optional file layered over RelayConfig.from_env(). Values in the YAML
file win over environment variables.

Example YAML:
    relay:
      default_provider: codex
      buffer_partial_delay: 0.25
      abort_grace_seconds: 3

    providers:
      codex:
        command: /opt/codex/bin/codex
        default_model: gpt-5.1-codex
        timeout_seconds: 180
      gemini:
        timeout_seconds: 45
"""
from __future__ import annotations

import logging
from dataclasses import fields, replace
from pathlib import Path

import yaml

from .config import PROVIDER_TAGS, ProviderOverride, RelayConfig

logger = logging.getLogger(__name__)

_RELAY_KEYS = {
    f.name for f in fields(RelayConfig) if f.name != "providers"
}


def _parse_provider(name: str, raw: dict) -> ProviderOverride:
    timeout = raw.get("timeout_seconds")
    return ProviderOverride(
        command=raw.get("command") or None,
        default_model=raw.get("default_model") or None,
        timeout_seconds=float(timeout) if timeout is not None else None,
    )


def load_yaml_config(
    path: str | Path,
    base: RelayConfig | None = None,
) -> RelayConfig:
    """Load *path* and merge it over *base* (default: from_env())."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    config = base if base is not None else RelayConfig.from_env()

    relay_raw = raw.get("relay") or {}
    unknown = sorted(set(relay_raw) - _RELAY_KEYS)
    if unknown:
        logger.warning(
            "load_yaml_config: ignoring unknown relay keys: %s", ", ".join(unknown)
        )
    updates = {k: v for k, v in relay_raw.items() if k in _RELAY_KEYS}
    if "default_provider" in updates:
        updates["default_provider"] = str(updates["default_provider"]).lower()
        if updates["default_provider"] not in PROVIDER_TAGS:
            logger.warning(
                "load_yaml_config: unknown default_provider '%s' - keeping '%s'",
                updates["default_provider"], config.default_provider,
            )
            updates.pop("default_provider")

    providers = dict(config.providers)
    for name, provider_raw in (raw.get("providers") or {}).items():
        if name not in PROVIDER_TAGS:
            logger.warning(
                "Unknown provider '%s' in %s - skipping", name, path.name,
            )
            continue
        parsed = _parse_provider(name, provider_raw or {})
        previous = providers.get(name) or ProviderOverride()
        providers[name] = ProviderOverride(
            command=parsed.command or previous.command,
            default_model=parsed.default_model or previous.default_model,
            timeout_seconds=(
                parsed.timeout_seconds
                if parsed.timeout_seconds is not None
                else previous.timeout_seconds
            ),
        )

    merged = replace(config, providers=providers, **updates)
    logger.info(
        "Parsed YAML config %s — provider=%s overrides=%s",
        path.name, merged.default_provider,
        ", ".join(sorted(providers)) or "(none)",
    )
    return merged
