"""Configuration loaded from environment variables.

All settings have sensible defaults. Binary paths use the historical
<PROVIDER>_PATH variables; everything else is RELAY_*.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

PROVIDER_TAGS = ("codex", "gemini", "claude", "ollama", "bmad")

# Common install locations for npm/homebrew CLIs that a GUI-launched
# server process often does not have on PATH.
_EXTRA_PATH_DIRS = (
    "/usr/local/bin",
    "/opt/homebrew/bin",
    "~/.npm-global/bin",
    "~/.local/bin",
)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in {"1", "true", "yes"}


def _default_sessions_dir() -> str:
    return str(Path.home() / ".clirelay" / "sessions")


@dataclass
class ProviderOverride:
    """Per-provider settings from env vars or YAML."""
    command: str | None = None
    default_model: str | None = None
    timeout_seconds: float | None = None


@dataclass
class RelayConfig:
    """Turn orchestrator configuration."""

    default_provider: str = "gemini"

    # Response buffer pacing
    buffer_partial_delay: float = 0.3
    buffer_max_wait: float = 1.5
    buffer_min_size: int = 30

    # Delay between SIGTERM and SIGKILL on abort
    abort_grace_seconds: float = 2.0

    # Passes --debug to providers that support it
    debug: bool = False
    # Log the PATH handed to spawned CLIs
    debug_paths: bool = False

    sessions_dir: str = field(default_factory=_default_sessions_dir)
    log_level: str = "INFO"

    providers: dict[str, ProviderOverride] = field(default_factory=dict)

    def override_for(self, provider: str) -> ProviderOverride:
        return self.providers.get(provider) or ProviderOverride()

    @classmethod
    def from_env(cls) -> RelayConfig:
        """Load configuration from environment variables."""
        relay_vars = {
            k: v for k, v in os.environ.items()
            if k.startswith("RELAY_")
            or (k.endswith("_PATH") and k[:-5].lower() in PROVIDER_TAGS)
        }
        if relay_vars:
            logger.info(
                "RelayConfig.from_env: env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(relay_vars.items())),
            )
        else:
            logger.debug("RelayConfig.from_env: no relay env vars set, using defaults")

        providers: dict[str, ProviderOverride] = {}
        for tag in PROVIDER_TAGS:
            command = os.getenv(f"{tag.upper()}_PATH") or None
            timeout_raw = os.getenv(f"RELAY_TIMEOUT_{tag.upper()}")
            model = os.getenv(f"RELAY_MODEL_{tag.upper()}") or None
            if command or timeout_raw or model:
                providers[tag] = ProviderOverride(
                    command=command,
                    default_model=model,
                    timeout_seconds=float(timeout_raw) if timeout_raw else None,
                )

        raw_provider = os.getenv("CLI_PROVIDER", cls.default_provider).lower()
        default_provider = raw_provider if raw_provider in PROVIDER_TAGS else cls.default_provider

        config = cls(
            default_provider=default_provider,
            buffer_partial_delay=float(os.getenv(
                "RELAY_BUFFER_PARTIAL_DELAY", str(cls.buffer_partial_delay)
            )),
            buffer_max_wait=float(os.getenv(
                "RELAY_BUFFER_MAX_WAIT", str(cls.buffer_max_wait)
            )),
            buffer_min_size=int(os.getenv(
                "RELAY_BUFFER_MIN_SIZE", str(cls.buffer_min_size)
            )),
            abort_grace_seconds=float(os.getenv(
                "RELAY_ABORT_GRACE", str(cls.abort_grace_seconds)
            )),
            debug=_env_flag("RELAY_DEBUG"),
            debug_paths=_env_flag("CLI_DEBUG_PATHS"),
            sessions_dir=os.getenv("RELAY_SESSIONS_DIR") or _default_sessions_dir(),
            log_level=os.getenv("RELAY_LOG_LEVEL", cls.log_level),
            providers=providers,
        )
        logger.info(
            "RelayConfig.from_env: provider=%s buffer=(%.2fs, %.2fs, %d) sessions=%s",
            config.default_provider, config.buffer_partial_delay,
            config.buffer_max_wait, config.buffer_min_size, config.sessions_dir,
        )
        return config


def build_spawn_env(
    base: dict[str, str] | None = None,
    *,
    debug_paths: bool = False,
) -> dict[str, str]:
    """Copy *base* (default: os.environ) with common CLI dirs on PATH."""
    env = dict(os.environ if base is None else base)
    parts = [p for p in env.get("PATH", "").split(os.pathsep) if p]
    for raw in _EXTRA_PATH_DIRS:
        candidate = os.path.expanduser(raw)
        if candidate not in parts:
            parts.append(candidate)
    env["PATH"] = os.pathsep.join(parts)
    if debug_paths:
        logger.info("[cli-spawn] PATH=%s", env["PATH"])
    return env
