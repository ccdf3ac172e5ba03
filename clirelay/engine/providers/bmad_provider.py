"""BMAD CLI profile.

The "prompt" is a BMAD command line typed by the user, so it is split
shell-style into separate arguments. BMAD takes no model, no images and
no rebuilt conversation context.
"""
from __future__ import annotations

import logging
import shlex

from ..models import ProtocolKind, ToolSettings
from ..normalizer import FilteredTextNormalizer, OutputNormalizer
from .base import ProviderProfile

logger = logging.getLogger(__name__)


def split_command_args(text: str) -> list[str]:
    """Split *text* like a POSIX shell; unbalanced quotes fall back to whitespace."""
    try:
        return shlex.split(text)
    except ValueError as exc:
        logger.debug("shlex could not split %r (%s); using whitespace split", text, exc)
        return text.split()


class BmadProvider(ProviderProfile):
    label = "BMAD"
    protocol = ProtocolKind.PLAIN_FILTERED
    default_command = "bmad"
    default_model = None
    timeout_seconds = 120.0
    temp_dir_name = "bmad_tmp_images"
    supports_images = False
    uses_local_context = False

    @property
    def name(self) -> str:
        return "bmad"

    def prompt_args(self, prompt: str) -> list[str]:
        return split_command_args(prompt) if prompt else []

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
        return self.prompt_args(prompt)

    def create_normalizer(self) -> OutputNormalizer:
        return FilteredTextNormalizer()
