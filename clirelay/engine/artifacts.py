"""Stage inbound image attachments as temporary files.

Files go under ``<working dir>/<provider temp dir>/<epoch ms>/`` so the
agent CLI can read them with its normal file access. Staging failures
skip the offending attachment; cleanup is best-effort and idempotent.
"""
from __future__ import annotations

import base64
import binascii
import logging
import mimetypes
import os
import re
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from .errors import AttachmentError
from .models import Attachment

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)


@dataclass
class StagedArtifacts:
    """Files written for one turn and the directory holding them."""
    directory: Path | None = None
    paths: list[Path] = field(default_factory=list)
    _cleaned: bool = field(default=False, repr=False)

    def __bool__(self) -> bool:
        return bool(self.paths)

    def relative_to(self, working_dir: str | Path) -> list[str]:
        return [os.path.relpath(p, working_dir) for p in self.paths]

    def cleanup(self) -> None:
        """Remove staged files, then their directory. Runs once."""
        if self._cleaned:
            return
        self._cleaned = True
        for path in self.paths:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Failed to delete temp image %s: %s", path, exc)
        if self.directory is None:
            return
        shutil.rmtree(self.directory, ignore_errors=True)
        # Drop the per-provider parent too once nothing else is staged in it.
        try:
            self.directory.parent.rmdir()
        except OSError:
            pass
        logger.debug("Cleaned up staged artifacts in %s", self.directory)


class ArtifactStager:
    """Writes attachments for a provider into its temp directory."""

    def __init__(self, temp_dir_name: str) -> None:
        self._temp_dir_name = temp_dir_name

    def stage(
        self,
        attachments: list[Attachment],
        working_dir: str | Path,
    ) -> StagedArtifacts:
        staged = StagedArtifacts()
        if not attachments:
            return staged

        directory = Path(working_dir) / self._temp_dir_name / str(int(time.time() * 1000))
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Could not create temp image dir %s: %s", directory, exc)
            return staged
        staged.directory = directory

        for index, attachment in enumerate(attachments):
            try:
                staged.paths.append(self._write_one(directory, index, attachment))
            except AttachmentError as exc:
                logger.warning("%s", exc)

        if not staged.paths:
            staged.cleanup()
        else:
            logger.info("Staged %d attachment(s) in %s", len(staged.paths), directory)
        return staged

    @staticmethod
    def _write_one(directory: Path, index: int, attachment: Attachment) -> Path:
        match = _DATA_URL_RE.match(attachment.data or "")
        if not match:
            raise AttachmentError(index, "invalid image data format")
        mime_type, payload = match.groups()
        try:
            raw = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise AttachmentError(index, f"corrupt base64 payload ({exc})") from exc

        subtype = mime_type.split("/", 1)[1] if "/" in mime_type else ""
        extension = re.sub(r"[^A-Za-z0-9]", "", subtype.split("+", 1)[0]) or "png"
        path = directory / f"image_{index}.{extension}"
        try:
            path.write_bytes(raw)
        except OSError as exc:
            raise AttachmentError(index, f"write failed ({exc})") from exc
        return path


def encode_data_url(path: str | Path) -> str:
    """Read an image file into the ``data:<mime>;base64,...`` form stage() expects."""
    path = Path(path)
    mime_type = mimetypes.guess_type(path.name)[0] or "image/png"
    payload = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime_type};base64,{payload}"
