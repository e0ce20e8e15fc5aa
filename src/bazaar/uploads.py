"""Opaque byte-stream storage for images. Files are named by the server."""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import BinaryIO, Optional
from uuid import uuid4

from .errors import InvalidInput, NotFound, StorageFailure

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp"}
_REFERENCE = re.compile(r"^[0-9a-f]{32}(\.[a-z]{3,4})?$")
CHUNK_SIZE = 64 * 1024


def _extension(filename: Optional[str]) -> str:
    suffix = Path(filename or "").suffix.lower()
    return suffix if suffix in ALLOWED_EXTENSIONS else ""


class UploadStore:
    """Stores uploads under one directory and hands back generated references.

    The client's filename contributes at most an allow-listed extension and
    is never used as a path.
    """

    def __init__(self, root: str, *, max_bytes: int = 8 * 1024 * 1024) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_bytes

    def save(self, stream: BinaryIO, filename: Optional[str] = None) -> str:
        reference = f"{uuid4().hex}{_extension(filename)}"
        target = self.root / reference
        written = 0
        try:
            with target.open("wb") as out:
                while True:
                    chunk = stream.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    # stop reading as soon as the limit is crossed
                    if written > self.max_bytes:
                        break
                    out.write(chunk)
        except OSError as e:
            target.unlink(missing_ok=True)
            raise StorageFailure(f"Cannot store upload: {e}") from e
        if written > self.max_bytes:
            target.unlink(missing_ok=True)
            raise InvalidInput(f"Upload exceeds {self.max_bytes} bytes")
        logger.info("Stored upload %s", reference)
        return reference

    def path(self, reference: str) -> Path:
        if not _REFERENCE.match(reference or ""):
            raise NotFound("Unknown file")
        p = self.root / reference
        if not p.is_file():
            raise NotFound("Unknown file")
        return p

    def delete(self, reference: Optional[str]) -> None:
        if not reference or not _REFERENCE.match(reference):
            return
        (self.root / reference).unlink(missing_ok=True)
