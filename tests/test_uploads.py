from __future__ import annotations

import io
from pathlib import Path

import pytest

from bazaar.errors import InvalidInput, NotFound
from bazaar.uploads import CHUNK_SIZE, UploadStore


def test_save_names_file_and_keeps_allowed_extension(tmp_path: Path):
    uploads = UploadStore(str(tmp_path / "uploads"), max_bytes=1024)
    reference = uploads.save(io.BytesIO(b"\x89PNG data"), "../../etc/passwd.PNG")
    assert reference.endswith(".png")
    assert "/" not in reference
    assert uploads.path(reference).read_bytes() == b"\x89PNG data"

    other = uploads.save(io.BytesIO(b"x"), "script.sh")
    assert "." not in other


def test_oversized_upload_stops_reading_early(tmp_path: Path):
    root = tmp_path / "uploads"
    uploads = UploadStore(str(root), max_bytes=CHUNK_SIZE)
    total = CHUNK_SIZE * 10
    stream = io.BytesIO(b"\0" * total)

    with pytest.raises(InvalidInput):
        uploads.save(stream, "big.png")

    assert stream.tell() < total
    assert list(root.iterdir()) == []


def test_upload_at_exact_limit_is_accepted(tmp_path: Path):
    uploads = UploadStore(str(tmp_path / "uploads"), max_bytes=CHUNK_SIZE + 10)
    reference = uploads.save(io.BytesIO(b"a" * (CHUNK_SIZE + 10)), "ok.gif")
    assert uploads.path(reference).stat().st_size == CHUNK_SIZE + 10


def test_path_rejects_foreign_references(tmp_path: Path):
    uploads = UploadStore(str(tmp_path / "uploads"))
    (tmp_path / "secret.txt").write_text("x", encoding="utf-8")
    for reference in ("../secret.txt", "", "0" * 32):
        with pytest.raises(NotFound):
            uploads.path(reference)
    uploads.delete("../secret.txt")
    assert (tmp_path / "secret.txt").exists()
