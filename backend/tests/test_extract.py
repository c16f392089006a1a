from __future__ import annotations

from pathlib import Path

import PyPDF2
import pytest

from chatwith_backend.ai.gemini import IMAGE_FILE_SENTINEL, YOUTUBE_TRANSCRIPT_SENTINEL
from chatwith_backend.files.extract import FileContentError, extract_file_context, resolve_storage_path
from chatwith_backend.files.types import FILE_TYPES, UPLOADABLE_TYPES, get_file_type


def _write(root: Path, relative: str, data: bytes) -> str:
    target = root / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)
    return relative


def test_no_file_row_gives_empty_context(tmp_path):
    context = extract_file_context(None, tmp_path)

    assert context.file_content is None
    assert context.image_data is None


def test_text_file_content(tmp_path):
    path = _write(tmp_path, "alice/a.txt", "  hello there \n".encode("utf-8"))

    context = extract_file_context({"id": "f", "fileType": "text", "storagePath": path}, tmp_path)

    assert context.file_content == "hello there"
    assert context.file_type == "text"


def test_image_file_uses_sentinel_and_bytes(tmp_path):
    path = _write(tmp_path, "alice/p.png", b"\x89PNG data")

    context = extract_file_context(
        {"id": "f", "fileType": "image", "mimeType": "image/png", "storagePath": path},
        tmp_path,
    )

    assert context.file_content == IMAGE_FILE_SENTINEL
    assert context.image_data.buffer == b"\x89PNG data"
    assert context.image_data.mime_type == "image/png"


def test_youtube_uses_transcript_or_sentinel(tmp_path):
    with_transcript = extract_file_context({"fileType": "youtube", "transcript": "hi all"}, tmp_path)
    without = extract_file_context({"fileType": "youtube", "transcript": ""}, tmp_path)

    assert with_transcript.file_content == "hi all"
    assert without.file_content == YOUTUBE_TRANSCRIPT_SENTINEL


def test_blank_pdf_has_no_text(tmp_path):
    writer = PyPDF2.PdfWriter()
    writer.add_blank_page(width=72, height=72)
    target = tmp_path / "alice" / "blank.pdf"
    target.parent.mkdir(parents=True)
    with target.open("wb") as fh:
        writer.write(fh)

    context = extract_file_context({"id": "f", "fileType": "pdf", "storagePath": "alice/blank.pdf"}, tmp_path)

    assert context.file_content is None
    assert context.file_type == "pdf"


def test_corrupt_pdf_raises(tmp_path):
    path = _write(tmp_path, "alice/bad.pdf", b"not a pdf at all")

    with pytest.raises(FileContentError):
        extract_file_context({"id": "f", "fileType": "pdf", "storagePath": path}, tmp_path)


def test_missing_stored_file_raises(tmp_path):
    with pytest.raises(FileContentError):
        extract_file_context({"id": "f", "fileType": "text", "storagePath": "alice/none.txt"}, tmp_path)


def test_storage_path_cannot_escape_uploads(tmp_path):
    with pytest.raises(FileContentError):
        resolve_storage_path(tmp_path, "../outside.txt")


def test_file_type_catalogue():
    assert [info.type for info in FILE_TYPES if not info.coming_soon] == ["pdf", "text", "image", "youtube"]
    assert get_file_type(" PDF ").type == "pdf"
    assert get_file_type(None) is None
    assert get_file_type(12) is None
    assert UPLOADABLE_TYPES == {"pdf", "text", "image"}
    assert get_file_type("audio").to_dict()["comingSoon"] is True


def test_file_type_accepts_by_mime_or_extension():
    image = get_file_type("image")

    assert image.accepts("photo.bin", "image/png")
    assert image.accepts("photo.JPG", None)
    assert not image.accepts("notes.txt", "text/plain")
