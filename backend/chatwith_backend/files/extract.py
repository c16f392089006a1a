from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import PyPDF2
from PyPDF2.errors import PdfReadError

from ..ai.gemini import IMAGE_FILE_SENTINEL, YOUTUBE_TRANSCRIPT_SENTINEL, ImageData

log = logging.getLogger(__name__)


class FileContentError(Exception):
    """Raised when the stored content of a file cannot be read."""


@dataclass(slots=True)
class FileContext:
    file_content: Optional[str] = None
    image_data: Optional[ImageData] = None
    file_type: Optional[str] = None


def resolve_storage_path(uploads_root: Path, relative_path: str) -> Path:
    root = Path(uploads_root).resolve()
    candidate = (root / relative_path).resolve()
    if root != candidate and root not in candidate.parents:
        raise FileContentError("Resolved file path is outside the uploads directory.")
    return candidate


def _read_pdf_text(path: Path) -> str:
    try:
        with path.open("rb") as fh:
            reader = PyPDF2.PdfReader(fh)
            pages = [page.extract_text() or "" for page in reader.pages]
    except (OSError, PdfReadError) as exc:
        raise FileContentError(f"Unable to read PDF {path.name}: {exc}") from exc
    return "\n\n".join(text.strip() for text in pages if text.strip())


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="ignore").strip()
    except OSError as exc:
        raise FileContentError(f"Unable to read {path.name}: {exc}") from exc


def _read_image(path: Path, mime_type: Optional[str]) -> ImageData:
    mime = mime_type or mimetypes.guess_type(path.name)[0]
    if not mime or not mime.startswith("image/"):
        raise FileContentError(f"{path.name} is not an image")
    try:
        return ImageData(buffer=path.read_bytes(), mime_type=mime)
    except OSError as exc:
        raise FileContentError(f"Unable to read {path.name}: {exc}") from exc


def extract_file_context(file_row: Optional[Mapping[str, Any]], uploads_root: Path) -> FileContext:
    """Turn a stored file row into the context handed to the conversation client."""
    if not file_row:
        return FileContext()

    file_type = file_row.get("fileType")
    if file_type == "youtube":
        transcript = (file_row.get("transcript") or "").strip()
        return FileContext(file_content=transcript or YOUTUBE_TRANSCRIPT_SENTINEL, file_type=file_type)

    storage_path = file_row.get("storagePath")
    if not storage_path:
        raise FileContentError(f"File {file_row.get('id')} has no stored content")

    path = resolve_storage_path(uploads_root, storage_path)
    if not path.exists():
        raise FileContentError(f"Stored content for file {file_row.get('id')} is missing")

    if file_type == "image":
        return FileContext(
            file_content=IMAGE_FILE_SENTINEL,
            image_data=_read_image(path, file_row.get("mimeType")),
            file_type=file_type,
        )

    if file_type == "pdf":
        text = _read_pdf_text(path)
    else:
        text = _read_text(path)

    if not text:
        log.warning("No text could be extracted from file %s", file_row.get("id"))
        return FileContext(file_type=file_type)
    return FileContext(file_content=text, file_type=file_type)
