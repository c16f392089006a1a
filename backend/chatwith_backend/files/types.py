from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from typing import Any, Optional


@dataclass(slots=True, frozen=True)
class FileTypeInfo:
    type: str
    name: str
    image: str
    coming_soon: bool = False
    mime_types: tuple[str, ...] = ()
    extensions: tuple[str, ...] = ()

    def accepts(self, file_name: str, mime_type: Optional[str]) -> bool:
        mime = (mime_type or mimetypes.guess_type(file_name)[0] or "").lower()
        if mime and any(mime == allowed or (allowed.endswith("/*") and mime.startswith(allowed[:-1])) for allowed in self.mime_types):
            return True
        lowered = file_name.lower()
        return any(lowered.endswith(ext) for ext in self.extensions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "image": self.image,
            "comingSoon": self.coming_soon,
        }


FILE_TYPES: tuple[FileTypeInfo, ...] = (
    FileTypeInfo("pdf", "PDF", "/icons/pdf.svg", mime_types=("application/pdf",), extensions=(".pdf",)),
    FileTypeInfo(
        "text",
        "Text",
        "/icons/txt.svg",
        mime_types=("text/plain", "text/markdown", "text/csv"),
        extensions=(".txt", ".md", ".markdown", ".csv"),
    ),
    FileTypeInfo(
        "image",
        "Image",
        "/icons/image.svg",
        mime_types=("image/png", "image/jpeg", "image/webp", "image/heic", "image/heif"),
        extensions=(".png", ".jpg", ".jpeg", ".webp", ".heic", ".heif"),
    ),
    FileTypeInfo("youtube", "YouTube", "/icons/youtube.svg"),
    FileTypeInfo("audio", "Audio", "/icons/audio.svg", coming_soon=True),
    FileTypeInfo("video", "Video", "/icons/video.svg", coming_soon=True),
    FileTypeInfo("website", "Website", "/icons/website.svg", coming_soon=True),
    FileTypeInfo("spreadsheet", "Spreadsheet", "/icons/spreadsheet.svg", coming_soon=True),
)

_BY_TYPE = {info.type: info for info in FILE_TYPES}

UPLOADABLE_TYPES = frozenset({"pdf", "text", "image"})


def get_file_type(file_type: Optional[str]) -> Optional[FileTypeInfo]:
    if not isinstance(file_type, str) or not file_type:
        return None
    return _BY_TYPE.get(file_type.strip().lower())
