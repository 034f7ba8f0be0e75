"""
Shared types, enums, and constants.
"""
import os
from enum import Enum
from typing import Final, Literal

# Coarse file categories shown next to each entry
FileKind = Literal["folder", "image", "video", "audio", "document", "archive", "code", "other"]


class ErrorCode(str, Enum):
    """Standardized error codes (string enum)."""

    # Client / validation
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_JSON = "INVALID_JSON"
    NOT_FOUND = "NOT_FOUND"

    # Filesystem
    ACCESS_DENIED = "ACCESS_DENIED"
    IO_ERROR = "IO_ERROR"
    DECODE_ERROR = "DECODE_ERROR"
    SKIPPED_CYCLE = "SKIPPED_CYCLE"

    # Index
    NOT_INDEXED_YET = "NOT_INDEXED_YET"
    STORE_ERROR = "STORE_ERROR"

    # Feature / service availability
    DEGRADED = "DEGRADED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    # Server / infrastructure
    DB_ERROR = "DB_ERROR"
    TIMEOUT = "TIMEOUT"


# File extensions by kind
EXTENSIONS: Final[dict[str, set[str]]] = {
    "image": {".png", ".jpg", ".jpeg", ".webp", ".gif", ".heic", ".tif", ".tiff", ".bmp", ".svg"},
    "video": {".mp4", ".mov", ".webm", ".mkv", ".avi", ".m4v"},
    "audio": {".wav", ".mp3", ".flac", ".ogg", ".aiff", ".aif", ".m4a", ".aac"},
    "document": {".pdf", ".txt", ".md", ".rtf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".pages", ".numbers", ".key", ".csv"},
    "archive": {".zip", ".tar", ".gz", ".tgz", ".bz2", ".xz", ".7z", ".rar", ".dmg"},
    "code": {".py", ".rs", ".js", ".ts", ".c", ".h", ".cpp", ".go", ".java", ".rb", ".sh", ".json", ".toml", ".yaml", ".yml", ".html", ".css"},
}

_EXT_TO_KIND: Final[dict[str, str]] = {ext: kind for kind, exts in EXTENSIONS.items() for ext in exts}


def file_extension(filename: str) -> str:
    """Lower-case extension without the leading dot ('' when there is none)."""
    return os.path.splitext(filename)[1].lower().lstrip(".")


def classify_file(filename: str, is_dir: bool = False) -> FileKind:
    """
    Classify an entry by extension.

    Args:
        filename: File name or path
        is_dir: Directories are always "folder"

    Returns:
        File kind
    """
    if is_dir:
        return "folder"
    ext = os.path.splitext(filename)[1].lower()
    return _EXT_TO_KIND.get(ext, "other")  # type: ignore[return-value]
