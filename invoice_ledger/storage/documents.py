"""Loading submitted documents with size and path safety checks."""

import hashlib
import logging
import re
from pathlib import Path
from typing import Iterable

from ..core.exceptions import DocumentError, DocumentTooLargeError
from ..core.models import Document

logger = logging.getLogger(__name__)

MIME_TYPES = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}

_RESERVED_NAMES = {
    "CON", "PRN", "AUX", "NUL",
    "COM1", "COM2", "COM3", "COM4", "COM5", "COM6", "COM7", "COM8", "COM9",
    "LPT1", "LPT2", "LPT3", "LPT4", "LPT5", "LPT6", "LPT7", "LPT8", "LPT9"
}


def sanitize_filename(filename: str, max_length: int = 120) -> str:
    """Sanitize a filename for use in document keys and scratch files.

    Raises:
        DocumentError: If nothing usable is left after sanitizing
    """
    if not filename or not filename.strip():
        raise DocumentError(filename or "<empty>", "empty filename")

    # Keep alphanumerics, dots, hyphens and underscores
    sanitized = re.sub(r"[^a-zA-Z0-9._\-]", "_", filename)
    sanitized = re.sub(r"\.{2,}", ".", sanitized)
    sanitized = sanitized.strip(". ")

    if len(sanitized) > max_length:
        path = Path(sanitized)
        stem = path.stem[:max_length - len(path.suffix) - 1]
        sanitized = f"{stem}{path.suffix}"

    if Path(sanitized).stem.upper() in _RESERVED_NAMES:
        sanitized = f"safe_{sanitized}"

    if not sanitized:
        raise DocumentError(filename, "filename could not be sanitized safely")
    return sanitized


def document_key_for(file_name: str, data: bytes) -> str:
    """Stable key: sanitized stem plus a short content hash."""
    digest = hashlib.sha256(data).hexdigest()[:12]
    stem = Path(sanitize_filename(file_name)).stem
    return f"{stem}-{digest}"


def detect_mime_type(file_path: Path | str) -> str:
    suffix = Path(file_path).suffix.lower()
    mime_type = MIME_TYPES.get(suffix)
    if mime_type is None:
        raise DocumentError(file_path, f"unsupported file type '{suffix}'. Allowed: {sorted(MIME_TYPES)}")
    return mime_type


def document_from_bytes(file_name: str, data: bytes, max_size_mb: float = 20.0) -> Document:
    """Wrap already-read bytes (e.g. an upload) as a Document."""
    size_mb = len(data) / (1024 * 1024)
    if size_mb > max_size_mb:
        raise DocumentTooLargeError(file_name, size_mb, max_size_mb)
    if not data:
        raise DocumentError(file_name, "file is empty")
    return Document(
        key=document_key_for(file_name, data),
        file_name=Path(file_name).name,
        data=data,
        mime_type=detect_mime_type(file_name),
    )


def load_document(file_path: Path | str, max_size_mb: float = 20.0) -> Document:
    """Read a document from disk.

    Raises:
        DocumentTooLargeError: If the file exceeds max_size_mb
        DocumentError: If the file is missing, unreadable or of an unsupported type
    """
    path = Path(file_path)
    detect_mime_type(path)
    try:
        size_mb = path.stat().st_size / (1024 * 1024)
    except FileNotFoundError as e:
        raise DocumentError(path, "file not found", e)

    logger.debug(f"Document size check: {path.name} = {size_mb:.1f}MB")
    if size_mb > max_size_mb:
        raise DocumentTooLargeError(path, size_mb, max_size_mb)

    try:
        data = path.read_bytes()
    except OSError as e:
        raise DocumentError(path, "unable to read file", e)
    return document_from_bytes(path.name, data, max_size_mb)


def collect_documents(paths: Iterable[Path | str]) -> list[Path]:
    """Expand directories into their supported files, sorted by name."""
    collected: list[Path] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            collected.extend(
                sorted(p for p in path.iterdir() if p.is_file() and p.suffix.lower() in MIME_TYPES)
            )
        else:
            collected.append(path)
    return collected
