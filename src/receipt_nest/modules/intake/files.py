from __future__ import annotations

import re
import time
import uuid
from pathlib import PurePath

from receipt_nest.modules.intake.schemas import RawDocument

ALLOWED_ATTACHMENT_MIME_TYPES: frozenset[str] = frozenset(
    {
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/webp",
        "image/heic",
        "image/heif",
        "application/pdf",
    }
)

_EXTENSION_MIME_TYPES: dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".heic": "image/heic",
    ".heif": "image/heif",
    ".pdf": "application/pdf",
}

_UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9._-]")
_UNDERSCORE_RUN_RE = re.compile(r"_+")

MAX_FILE_NAME_LENGTH = 120


def sanitize_file_name(name: str | None) -> str:
    cleaned = _UNSAFE_CHARS_RE.sub("_", name or "")
    cleaned = _UNDERSCORE_RUN_RE.sub("_", cleaned).strip("_")
    return cleaned[:MAX_FILE_NAME_LENGTH] or "receipt"


def normalize_attachment_mime_type(mime_type: str | None, file_name: str | None) -> str:
    """
    Resolve a usable MIME type for an attachment.

    A declared type that is already allowed wins; otherwise the file extension decides.
    Returns the lowercased declared type (or octet-stream) when neither resolves.
    """
    declared = (mime_type or "").split(";", 1)[0].strip().lower()
    if declared in ALLOWED_ATTACHMENT_MIME_TYPES:
        return declared
    suffix = PurePath((file_name or "").lower()).suffix
    by_extension = _EXTENSION_MIME_TYPES.get(suffix)
    if by_extension:
        return by_extension
    return declared or "application/octet-stream"


def is_allowed_attachment(document: RawDocument, *, max_bytes: int) -> bool:
    if document.size_bytes <= 0 or document.size_bytes > max_bytes:
        return False
    mime_type = normalize_attachment_mime_type(document.mime_type, document.file_name)
    return mime_type in ALLOWED_ATTACHMENT_MIME_TYPES


def receipt_storage_key(
    *, user_id: uuid.UUID | str, file_name: str, timestamp_ms: int | None = None
) -> str:
    ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    return f"users/{user_id}/receipts/{ts}_{sanitize_file_name(file_name)}"
