from __future__ import annotations

import io

from PIL import Image

from receipt_nest.core.logging import get_logger, log_event

logger = get_logger(__name__)

HEIC_MIME_TYPES: frozenset[str] = frozenset({"image/heic", "image/heif"})


def convert_heic_to_jpeg(data: bytes) -> bytes | None:
    """Decode a HEIC/HEIF image and re-encode it as JPEG; None when decoding fails."""
    try:
        from pillow_heif import register_heif_opener

        register_heif_opener()
        with Image.open(io.BytesIO(data)) as img:
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            out = io.BytesIO()
            img.save(out, "JPEG", quality=90, optimize=True)
            return out.getvalue()
    except Exception as e:
        log_event(logger, "extraction.heic.convert_failed", error_type=type(e).__name__)
        return None


def prepare_image_for_model(data: bytes, mime_type: str) -> tuple[bytes, str]:
    """
    Return bytes and MIME type suitable for a vision model request.

    HEIC/HEIF is converted to JPEG; if conversion fails the raw bytes are sent as JPEG.
    """
    mime_type = (mime_type or "").lower()
    if mime_type in HEIC_MIME_TYPES:
        converted = convert_heic_to_jpeg(data)
        return (converted or data), "image/jpeg"
    if mime_type in {"image/jpeg", "image/png", "image/gif", "image/webp", "application/pdf"}:
        return data, mime_type
    return data, "image/jpeg"
