from __future__ import annotations

import io
import re
from datetime import UTC, datetime

from PIL import Image, ImageDraw, ImageFont

PREVIEW_SIZE = (1200, 1600)

_INK = "#0f172a"
_MUTED = "#475569"
_FOOT = "#64748b"
_RULE = "#e2e8f0"
_PENDING_FG = "#b45309"
_PENDING_BG = "#fef3c7"


def wrap_preview_text(value: str, max_chars: int, max_lines: int) -> list[str]:
    """Word-wrap `value` into at most `max_lines` lines, ending with `...` when cut short."""
    normalized = re.sub(r"\s+", " ", value or "").strip()
    if not normalized:
        return []

    words = normalized.split(" ")
    lines: list[str] = []
    current = ""
    consumed = 0
    for word in words:
        consumed += 1
        candidate = f"{current} {word}" if current else word
        if len(candidate) <= max_chars:
            current = candidate
            continue
        if current:
            lines.append(current)
            if len(lines) >= max_lines:
                current = ""
                break
        current = f"{word[: max(max_chars - 3, 1)]}..." if len(word) > max_chars else word

    if current and len(lines) < max_lines:
        lines.append(current)

    if consumed < len(words) or len(" ".join(lines)) < len(normalized):
        last = lines[-1]
        if not last.endswith("..."):
            lines[-1] = f"{last[: max(max_chars - 3, 1)]}..."
    return lines


def _font(size: int) -> ImageFont.ImageFont | ImageFont.FreeTypeFont:
    return ImageFont.load_default(size=size)


def render_email_preview(
    *,
    subject: str,
    sender: str,
    merchant_name: str | None,
    body_text: str,
    generated_at: datetime | None = None,
) -> bytes:
    """
    Draw a receipt-shaped PNG card for an email that arrived without attachments.

    Totals and dates are filled in by extraction later, so the card shows them as pending.
    """
    width, height = PREVIEW_SIZE
    image = Image.new("RGB", PREVIEW_SIZE, "#e8ecf6")
    draw = ImageDraw.Draw(image)

    draw.rounded_rectangle((70, 70, width - 70, height - 70), radius=40, fill="#ffffff")
    draw.rounded_rectangle((70, 70, width - 70, 190), radius=40, fill=_INK)
    draw.rectangle((70, 150, width - 70, 190), fill=_INK)
    draw.text((120, 100), "ReceiptNest Email Receipt", font=_font(42), fill="#f8fafc")

    draw.rounded_rectangle((880, 250, 1070, 294), radius=22, fill=_PENDING_BG)
    badge_font = _font(18)
    badge_width = draw.textlength("Review pending", font=badge_font)
    draw.text((975 - badge_width / 2, 262), "Review pending", font=badge_font, fill=_PENDING_FG)

    draw.text((120, 220), "Subject", font=_font(28), fill=_MUTED)
    for index, line in enumerate(wrap_preview_text(subject or "(no subject)", 42, 2)):
        draw.text((120, 270 + index * 44), line, font=_font(40), fill=_INK)

    draw.text((120, 395), "From", font=_font(28), fill=_MUTED)
    draw.text((120, 435), sender or "(unknown sender)", font=_font(34), fill=_INK)
    draw.line((120, 530, 1080, 530), fill=_RULE, width=2)

    draw.text((120, 565), "Merchant", font=_font(28), fill=_MUTED)
    draw.text((120, 600), merchant_name or "Email Receipt", font=_font(52), fill=_INK)
    draw.text((120, 705), "Detected Total", font=_font(28), fill=_MUTED)
    draw.text((120, 740), "Pending", font=_font(34), fill=_INK)
    draw.text((680, 705), "Date", font=_font(28), fill=_MUTED)
    draw.text((680, 740), "Pending", font=_font(34), fill=_INK)
    draw.line((120, 835, 1080, 835), fill=_RULE, width=2)

    draw.text((120, 850), "Email body excerpt", font=_font(28), fill=_MUTED)
    for index, line in enumerate(wrap_preview_text(body_text, 58, 10)):
        draw.text((120, 900 + index * 34), line, font=_font(30), fill="#1e293b")

    stamp = (generated_at or datetime.now(UTC)).strftime("%b %d, %Y %H:%M UTC")
    draw.line((120, 1320, 1080, 1320), fill=_RULE, width=2)
    draw.text((120, 1350), f"Generated {stamp}", font=_font(26), fill=_FOOT)
    draw.text(
        (120, 1390),
        "No attachment found. Preview created from extracted email content.",
        font=_font(26),
        fill=_FOOT,
    )

    out = io.BytesIO()
    image.save(out, "PNG", optimize=True)
    return out.getvalue()
