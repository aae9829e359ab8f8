from __future__ import annotations

import base64
import binascii
import html
import json
import re
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qsl, unquote_to_bytes

from receipt_nest.core.config import settings
from receipt_nest.core.logging import get_logger, log_event, log_exception
from receipt_nest.modules.intake.files import normalize_attachment_mime_type, sanitize_file_name
from receipt_nest.modules.intake.schemas import InboundEnvelope, RawDocument
from receipt_nest.modules.receipts.models import SourceChannel

logger = get_logger(__name__)

MAX_EMAIL_TEXT_CHARS = 12000

_BOUNDARY_RE = re.compile(r'boundary=(?:"([^"]+)"|([^;]+))', re.IGNORECASE)
_PARAM_RE = re.compile(r';\s*([^=;\s]+)\s*=\s*("(?:[^"\\]|\\.)*"|[^;]*)')
_CONTINUATION_RE = re.compile(r"^(?P<name>[^*]+)\*(?P<index>\d+)(?P<ext>\*?)$")
_QP_ESCAPE_RE = re.compile(rb"=([0-9A-Fa-f]{2})")
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class MultipartPart:
    headers: dict[str, str]
    body: bytes

    @property
    def disposition(self) -> str:
        return self.headers.get("content-disposition", "")

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")


class MultipartReader:
    """
    Pull-based reader over a multipart body.

    Parts are produced one at a time from a byte cursor. Reading stops at the
    closing delimiter or at the first part whose framing is incomplete; parts
    already yielded are unaffected.
    """

    def __init__(self, body: bytes, boundary: str) -> None:
        self._body = body
        self._delimiter = b"--" + boundary.encode("utf-8")
        self._cursor = 0
        self._done = not boundary

    def __iter__(self) -> Iterator[MultipartPart]:
        while True:
            part = self.next_part()
            if part is None:
                return
            yield part

    def next_part(self) -> MultipartPart | None:
        if self._done:
            return None

        body = self._body
        start = body.find(self._delimiter, self._cursor)
        if start < 0:
            return self._stop()
        after = start + len(self._delimiter)
        if body.startswith(b"--", after):
            return self._stop()

        if body.startswith(b"\r\n", after):
            after += 2
        elif body.startswith(b"\n", after):
            after += 1

        header_end, separator_len = _find_header_end(body, after)
        if header_end < 0:
            return self._stop()

        headers = parse_header_block(body[after:header_end].decode("utf-8", errors="replace"))
        data_start = header_end + separator_len
        next_delimiter = body.find(self._delimiter, data_start)
        if next_delimiter < 0:
            return self._stop()

        self._cursor = next_delimiter
        return MultipartPart(headers=headers, body=body[data_start:next_delimiter].rstrip(b"\r\n"))

    def _stop(self) -> None:
        self._done = True
        return None


def _find_header_end(body: bytes, start: int) -> tuple[int, int]:
    crlf = body.find(b"\r\n\r\n", start)
    lf = body.find(b"\n\n", start)
    if crlf >= 0 and (lf < 0 or crlf <= lf):
        return crlf, 4
    if lf >= 0:
        return lf, 2
    return -1, 0


def parse_header_block(block: str) -> dict[str, str]:
    headers: dict[str, str] = {}
    last_key: str | None = None
    for line in re.split(r"\r?\n", block):
        if not line:
            continue
        if line[0] in " \t" and last_key:
            headers[last_key] = f"{headers[last_key]} {line.strip()}"
            continue
        name, sep, value = line.partition(":")
        if not sep:
            continue
        last_key = name.strip().lower()
        headers[last_key] = value.strip()
    return headers


def extract_boundary(content_type: str | None) -> str | None:
    match = _BOUNDARY_RE.search(content_type or "")
    if not match:
        return None
    boundary = (match.group(1) or match.group(2) or "").strip()
    return boundary or None


def parse_header_params(value: str) -> dict[str, str]:
    """
    Parse `; key=value` parameters of a structured header.

    RFC 2231 extended values (`key*=charset''text`) and continuations
    (`key*0=`, `key*1*=`) are decoded and folded into the plain key.
    """
    plain: dict[str, str] = {}
    extended: dict[str, str] = {}
    continuations: dict[str, list[tuple[int, str, bool]]] = {}

    for match in _PARAM_RE.finditer(";" + value):
        key = match.group(1).lower()
        raw = match.group(2).strip()
        if len(raw) >= 2 and raw[0] == '"' and raw[-1] == '"':
            raw = raw[1:-1].replace('\\"', '"')

        cont = _CONTINUATION_RE.match(key)
        if cont:
            continuations.setdefault(cont.group("name"), []).append(
                (int(cont.group("index")), raw, bool(cont.group("ext")))
            )
        elif key.endswith("*"):
            extended[key[:-1]] = decode_rfc2231_value(raw)
        else:
            plain[key] = raw

    for name, pieces in continuations.items():
        pieces.sort(key=lambda p: p[0])
        charset = "utf-8"
        joined = b""
        for index, raw, is_ext in pieces:
            if is_ext:
                if index == 0 and raw.count("'") >= 2:
                    charset, _, raw = raw.split("'", 2)
                    charset = charset or "utf-8"
                joined += unquote_to_bytes(raw)
            else:
                joined += raw.encode("utf-8")
        extended[name] = _decode_bytes(joined, charset)

    plain.update(extended)
    return plain


def _decode_bytes(data: bytes, charset: str) -> str:
    try:
        return data.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return data.decode("utf-8", errors="replace")


def decode_rfc2231_value(value: str) -> str:
    """Decode `charset''percent-encoded` values; other values pass through."""
    if "''" not in value:
        return value
    charset, _, encoded = value.partition("''")
    return _decode_bytes(unquote_to_bytes(encoded), charset)


def parse_multipart_form(
    body: bytes, content_type: str, *, max_attachment_bytes: int | None = None
) -> InboundEnvelope:
    boundary = extract_boundary(content_type)
    if not boundary:
        return InboundEnvelope()

    limit = max_attachment_bytes or settings.max_attachment_bytes
    fields: dict[str, str] = {}
    attachments: list[RawDocument] = []

    for part in MultipartReader(body, boundary):
        params = parse_header_params(part.disposition)
        name = params.get("name")
        if not name:
            continue
        filename = params.get("filename")
        if not filename:
            fields[name] = part.body.decode("utf-8", errors="replace")
            continue
        if not part.body or len(part.body) > limit:
            log_event(
                logger,
                "intake.multipart.attachment_skipped",
                field_name=name,
                size_bytes=len(part.body),
            )
            continue
        file_name = sanitize_file_name(decode_rfc2231_value(filename))
        attachments.append(
            RawDocument(
                data=part.body,
                mime_type=(part.content_type.split(";", 1)[0].strip() or "application/octet-stream"),
                file_name=file_name,
                source_channel=SourceChannel.EMAIL,
                field_name=name,
            )
        )

    return InboundEnvelope(fields=fields, attachments=attachments)


def decode_quoted_printable(data: bytes) -> bytes:
    data = re.sub(rb"=\r?\n", b"", data)
    return _QP_ESCAPE_RE.sub(lambda m: bytes([int(m.group(1), 16)]), data)


def _decode_transfer_body(body: str, encoding: str) -> bytes | None:
    encoding = encoding.strip().lower()
    if encoding == "base64":
        compact = _WHITESPACE_RE.sub("", body)
        try:
            return base64.b64decode(compact)
        except (binascii.Error, ValueError):
            return None
    if encoding == "quoted-printable":
        return decode_quoted_printable(body.encode("utf-8"))
    return body.encode("utf-8")


def extract_attachments_from_raw_email(
    raw_email: str, *, max_attachment_bytes: int | None = None
) -> list[RawDocument]:
    """
    Recover attachments from an unparsed MIME message carried as plain text.

    Scans every Content-Disposition header. Nested multiparts are covered because
    the scan is linear over the whole message rather than following the tree.
    """
    if not raw_email:
        return []

    limit = max_attachment_bytes or settings.max_attachment_bytes
    text = raw_email.replace("\r\n", "\n")
    lower = text.lower()
    out: list[RawDocument] = []
    cursor = 0

    while True:
        idx = lower.find("content-disposition:", cursor)
        if idx < 0:
            break

        header_start = max(lower.rfind("\n--", 0, idx), lower.rfind("\ncontent-type:", 0, idx))
        block_start = header_start + 1 if header_start >= 0 else idx
        header_end = text.find("\n\n", idx)
        if header_end < 0:
            break

        headers = parse_header_block(text[block_start:header_end])
        body_start = header_end + 2
        next_boundary = text.find("\n--", body_start)
        body_end = next_boundary if next_boundary >= 0 else len(text)
        encoded = text[body_start:body_end].strip()
        cursor = body_end

        disposition = headers.get("content-disposition", "")
        if disposition.split(";", 1)[0].strip().lower() not in {"attachment", "inline"}:
            continue

        disposition_params = parse_header_params(disposition)
        type_params = parse_header_params(headers.get("content-type", ""))
        filename = disposition_params.get("filename") or type_params.get("name")
        if not filename:
            continue

        data = _decode_transfer_body(encoded, headers.get("content-transfer-encoding", ""))
        if not data or len(data) > limit:
            continue

        file_name = sanitize_file_name(filename)
        declared = headers.get("content-type", "").split(";", 1)[0].strip()
        out.append(
            RawDocument(
                data=data,
                mime_type=normalize_attachment_mime_type(declared, file_name),
                file_name=file_name,
                source_channel=SourceChannel.EMAIL,
                field_name="email",
            )
        )

    return out


def decode_potential_base64(value: str) -> bytes | None:
    trimmed = (value or "").strip()
    if not trimmed:
        return None

    if trimmed.startswith("{") and trimmed.endswith("}"):
        try:
            parsed = json.loads(trimmed)
        except ValueError:
            parsed = None
        if (
            isinstance(parsed, dict)
            and parsed.get("type") == "Buffer"
            and isinstance(parsed.get("data"), list)
        ):
            try:
                return bytes(parsed["data"])
            except (TypeError, ValueError):
                return None

    compact = _WHITESPACE_RE.sub("", trimmed)
    if len(compact) < 16 or len(compact) % 4 != 0 or not _BASE64_RE.match(compact):
        return None
    try:
        return base64.b64decode(compact)
    except (binascii.Error, ValueError):
        return None


def extract_attachments_from_attachment_info(
    fields: dict[str, str], *, max_attachment_bytes: int | None = None
) -> list[RawDocument]:
    raw_info = fields.get("attachment-info")
    if not raw_info:
        return []
    try:
        info = json.loads(raw_info)
    except ValueError:
        return []
    if not isinstance(info, dict):
        return []

    limit = max_attachment_bytes or settings.max_attachment_bytes
    out: list[RawDocument] = []
    for field_name, meta in info.items():
        if not isinstance(meta, dict):
            meta = {}
        data = decode_potential_base64(fields.get(field_name, ""))
        if not data or len(data) > limit:
            continue
        file_name = sanitize_file_name(str(meta.get("filename") or f"{field_name}.bin"))
        declared = meta.get("type") if isinstance(meta.get("type"), str) else None
        out.append(
            RawDocument(
                data=data,
                mime_type=normalize_attachment_mime_type(declared, file_name),
                file_name=file_name,
                source_channel=SourceChannel.EMAIL,
                field_name=str(field_name),
            )
        )
    return out


def strip_html(value: str) -> str:
    text = re.sub(r"(?is)<(script|style)[^>]*>.*?</\1>", " ", value or "")
    text = re.sub(r"(?i)<br\s*/?>", "\n", text)
    text = re.sub(r"(?i)</(p|div|tr|li|h[1-6])>", "\n", text)
    text = re.sub(r"<[^>]+>", " ", text)
    return html.unescape(text)


def normalize_email_text(value: str | None) -> str:
    cleaned = (value or "").replace("\x00", " ")
    return _WHITESPACE_RE.sub(" ", cleaned).strip()[:MAX_EMAIL_TEXT_CHARS]


def extract_readable_text_from_raw_email(raw_email: str) -> str:
    if not raw_email:
        return ""

    text = raw_email.replace("\r\n", "\n")
    chunks: list[str] = []
    for wanted in ("text/plain", "text/html"):
        for block in re.split(r"\n--[^\n]*\n", text):
            header_end = block.find("\n\n")
            if header_end < 0:
                continue
            headers = parse_header_block(block[:header_end])
            content_type = headers.get("content-type", "").lower()
            if not content_type.startswith(wanted):
                continue
            if "attachment" in headers.get("content-disposition", "").lower():
                continue
            payload = block[header_end + 2 :]
            decoded = _decode_transfer_body(payload, headers.get("content-transfer-encoding", ""))
            body = (decoded or b"").decode("utf-8", errors="replace")
            if wanted == "text/html":
                body = strip_html(body)
            if body.strip():
                chunks.append(body)
        if chunks:
            return normalize_email_text("\n".join(chunks))

    fallback = re.sub(r"(?im)^content-[^\n]*$", " ", text)
    fallback = re.sub(r"(?m)^[A-Za-z0-9+/=]{80,}$", " ", fallback)
    fallback = re.sub(r"(?m)^--[^\n]*$", " ", fallback)
    return normalize_email_text(fallback)


def extract_readable_text(envelope: InboundEnvelope) -> str:
    """Best readable body text for an envelope: plain text, then HTML, then raw MIME."""
    plain = envelope.field_value("text", "stripped-text", "body-plain")
    if plain:
        return normalize_email_text(plain)
    markup = envelope.field_value("html", "stripped-html", "body-html")
    if markup:
        return normalize_email_text(strip_html(markup))
    return extract_readable_text_from_raw_email(envelope.fields.get("email", ""))


def dedupe_attachments(attachments: list[RawDocument]) -> list[RawDocument]:
    seen: set[str] = set()
    out: list[RawDocument] = []
    for doc in attachments:
        key = f"{doc.file_name.lower()}::{doc.size_bytes}"
        if key in seen:
            continue
        seen.add(key)
        out.append(doc)
    return out


def _stringify_field(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return json.dumps(value)


def _parse_fallback_fields(body: bytes, content_type: str) -> dict[str, str]:
    text = body.decode("utf-8", errors="replace").strip()
    if not text:
        return {}

    if "json" in content_type.lower() or text.startswith("{"):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            fields: dict[str, str] = {}
            for key, value in parsed.items():
                as_text = _stringify_field(value)
                if as_text is not None:
                    fields[str(key)] = as_text
            return fields

    fields = {}
    for key, value in parse_qsl(text, keep_blank_values=True):
        fields[key] = f"{fields[key]}, {value}" if key in fields else value
    return fields


def normalize_inbound(
    body: bytes, content_type: str | None, *, max_attachment_bytes: int | None = None
) -> InboundEnvelope:
    """
    Turn an inbound webhook payload into fields plus attachments.

    Never raises: malformed input yields whatever was recovered, possibly an
    empty envelope.
    """
    content_type = content_type or ""
    fields: dict[str, str] = {}
    attachments: list[RawDocument] = []
    try:
        if body and "multipart/" in content_type.lower():
            parsed = parse_multipart_form(
                body, content_type, max_attachment_bytes=max_attachment_bytes
            )
            fields.update(parsed.fields)
            attachments.extend(parsed.attachments)
        elif body:
            fields.update(_parse_fallback_fields(body, content_type))

        if not attachments and fields.get("email"):
            attachments.extend(
                extract_attachments_from_raw_email(
                    fields["email"], max_attachment_bytes=max_attachment_bytes
                )
            )
        if not attachments:
            attachments.extend(
                extract_attachments_from_attachment_info(
                    fields, max_attachment_bytes=max_attachment_bytes
                )
            )
    except Exception:
        log_exception(
            logger,
            "intake.normalize.failed",
            content_type=content_type[:200],
            recovered_fields=len(fields),
            recovered_attachments=len(attachments),
        )

    envelope = InboundEnvelope(fields=fields, attachments=dedupe_attachments(attachments))
    log_event(
        logger,
        "intake.normalize.done",
        field_count=len(envelope.fields),
        attachment_count=len(envelope.attachments),
    )
    return envelope
