from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from receipt_nest.core.config import settings
from receipt_nest.core.logging import get_logger, log_event, log_exception
from receipt_nest.core.storage import get_storage
from receipt_nest.modules.email_ingest.aliases import find_users_by_recipient_locals, is_valid_alias
from receipt_nest.modules.email_ingest.preview import render_email_preview
from receipt_nest.modules.extraction.normalize import infer_merchant_from_sender
from receipt_nest.modules.identity.models import User
from receipt_nest.modules.identity.service import can_user_accept_new_receipt
from receipt_nest.modules.intake.files import (
    is_allowed_attachment,
    normalize_attachment_mime_type,
    receipt_storage_key,
    sanitize_file_name,
)
from receipt_nest.modules.intake.mime import extract_readable_text, normalize_inbound
from receipt_nest.modules.intake.schemas import InboundEnvelope, RawDocument
from receipt_nest.modules.receipts.models import Receipt, SourceChannel
from receipt_nest.modules.receipts.service import create_receipt, enqueue_receipt_processing

logger = get_logger(__name__)

_ADDRESS_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
_MESSAGE_ID_HEADER_RE = re.compile(r"message-id:\s*([^\r\n]+)", re.IGNORECASE)


@dataclass
class IngestOutcome:
    status_code: int
    payload: dict[str, Any] = field(default_factory=dict)


def extract_recipient_addresses(fields: dict[str, str]) -> list[str]:
    found: list[str] = []

    def _collect(value: str | None) -> None:
        for match in _ADDRESS_RE.findall(value or ""):
            address = match.lower()
            if address not in found:
                found.append(address)

    _collect(fields.get("to"))
    _collect(fields.get("cc"))

    envelope = fields.get("envelope")
    if envelope:
        try:
            parsed = json.loads(envelope)
        except ValueError:
            parsed = None
        if not isinstance(parsed, dict):
            _collect(envelope)
        elif isinstance(parsed.get("to"), list):
            for address in parsed["to"]:
                _collect(str(address))
        else:
            _collect(str(parsed.get("to") or ""))
    return found


def extract_recipient_local_part(address: str, inbound_domain: str) -> str | None:
    local, sep, domain = address.lower().partition("@")
    if not sep or not local or not domain:
        return None
    if domain != inbound_domain.strip().lower():
        return None
    local = local.split("+", 1)[0].strip()
    return local if is_valid_alias(local) else None


def extract_message_id(fields: dict[str, str]) -> str | None:
    direct = fields.get("message-id") or fields.get("Message-Id") or fields.get("Message-ID")
    if direct:
        return direct.strip()
    match = _MESSAGE_ID_HEADER_RE.search(fields.get("headers") or "")
    return match.group(1).strip() if match else None


def _email_meta(fields: dict[str, str], *, ingest_mode: str) -> dict[str, Any]:
    return {
        "from": fields.get("from") or "",
        "to": fields.get("to") or "",
        "subject": fields.get("subject") or "",
        "messageId": extract_message_id(fields),
        "ingestMode": ingest_mode,
    }


def save_attachment_receipt(
    session: Session,
    *,
    user: User,
    attachment: RawDocument,
    fields: dict[str, str],
    timestamp_ms: int | None = None,
) -> Receipt:
    document = RawDocument(
        data=attachment.data,
        mime_type=normalize_attachment_mime_type(attachment.mime_type, attachment.file_name),
        file_name=sanitize_file_name(attachment.file_name),
        source_channel=SourceChannel.EMAIL,
        field_name=attachment.field_name,
    )
    receipt = create_receipt(
        session,
        user=user,
        document=document,
        email_meta=_email_meta(fields, ingest_mode="attachment"),
        timestamp_ms=timestamp_ms,
    )
    enqueue_receipt_processing(receipt)
    return receipt


def save_text_only_receipt(
    session: Session,
    *,
    user: User,
    envelope: InboundEnvelope,
    timestamp_ms: int | None = None,
) -> Receipt | None:
    """
    Store the readable email body and a rendered preview card as the receipt file.

    The text file is always kept for extraction; if the preview cannot be drawn the
    text file itself becomes the receipt file. Returns None when the email has neither
    a subject nor any readable text.
    """
    fields = envelope.fields
    subject = fields.get("subject") or ""
    sender = fields.get("from") or ""
    text = extract_readable_text(envelope)
    if not subject and not text:
        return None

    ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    payload = "\n".join(
        [
            f"Subject: {subject or '(none)'}",
            f"From: {sender or '(unknown)'}",
            "",
            text or "(empty body)",
        ]
    )
    base_name = sanitize_file_name(subject or "forwarded-email")
    text_document = RawDocument(
        data=payload.encode("utf-8"),
        mime_type="text/plain",
        file_name=f"{base_name}.txt",
        source_channel=SourceChannel.EMAIL,
    )
    text_key = receipt_storage_key(user_id=user.id, file_name="email_body.txt", timestamp_ms=ts)
    email_meta = _email_meta(fields, ingest_mode="text_fallback")
    email_meta.update(textStoragePath=text_key, previewStoragePath=None, previewGenerated=False)
    notes = f"Imported from forwarded email{': ' + subject if subject else ''}."

    try:
        preview = render_email_preview(
            subject=subject,
            sender=sender,
            merchant_name=infer_merchant_from_sender(sender),
            body_text=text,
        )
    except Exception:
        log_exception(logger, "email_ingest.preview.failed", user_id=str(user.id))
        preview = None

    if preview is None:
        receipt = create_receipt(
            session,
            user=user,
            document=text_document,
            email_meta=email_meta,
            notes=notes,
            storage_file_name="email_body.txt",
            timestamp_ms=ts,
        )
    else:
        get_storage().put(key=text_key, body=text_document.data, content_type="text/plain")
        email_meta.update(
            previewStoragePath=receipt_storage_key(
                user_id=user.id, file_name="email_preview.png", timestamp_ms=ts
            ),
            previewGenerated=True,
        )
        receipt = create_receipt(
            session,
            user=user,
            document=RawDocument(
                data=preview,
                mime_type="image/png",
                file_name=f"{base_name}_preview.png",
                source_channel=SourceChannel.EMAIL,
            ),
            email_meta=email_meta,
            notes=notes,
            storage_file_name="email_preview.png",
            timestamp_ms=ts,
        )
    enqueue_receipt_processing(receipt)
    return receipt


def ingest_inbound_email(
    session: Session, *, body: bytes, content_type: str | None, inbound_domain: str
) -> IngestOutcome:
    """Normalize one webhook payload and create receipts for every addressed user."""
    envelope = normalize_inbound(body, content_type)
    fields = envelope.fields
    recipients = extract_recipient_addresses(fields)
    log_event(
        logger,
        "email_ingest.parsed",
        content_type=(content_type or "")[:200],
        field_keys=sorted(fields)[:40],
        has_attachment_info="attachment-info" in fields,
        has_raw_email=bool(fields.get("email")),
        recipients=recipients,
        attachment_count=len(envelope.attachments),
    )

    if not recipients:
        return IngestOutcome(
            202, {"ok": True, "createdReceipts": 0, "skipped": "missing_recipients"}
        )

    locals_ = [
        local
        for local in (extract_recipient_local_part(a, inbound_domain) for a in recipients)
        if local
    ]
    if not locals_:
        return IngestOutcome(
            202, {"ok": True, "createdReceipts": 0, "skipped": "no_matching_alias"}
        )

    users = find_users_by_recipient_locals(session, local_parts=locals_)
    if not users:
        log_event(logger, "email_ingest.unknown_alias", recipient_locals=locals_)
        return IngestOutcome(202, {"ok": True, "createdReceipts": 0, "skipped": "unknown_alias"})

    allowed = [
        doc
        for doc in envelope.attachments
        if is_allowed_attachment(doc, max_bytes=settings.max_attachment_bytes)
    ][: settings.max_attachments_per_email]

    created = 0
    skipped_users: list[str] = []
    for user in users:
        if not can_user_accept_new_receipt(session, user=user):
            skipped_users.append(str(user.id))
            continue

        log_event(
            logger,
            "email_ingest.user_attachments",
            user_id=str(user.id),
            attachment_count=len(envelope.attachments),
            allowed_count=len(allowed),
        )
        base_ts = int(time.time() * 1000)
        if allowed:
            for idx, attachment in enumerate(allowed):
                save_attachment_receipt(
                    session,
                    user=user,
                    attachment=attachment,
                    fields=fields,
                    timestamp_ms=base_ts + idx,
                )
                created += 1
            continue

        if save_text_only_receipt(session, user=user, envelope=envelope, timestamp_ms=base_ts):
            created += 1

    return IngestOutcome(
        200,
        {
            "ok": True,
            "createdReceipts": created,
            "processedUsers": [str(u.id) for u in users],
            "skippedUsers": skipped_users,
        },
    )
