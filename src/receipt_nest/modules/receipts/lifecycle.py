from __future__ import annotations

import time
import uuid
from datetime import date
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from receipt_nest.core.config import settings
from receipt_nest.core.db import SessionLocal
from receipt_nest.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    receipt_context,
)
from receipt_nest.core.storage import get_storage
from receipt_nest.modules.categories.service import CategoryAssignment, classify_category
from receipt_nest.modules.extraction.schemas import ExtractionResult
from receipt_nest.modules.extraction.service import (
    ExtractionError,
    ExtractionInput,
    arbitrate_extraction,
)
from receipt_nest.modules.intake.schemas import RawDocument
from receipt_nest.modules.merchants.service import (
    MerchantMatch,
    record_merchant_receipt,
    resolve_merchant,
)
from receipt_nest.modules.receipts.models import (
    TERMINAL_STATUSES,
    Receipt,
    ReceiptStatus,
    SourceChannel,
)

logger = get_logger(__name__)

FINAL_CONFIDENCE_THRESHOLD = 0.8
MAX_NOTE_LENGTH = 160

_ALLOWED_TRANSITIONS: dict[ReceiptStatus, frozenset[ReceiptStatus]] = {
    ReceiptStatus.UPLOADED: frozenset({ReceiptStatus.PROCESSING, ReceiptStatus.NEEDS_REVIEW}),
    ReceiptStatus.PROCESSING: frozenset({ReceiptStatus.FINAL, ReceiptStatus.NEEDS_REVIEW}),
    ReceiptStatus.FINAL: frozenset(),
    ReceiptStatus.NEEDS_REVIEW: frozenset(),
}


class InvalidStatusTransition(Exception):
    def __init__(self, current: ReceiptStatus, target: ReceiptStatus) -> None:
        super().__init__(f"cannot move receipt from {current.value} to {target.value}")
        self.current = current
        self.target = target


def transition_status(receipt: Receipt, target: ReceiptStatus) -> None:
    current = receipt.status
    if target not in _ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidStatusTransition(current, target)
    receipt.status = target


def terminal_status_for(overall_confidence: float) -> ReceiptStatus:
    if overall_confidence >= FINAL_CONFIDENCE_THRESHOLD:
        return ReceiptStatus.FINAL
    return ReceiptStatus.NEEDS_REVIEW


def format_note_amount(amount: Decimal | float | None, currency: str | None) -> str | None:
    if amount is None or amount <= 0:
        return None
    code = (currency or "USD").upper()
    if code == "USD":
        return f"${Decimal(str(amount)):,.2f}"
    return f"{code} {Decimal(str(amount)):.2f}"


def format_note_date(value: date | None) -> str | None:
    if value is None:
        return None
    return f"{value.strftime('%b')} {value.day}, {value.year}"


def build_auto_note(
    *,
    merchant_name: str | None,
    category_name: str | None,
    amount: Decimal | float | None = None,
    currency: str | None = None,
    receipt_date: date | None = None,
) -> str:
    segments = [
        f"{category_name or 'General'} purchase",
        f"at {merchant_name or 'Unknown merchant'}",
    ]
    amount_text = format_note_amount(amount, currency)
    if amount_text:
        segments.append(f"for {amount_text}")
    date_text = format_note_date(receipt_date)
    if date_text:
        segments.append(f"on {date_text}")

    note = " ".join(segments) + "."
    if len(note) <= MAX_NOTE_LENGTH:
        return note
    return note[: MAX_NOTE_LENGTH - 3].rstrip() + "..."


def _try_start_processing(*, session: Session, receipt: Receipt) -> bool:
    result = session.execute(
        update(Receipt)
        .where(Receipt.id == receipt.id, Receipt.status == ReceiptStatus.UPLOADED)
        .values(status=ReceiptStatus.PROCESSING, error_message=None)
    )
    if not result.rowcount:
        return False
    session.commit()
    session.refresh(receipt)
    return True


def _load_document(receipt: Receipt) -> RawDocument:
    body = get_storage().get(key=receipt.storage_key)
    if not body or len(body) > settings.max_attachment_bytes:
        raise ExtractionError(f"stored document size out of bounds: {len(body or b'')} bytes")
    return RawDocument(
        data=body,
        mime_type=receipt.mime_type,
        file_name=receipt.original_name,
        source_channel=receipt.source_channel,
    )


def _build_extraction_input(receipt: Receipt, document: RawDocument) -> ExtractionInput:
    meta = receipt.email_json or {}
    is_text_body = (
        receipt.source_channel == SourceChannel.EMAIL
        and meta.get("ingestMode") == "text_fallback"
    )
    if not is_text_body:
        return ExtractionInput(document=document)
    # A rendered preview is the receipt file; the email text lives beside it.
    text_key = meta.get("textStoragePath")
    raw_text = get_storage().get(key=text_key) if text_key else document.data
    return ExtractionInput(
        document=document,
        text=raw_text.decode("utf-8", errors="replace"),
        subject=meta.get("subject") or None,
        sender=meta.get("from") or None,
    )


def _apply_results(
    session: Session,
    *,
    receipt: Receipt,
    result: ExtractionResult,
    merchant: MerchantMatch,
    category: CategoryAssignment,
) -> None:
    receipt.extraction_json = result.to_dict()
    receipt.merchant_json = merchant.to_dict()
    receipt.category_json = category.to_dict()

    amount: Decimal | None = None
    if result.total_amount is not None:
        amount = Decimal(str(result.total_amount.value)).quantize(Decimal("0.01"))
        receipt.total_amount = amount
    if result.currency is not None:
        receipt.currency = str(result.currency.value)
    if result.date is not None:
        receipt.receipt_date = date.fromisoformat(str(result.date.value))

    record_merchant_receipt(
        session,
        merchant_id=merchant.canonical_id,
        raw_name=merchant.raw_name,
        amount=amount,
    )

    status = terminal_status_for(result.overall_confidence)
    transition_status(receipt, status)
    if status == ReceiptStatus.FINAL and not (receipt.notes or "").strip():
        receipt.notes = build_auto_note(
            merchant_name=merchant.canonical_name,
            category_name=category.name,
            amount=amount,
            currency=receipt.currency,
            receipt_date=receipt.receipt_date,
        )


def _force_needs_review(*, receipt_id: uuid.UUID, error_message: str | None) -> None:
    with SessionLocal() as session:
        receipt = session.get(Receipt, receipt_id)
        if receipt is None:
            return
        if receipt.status not in TERMINAL_STATUSES:
            receipt.status = ReceiptStatus.NEEDS_REVIEW
        receipt.error_message = error_message
        session.add(receipt)
        session.commit()


def park_unqueued_receipt(*, receipt_id: uuid.UUID, error_message: str) -> None:
    """Move a receipt that never reached the queue straight to `needs_review`."""
    with SessionLocal() as session:
        receipt = session.get(Receipt, receipt_id)
        if receipt is None or receipt.status != ReceiptStatus.UPLOADED:
            return
        transition_status(receipt, ReceiptStatus.NEEDS_REVIEW)
        receipt.error_message = error_message
        session.add(receipt)
        session.commit()
    log_event(logger, "receipt.enqueue.parked", receipt_id=str(receipt_id))


def _run_pipeline(session: Session, *, receipt: Receipt, start: float) -> None:
    document = _load_document(receipt)
    result = arbitrate_extraction(_build_extraction_input(receipt, document))
    if result is None:
        transition_status(receipt, ReceiptStatus.NEEDS_REVIEW)
        session.add(receipt)
        session.commit()
        log_event(
            logger,
            "receipt.process.finish",
            status=receipt.status.value,
            extracted=False,
            duration_ms=monotonic_ms(start),
        )
        return

    supplier = result.supplier_name
    merchant = resolve_merchant(
        session,
        user_id=receipt.user_id,
        raw_name=str(supplier.value) if supplier else None,
        confidence=supplier.confidence if supplier else 0.0,
    )
    category = classify_category(merchant.canonical_name)
    _apply_results(session, receipt=receipt, result=result, merchant=merchant, category=category)
    session.add(receipt)
    session.commit()
    log_event(
        logger,
        "receipt.process.finish",
        status=receipt.status.value,
        extracted=True,
        source=result.source.value,
        overall_confidence=result.overall_confidence,
        merchant_id=str(merchant.canonical_id),
        matched_by=merchant.matched_by.value,
        category_id=category.id,
        duration_ms=monotonic_ms(start),
    )


def process_receipt(*, receipt_id: str) -> str | None:
    """
    Drive one receipt from `uploaded` to a terminal status and return that status.

    Runs extraction, merchant resolution and classification, then sets `final`
    when overall confidence reaches the threshold and `needs_review` otherwise.
    Any failure after the receipt is claimed leaves it in `needs_review`.
    """
    rid = uuid.UUID(str(receipt_id))
    with SessionLocal() as session:
        receipt = session.scalar(select(Receipt).where(Receipt.id == rid))
        if not receipt:
            log_event(logger, "receipt.process.missing", receipt_id=receipt_id)
            return None
        if not _try_start_processing(session=session, receipt=receipt):
            log_event(
                logger,
                "receipt.process.skipped",
                receipt_id=receipt_id,
                status=receipt.status.value,
            )
            return receipt.status.value

        with receipt_context(receipt_id=receipt_id, user_id=str(receipt.user_id)):
            start = time.monotonic()
            log_event(
                logger,
                "receipt.process.start",
                source_channel=receipt.source_channel.value,
                mime_type=receipt.mime_type,
            )
            try:
                _run_pipeline(session, receipt=receipt, start=start)
            except Exception as e:
                session.rollback()
                log_exception(logger, "receipt.process.error", duration_ms=monotonic_ms(start))
                _force_needs_review(
                    receipt_id=rid, error_message=f"{type(e).__name__}: {e}"[:2000]
                )
                return ReceiptStatus.NEEDS_REVIEW.value
            return receipt.status.value
