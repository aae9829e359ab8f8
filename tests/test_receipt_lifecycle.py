from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

import pytest

from receipt_nest.core.db import SessionLocal
from receipt_nest.core.storage import get_storage
from receipt_nest.modules.extraction.schemas import (
    ExtractedField,
    ExtractionResult,
    ExtractionSource,
)
from receipt_nest.modules.intake.schemas import RawDocument
from receipt_nest.modules.merchants.models import Merchant
from receipt_nest.modules.receipts import lifecycle
from receipt_nest.modules.receipts.models import Receipt, ReceiptStatus, SourceChannel
from receipt_nest.modules.receipts.service import create_receipt


def _make_receipt(user, **kwargs) -> Receipt:
    document = kwargs.pop(
        "document",
        RawDocument(
            data=b"\xff\xd8\xff receipt",
            mime_type="image/jpeg",
            file_name="r.jpg",
            source_channel=SourceChannel.UPLOAD,
        ),
    )
    with SessionLocal() as session:
        return create_receipt(session, user=user, document=document, **kwargs)


def _result(confidence: float, **fields) -> ExtractionResult:
    return ExtractionResult(
        source=ExtractionSource.GENERATIVE,
        overall_confidence=confidence,
        total_amount=ExtractedField(fields.get("total", 42.1), confidence),
        currency=ExtractedField(fields.get("currency", "USD"), 0.9),
        date=ExtractedField(fields.get("date", "2024-01-05"), confidence),
        supplier_name=ExtractedField(fields.get("merchant", "Trader Joe's #412"), confidence),
    )


def _load(receipt_id) -> Receipt:
    with SessionLocal() as session:
        return session.get(Receipt, receipt_id)


def test_confident_extraction_finalizes_receipt(user, monkeypatch):
    monkeypatch.setattr(lifecycle, "arbitrate_extraction", lambda _input: _result(0.85))
    receipt = _make_receipt(user)

    lifecycle.process_receipt(receipt_id=str(receipt.id))

    done = _load(receipt.id)
    assert done.status == ReceiptStatus.FINAL
    assert done.total_amount == Decimal("42.10")
    assert done.currency == "USD"
    assert done.receipt_date == date(2024, 1, 5)
    assert done.extraction_json["overallConfidence"] == 0.85
    assert done.merchant_json["canonicalName"] == "Trader Joe's"
    assert done.merchant_json["matchedBy"] == "ai"
    assert done.category_json["id"] == "groceries"
    assert done.notes == "Groceries purchase at Trader Joe's for $42.10 on Jan 5, 2024."
    assert done.error_message is None

    with SessionLocal() as session:
        merchant = session.get(Merchant, uuid.UUID(done.merchant_json["canonicalId"]))
        assert merchant.receipt_count == 1
        assert merchant.total_spend == Decimal("42.10")


@pytest.mark.parametrize(
    ("confidence", "expected"),
    [(0.8, ReceiptStatus.FINAL), (0.79, ReceiptStatus.NEEDS_REVIEW)],
)
def test_final_threshold(user, monkeypatch, confidence, expected):
    monkeypatch.setattr(lifecycle, "arbitrate_extraction", lambda _input: _result(confidence))
    receipt = _make_receipt(user)

    lifecycle.process_receipt(receipt_id=str(receipt.id))

    done = _load(receipt.id)
    assert done.status == expected
    assert done.merchant_json is not None
    if expected == ReceiptStatus.NEEDS_REVIEW:
        assert done.notes is None


def test_existing_notes_are_kept(user, monkeypatch):
    monkeypatch.setattr(lifecycle, "arbitrate_extraction", lambda _input: _result(0.9))
    receipt = _make_receipt(user, notes="Team lunch")

    lifecycle.process_receipt(receipt_id=str(receipt.id))

    assert _load(receipt.id).notes == "Team lunch"


def test_no_extraction_result_needs_review(user, monkeypatch):
    monkeypatch.setattr(lifecycle, "arbitrate_extraction", lambda _input: None)
    receipt = _make_receipt(user)

    lifecycle.process_receipt(receipt_id=str(receipt.id))

    done = _load(receipt.id)
    assert done.status == ReceiptStatus.NEEDS_REVIEW
    assert done.extraction_json is None
    assert done.total_amount is None


def test_processing_failure_leaves_receipt_in_needs_review(user, monkeypatch):
    def _boom(_input):
        raise RuntimeError("engine exploded")

    monkeypatch.setattr(lifecycle, "arbitrate_extraction", _boom)
    receipt = _make_receipt(user)

    lifecycle.process_receipt(receipt_id=str(receipt.id))

    done = _load(receipt.id)
    assert done.status == ReceiptStatus.NEEDS_REVIEW
    assert done.error_message == "RuntimeError: engine exploded"


def test_missing_blob_needs_review(user, monkeypatch):
    monkeypatch.setattr(lifecycle, "arbitrate_extraction", lambda _input: _result(0.9))
    receipt = _make_receipt(user)
    get_storage().delete(key=receipt.storage_key)

    lifecycle.process_receipt(receipt_id=str(receipt.id))

    done = _load(receipt.id)
    assert done.status == ReceiptStatus.NEEDS_REVIEW
    assert done.error_message.startswith("StorageError")


def test_receipt_is_processed_only_once(user, monkeypatch):
    calls: list[object] = []

    def _arbitrate(extraction_input):
        calls.append(extraction_input)
        return _result(0.9)

    monkeypatch.setattr(lifecycle, "arbitrate_extraction", _arbitrate)
    receipt = _make_receipt(user)

    lifecycle.process_receipt(receipt_id=str(receipt.id))
    lifecycle.process_receipt(receipt_id=str(receipt.id))

    assert len(calls) == 1
    assert _load(receipt.id).status == ReceiptStatus.FINAL


def test_text_fallback_email_is_extracted_as_text(user, monkeypatch):
    seen: list[object] = []

    def _arbitrate(extraction_input):
        seen.append(extraction_input)
        return None

    monkeypatch.setattr(lifecycle, "arbitrate_extraction", _arbitrate)
    receipt = _make_receipt(
        user,
        document=RawDocument(
            data=b"Subject: Trip\nFrom: receipts@uber.com\n\nTotal $9",
            mime_type="text/plain",
            file_name="Trip.txt",
        ),
        email_meta={"from": "receipts@uber.com", "subject": "Trip", "ingestMode": "text_fallback"},
    )

    lifecycle.process_receipt(receipt_id=str(receipt.id))

    extraction_input = seen[0]
    assert extraction_input.is_email_text
    assert "Total $9" in extraction_input.text
    assert extraction_input.sender == "receipts@uber.com"
    assert extraction_input.subject == "Trip"


def test_status_transitions_are_guarded():
    receipt = Receipt(status=ReceiptStatus.UPLOADED)
    lifecycle.transition_status(receipt, ReceiptStatus.PROCESSING)
    lifecycle.transition_status(receipt, ReceiptStatus.FINAL)

    with pytest.raises(lifecycle.InvalidStatusTransition):
        lifecycle.transition_status(receipt, ReceiptStatus.NEEDS_REVIEW)

    with pytest.raises(lifecycle.InvalidStatusTransition):
        lifecycle.transition_status(Receipt(status=ReceiptStatus.UPLOADED), ReceiptStatus.FINAL)


def test_auto_note_formatting():
    assert (
        lifecycle.build_auto_note(
            merchant_name="Café Nord",
            category_name="Restaurants",
            amount=Decimal("1234.5"),
            currency="EUR",
            receipt_date=date(2024, 12, 31),
        )
        == "Restaurants purchase at Café Nord for EUR 1234.50 on Dec 31, 2024."
    )
    assert (
        lifecycle.build_auto_note(merchant_name=None, category_name=None, amount=Decimal("0"))
        == "General purchase at Unknown merchant."
    )
    assert lifecycle.format_note_amount(Decimal("1234.5"), None) == "$1,234.50"

    long_note = lifecycle.build_auto_note(merchant_name="X" * 300, category_name="Other")
    assert len(long_note) == lifecycle.MAX_NOTE_LENGTH
    assert long_note.endswith("...")


def test_worker_task_reports_settled_status(user, monkeypatch):
    from receipt_nest.worker.tasks import process_receipt_task

    monkeypatch.setattr(lifecycle, "arbitrate_extraction", lambda _input: _result(0.6))
    receipt = _make_receipt(user)

    status = process_receipt_task.apply(args=[str(receipt.id)]).get()

    assert status == ReceiptStatus.NEEDS_REVIEW.value
    # Already settled: a redelivered task leaves it alone.
    assert process_receipt_task.apply(args=[str(receipt.id)]).get() == ReceiptStatus.NEEDS_REVIEW.value


def test_text_fallback_reads_email_text_beside_preview(user, monkeypatch):
    seen: list[object] = []

    def _arbitrate(extraction_input):
        seen.append(extraction_input)
        return None

    monkeypatch.setattr(lifecycle, "arbitrate_extraction", _arbitrate)
    text_key = f"users/{user.id}/receipts/1700000000000_email_body.txt"
    get_storage().put(key=text_key, body=b"Subject: Trip\n\nTotal $9", content_type="text/plain")
    receipt = _make_receipt(
        user,
        document=RawDocument(
            data=b"\x89PNG\r\n\x1a\n preview",
            mime_type="image/png",
            file_name="Trip_preview.png",
        ),
        email_meta={
            "from": "receipts@uber.com",
            "subject": "Trip",
            "ingestMode": "text_fallback",
            "textStoragePath": text_key,
            "previewGenerated": True,
        },
    )

    lifecycle.process_receipt(receipt_id=str(receipt.id))

    extraction_input = seen[0]
    assert extraction_input.is_email_text
    assert extraction_input.text == "Subject: Trip\n\nTotal $9"
    assert extraction_input.document.mime_type == "image/png"
    assert _load(receipt.id).status == ReceiptStatus.NEEDS_REVIEW
