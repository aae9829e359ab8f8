from __future__ import annotations

from datetime import date

import pytest

from receipt_nest.core.currencies import normalize_currency
from receipt_nest.modules.extraction.normalize import (
    build_extraction_result,
    clean_merchant_name,
    infer_merchant_from_sender,
    parse_positive_amount,
    parse_receipt_date,
)
from receipt_nest.modules.extraction.schemas import ExtractionSource, clamp_confidence


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("$1,234.50", 1234.5),
        (42, 42.0),
        ("12.00 USD", 12.0),
        ("-5", None),
        (0, None),
        ("abc", None),
        (True, None),
        (float("nan"), None),
        (None, None),
    ],
)
def test_parse_positive_amount(raw, expected):
    assert parse_positive_amount(raw) == expected


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("2024-01-15", date(2024, 1, 15)),
        ("2024-01-15T10:30:00Z", date(2024, 1, 15)),
        ("Jan 5, 2024", date(2024, 1, 5)),
        ("01/15/2024", date(2024, 1, 15)),
        ("Date: 03/07/2024", date(2024, 3, 7)),
        ("2024/03/05", date(2024, 3, 5)),
        ("13/45/2024", None),
        ("null", None),
        ("", None),
        (20240115, None),
    ],
)
def test_parse_receipt_date(raw, expected):
    assert parse_receipt_date(raw) == expected


def test_clean_merchant_name():
    assert clean_merchant_name("  Trader   Joe's #412 ") == "Trader Joe's"
    assert clean_merchant_name("Unknown") is None
    assert clean_merchant_name("   ") is None
    assert clean_merchant_name(None) is None


def test_infer_merchant_from_sender():
    assert infer_merchant_from_sender("Uber Receipts <receipts@mail.uber.com>") == "Uber"
    assert infer_merchant_from_sender("noreply@shop-local.co.uk") == "Shop Local"
    assert infer_merchant_from_sender("bogus") is None
    assert infer_merchant_from_sender(None) is None


def test_normalize_currency():
    assert normalize_currency("€") == "EUR"
    assert normalize_currency(" usd ") == "USD"
    assert normalize_currency("dollars") is None
    assert normalize_currency("") is None


def test_clamp_confidence():
    assert clamp_confidence(1.7) == 1.0
    assert clamp_confidence(-0.2) == 0.0
    assert clamp_confidence("0.4") == 0.4
    assert clamp_confidence("bad") == 0.0


def test_total_without_currency_defaults_to_usd():
    result = build_extraction_result(
        source=ExtractionSource.GENERATIVE,
        overall_confidence=0.8,
        total="12.499",
        total_confidence=0.8,
    )

    assert result.total_amount.value == 12.5
    assert result.currency.value == "USD"
    assert result.currency.confidence == 0.5
    assert result.date is None
    assert result.supplier_name is None


def test_missing_total_leaves_currency_empty():
    result = build_extraction_result(
        source=ExtractionSource.STRUCTURED,
        overall_confidence=0.7,
        total="-3",
        supplier="Blue Bottle",
        supplier_confidence=0.7,
    )

    assert result.total_amount is None
    assert result.currency is None
    assert result.supplier_name.value == "Blue Bottle"


def test_result_serializes_present_fields_only():
    result = build_extraction_result(
        source=ExtractionSource.STRUCTURED,
        overall_confidence=0.9,
        total="9.99",
        total_confidence=0.95,
        currency="EUR",
        currency_confidence=0.9,
        raw_texts={"total": "9,99 €"},
    )

    assert result.to_dict() == {
        "source": "structured",
        "overallConfidence": 0.9,
        "totalAmount": {"value": 9.99, "confidence": 0.95, "rawText": "9,99 €"},
        "currency": {"value": "EUR", "confidence": 0.9},
    }
