from __future__ import annotations

import math
import re
from datetime import date, datetime
from email.utils import parsedate_to_datetime
from typing import Any

from receipt_nest.core.currencies import normalize_currency
from receipt_nest.modules.extraction.schemas import (
    ExtractedField,
    ExtractionResult,
    ExtractionSource,
    clamp_confidence,
)

DEFAULT_CURRENCY = "USD"
DEFAULT_CURRENCY_CONFIDENCE = 0.5

_AMOUNT_STRIP_RE = re.compile(r"[^0-9.\-]")
_STORE_NUMBER_RE = re.compile(r"#\s*\d+")
_WHITESPACE_RE = re.compile(r"\s+")

_PLACEHOLDER_VALUES: frozenset[str] = frozenset({"null", "unknown", "n/a", "none"})

_DATE_FORMATS: tuple[str, ...] = (
    "%d %b %Y",
    "%d %B %Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%b %d %Y",
    "%B %d %Y",
    "%d-%b-%Y",
    "%a, %d %b %Y",
    "%A, %B %d, %Y",
)

# Ordered: month-first forms before year-first forms.
_NUMERIC_DATE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})"),
    re.compile(r"(\d{1,2})-(\d{1,2})-(\d{4})"),
    re.compile(r"(\d{4})/(\d{1,2})/(\d{1,2})"),
    re.compile(r"(\d{4})-(\d{1,2})-(\d{1,2})"),
)

_SKIPPED_SENDER_LABELS: frozenset[str] = frozenset(
    {"mail", "email", "notifications", "notification", "no-reply", "noreply"}
)


def parse_positive_amount(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        cleaned = _AMOUNT_STRIP_RE.sub("", str(value))
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


def _parse_generic_date(raw: str) -> date | None:
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    try:
        return parsedate_to_datetime(raw).date()
    except (TypeError, ValueError, IndexError):
        return None


def parse_receipt_date(value: Any) -> date | None:
    """
    Parse a receipt date from free-form input.

    A generic parse is tried first, then the numeric patterns in order. The
    year-first reading is used only when the first group exceeds 1000; otherwise
    the date is read month-first. Impossible dates are dropped.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw or raw.lower() in _PLACEHOLDER_VALUES:
        return None

    parsed = _parse_generic_date(raw)
    if parsed:
        return parsed

    for pattern in _NUMERIC_DATE_PATTERNS:
        match = pattern.search(raw)
        if not match:
            continue
        a, b, c = (int(g) for g in match.groups())
        try:
            if a > 1000:
                return date(a, b, c)
            return date(c, a, b)
        except ValueError:
            continue
    return None


def clean_merchant_name(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw or raw.lower() in _PLACEHOLDER_VALUES:
        return None
    cleaned = _WHITESPACE_RE.sub(" ", _STORE_NUMBER_RE.sub("", raw)).strip()
    return cleaned or None


def infer_merchant_from_sender(sender: str | None) -> str | None:
    """Guess a merchant from the sender's domain, e.g. `receipts@mail.uber.com` -> `Uber`."""
    if not sender:
        return None
    match = re.search(r"@([a-z0-9.-]+)", sender.lower())
    if not match:
        return None
    labels = [p for p in match.group(1).split(".") if p]
    if len(labels) < 2:
        return None
    for label in labels[:-1]:
        if label in _SKIPPED_SENDER_LABELS:
            continue
        words = [w for w in re.split(r"[-_]+", label) if w]
        if words:
            return " ".join(w[:1].upper() + w[1:] for w in words)
    return None


def build_extraction_result(
    *,
    source: ExtractionSource,
    overall_confidence: float,
    total: Any = None,
    total_confidence: float = 0.0,
    currency: Any = None,
    currency_confidence: float = 0.0,
    receipt_date: Any = None,
    date_confidence: float = 0.0,
    supplier: Any = None,
    supplier_confidence: float = 0.0,
    raw_texts: dict[str, str] | None = None,
) -> ExtractionResult:
    """Apply the shared amount/currency/date/merchant rules to engine output."""
    raw_texts = raw_texts or {}

    amount = parse_positive_amount(total)
    total_field = (
        ExtractedField(
            value=round(amount, 2),
            confidence=clamp_confidence(total_confidence),
            raw_text=raw_texts.get("total"),
        )
        if amount is not None
        else None
    )

    currency_code = normalize_currency(currency) if isinstance(currency, str) else None
    currency_field: ExtractedField | None = None
    if currency_code:
        currency_field = ExtractedField(
            value=currency_code,
            confidence=clamp_confidence(currency_confidence),
            raw_text=raw_texts.get("currency"),
        )
    elif total_field is not None:
        currency_field = ExtractedField(
            value=DEFAULT_CURRENCY, confidence=DEFAULT_CURRENCY_CONFIDENCE
        )

    parsed_date = parse_receipt_date(receipt_date)
    date_field = (
        ExtractedField(
            value=parsed_date.isoformat(),
            confidence=clamp_confidence(date_confidence),
            raw_text=raw_texts.get("date"),
        )
        if parsed_date
        else None
    )

    merchant = clean_merchant_name(supplier)
    supplier_field = (
        ExtractedField(
            value=merchant,
            confidence=clamp_confidence(supplier_confidence),
            raw_text=raw_texts.get("supplier"),
        )
        if merchant
        else None
    )

    return ExtractionResult(
        source=source,
        overall_confidence=clamp_confidence(overall_confidence),
        total_amount=total_field,
        currency=currency_field,
        date=date_field,
        supplier_name=supplier_field,
    )
