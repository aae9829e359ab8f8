from __future__ import annotations

import base64
from dataclasses import replace
from typing import Any

import httpx

from receipt_nest.core.config import settings
from receipt_nest.core.logging import get_logger, log_event
from receipt_nest.modules.extraction.normalize import build_extraction_result
from receipt_nest.modules.extraction.schemas import (
    ExtractionResult,
    ExtractionSource,
    clamp_confidence,
)
from receipt_nest.modules.intake.schemas import RawDocument

logger = get_logger(__name__)

_DATE_ENTITY_TYPES: tuple[str, ...] = ("receipt_date", "invoice_date", "purchase_date")


def structured_extractor_available() -> bool:
    return bool(settings.structured_extractor_url)


def extract_structured_fields(document: RawDocument) -> ExtractionResult | None:
    """
    Run the entity-extraction service over one document.

    Returns None when the service is not configured, fails, or finds none of the
    receipt entities.
    """
    if not structured_extractor_available():
        return None

    payload = {
        "rawDocument": {
            "content": base64.b64encode(document.data).decode("ascii"),
            "mimeType": document.mime_type,
        }
    }
    headers = {"Content-Type": "application/json"}
    if settings.structured_extractor_api_key:
        headers["Authorization"] = f"Bearer {settings.structured_extractor_api_key}"

    try:
        resp = httpx.post(
            str(settings.structured_extractor_url),
            headers=headers,
            json=payload,
            timeout=float(settings.structured_extractor_timeout_seconds or 30.0),
            follow_redirects=True,
        )
        resp.raise_for_status()
        raw = resp.json()
    except Exception as e:
        log_event(
            logger,
            "extraction.structured.request_failed",
            error_type=type(e).__name__,
            file_name=document.file_name,
        )
        return None

    entities = (raw.get("document") or {}).get("entities") if isinstance(raw, dict) else None
    if not isinstance(entities, list):
        return None
    return parse_structured_entities(entities)


def _entity_value(entity: dict[str, Any]) -> Any:
    normalized = entity.get("normalizedValue")
    if isinstance(normalized, dict):
        text = normalized.get("text")
        if text:
            return text
        money = normalized.get("moneyValue")
        if isinstance(money, dict):
            units = money.get("units") or 0
            nanos = money.get("nanos") or 0
            try:
                return float(units) + float(nanos) / 1e9
            except (TypeError, ValueError):
                pass
    elif isinstance(normalized, str) and normalized:
        return normalized
    return entity.get("mentionText")


def parse_structured_entities(entities: list[Any]) -> ExtractionResult | None:
    found: dict[str, tuple[Any, float, str | None]] = {}
    for entity in entities:
        if not isinstance(entity, dict):
            continue
        kind = str(entity.get("type") or "").lower()
        if kind in _DATE_ENTITY_TYPES:
            kind = "date"
        if kind not in {"total_amount", "currency", "date", "supplier_name"} or kind in found:
            continue
        mention = entity.get("mentionText")
        found[kind] = (
            _entity_value(entity),
            clamp_confidence(entity.get("confidence")),
            mention if isinstance(mention, str) else None,
        )

    missing: tuple[Any, float, str | None] = (None, 0.0, None)
    total = found.get("total_amount", missing)
    currency = found.get("currency", missing)
    receipt_date = found.get("date", missing)
    supplier = found.get("supplier_name", missing)

    result = build_extraction_result(
        source=ExtractionSource.STRUCTURED,
        overall_confidence=0.0,
        total=total[0],
        total_confidence=total[1],
        currency=currency[0],
        currency_confidence=currency[1],
        receipt_date=receipt_date[0],
        date_confidence=receipt_date[1],
        supplier=supplier[0],
        supplier_confidence=supplier[1],
        raw_texts={
            key: text
            for key, text in (
                ("total", total[2]),
                ("currency", currency[2]),
                ("date", receipt_date[2]),
                ("supplier", supplier[2]),
            )
            if text
        },
    )

    # The defaulted currency is not an engine observation and stays out of the mean.
    observed = [
        f.confidence
        for f in (result.total_amount, result.date, result.supplier_name)
        if f is not None
    ]
    if result.currency is not None and "currency" in found:
        observed.append(result.currency.confidence)
    if not observed:
        return None

    return replace(result, overall_confidence=clamp_confidence(sum(observed) / len(observed)))
