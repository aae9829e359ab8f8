from __future__ import annotations

import base64
import json
from typing import Any

import httpx

from receipt_nest.core.config import settings
from receipt_nest.core.logging import get_logger, log_event
from receipt_nest.modules.extraction.images import prepare_image_for_model
from receipt_nest.modules.extraction.normalize import (
    build_extraction_result,
    clean_merchant_name,
    parse_positive_amount,
)
from receipt_nest.modules.extraction.schemas import ExtractionResult, ExtractionSource
from receipt_nest.modules.intake.schemas import RawDocument

logger = get_logger(__name__)

_TOTAL_KEYS: tuple[str, ...] = (
    "total",
    "totalAmount",
    "total_amount",
    "amount",
    "amount_paid",
    "grandTotal",
    "grand_total",
    "finalTotal",
    "final_total",
    "balance",
    "amountDue",
    "amount_due",
)
_MERCHANT_KEYS: tuple[str, ...] = (
    "merchant",
    "supplier",
    "vendor",
    "store",
    "businessName",
    "business_name",
    "merchantName",
    "merchant_name",
)
_DATE_KEYS: tuple[str, ...] = (
    "date",
    "transactionDate",
    "transaction_date",
    "purchaseDate",
    "purchase_date",
)
_CURRENCY_KEYS: tuple[str, ...] = ("currency", "currencyCode", "currency_code")

MODEL_CURRENCY_CONFIDENCE = 0.9

_SYSTEM_PROMPT = (
    "You extract receipt fields for an expense tracker.\n"
    "Only use information explicitly present in the input. Never guess.\n"
    "Return JSON only."
)

_FIELDS_INSTRUCTIONS = (
    "Return JSON with this exact shape:\n"
    '{"merchant": string|null, "total": number|null, "currency": string|null, '
    '"date": "YYYY-MM-DD"|null}\n\n'
    "Rules:\n"
    "- total is the final amount paid, including tax and tip.\n"
    "- currency is an ISO 4217 code when it can be determined.\n"
    "- Use null for anything that is not clearly present.\n"
)


def receipt_ai_available() -> bool:
    return bool(settings.receipt_ai_enabled and settings.openai_api_key)


def _post_chat_completion(messages: list[dict[str, Any]]) -> str | None:
    payload = {
        "model": settings.openai_model,
        "temperature": 0,
        "response_format": {"type": "json_object"},
        "messages": messages,
    }
    headers = {
        "Authorization": f"Bearer {settings.openai_api_key}",
        "Content-Type": "application/json",
    }
    url = settings.openai_base_url.rstrip("/") + "/chat/completions"
    try:
        resp = httpx.post(
            url,
            headers=headers,
            json=payload,
            timeout=float(settings.receipt_ai_timeout_seconds or 30.0),
            follow_redirects=True,
        )
        resp.raise_for_status()
    except Exception as e:
        log_event(logger, "extraction.ai.request_failed", error_type=type(e).__name__)
        return None

    try:
        msg = resp.json()["choices"][0]["message"]
        if isinstance(msg, dict) and msg.get("refusal"):
            return None
        content = msg.get("content") if isinstance(msg, dict) else None
    except Exception:
        return None

    if not isinstance(content, str) or not content.strip():
        return None
    return content


def _first_balanced_object(text: str) -> str | None:
    start = text.find("{")
    while start >= 0:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            ch = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : idx + 1]
        start = text.find("{", start + 1)
    return None


def _parse_json_object(content: str) -> dict[str, Any]:
    """
    Tolerant decode of model output.

    Tries the whole text, then the first balanced `{...}` span. Any failure
    yields an empty dict.
    """
    c = (content or "").strip()
    if not c:
        return {}
    try:
        obj = json.loads(c)
        return obj if isinstance(obj, dict) else {}
    except Exception:
        pass

    span = _first_balanced_object(c)
    if not span:
        return {}
    try:
        obj = json.loads(span)
    except Exception:
        return {}
    return obj if isinstance(obj, dict) else {}


def _pick(obj: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = obj.get(key)
        if value is not None and value != "":
            return value
    return None


def _build_result(
    obj: dict[str, Any], *, document_mode: bool, fallback_merchant: str | None = None
) -> ExtractionResult:
    total = _pick(obj, _TOTAL_KEYS)
    merchant = clean_merchant_name(_pick(obj, _MERCHANT_KEYS))
    has_total = parse_positive_amount(total) is not None
    has_merchant = merchant is not None

    if document_mode:
        overall = 0.85
        if not has_merchant:
            overall = 0.75
        if not has_total:
            overall = 0.5
    else:
        overall = 0.8
        if not has_total:
            overall = 0.55
        if not has_merchant:
            overall = 0.45

    supplier_confidence = overall
    if not has_merchant and fallback_merchant:
        merchant = fallback_merchant
        supplier_confidence = 0.5

    return build_extraction_result(
        source=ExtractionSource.GENERATIVE,
        overall_confidence=overall,
        total=total,
        total_confidence=overall,
        currency=_pick(obj, _CURRENCY_KEYS),
        currency_confidence=MODEL_CURRENCY_CONFIDENCE,
        receipt_date=_pick(obj, _DATE_KEYS),
        date_confidence=overall,
        supplier=merchant,
        supplier_confidence=supplier_confidence,
    )


def extract_document_fields(document: RawDocument) -> ExtractionResult | None:
    """Vision/document extraction for image and PDF receipts."""
    if not receipt_ai_available():
        return None

    data, mime_type = prepare_image_for_model(document.data, document.mime_type)
    encoded = base64.b64encode(data).decode("ascii")
    if mime_type == "application/pdf":
        attachment: dict[str, Any] = {
            "type": "file",
            "file": {
                "filename": document.file_name or "receipt.pdf",
                "file_data": f"data:application/pdf;base64,{encoded}",
            },
        }
    else:
        attachment = {
            "type": "image_url",
            "image_url": {"url": f"data:{mime_type};base64,{encoded}"},
        }

    content = _post_chat_completion(
        [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {
                        "type": "text",
                        "text": "Extract the fields from this receipt.\n" + _FIELDS_INSTRUCTIONS,
                    },
                    attachment,
                ],
            },
        ]
    )
    if content is None:
        return None

    obj = _parse_json_object(content)
    if not obj:
        log_event(logger, "extraction.ai.unparsable_output", mode="document")
        return None
    return _build_result(obj, document_mode=True)


def extract_email_fields(
    *,
    body: str,
    subject: str | None = None,
    sender: str | None = None,
    fallback_merchant: str | None = None,
) -> ExtractionResult | None:
    """Text-only extraction for receipts forwarded as an email body."""
    if not receipt_ai_available():
        return None

    max_chars = int(settings.receipt_ai_max_chars or 0) or 12000
    excerpt = (body or "")[:max_chars]
    if not excerpt.strip() and not subject:
        return None

    content = _post_chat_completion(
        [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    "Extract the fields from this forwarded receipt email.\n"
                    + _FIELDS_INSTRUCTIONS
                    + "\n"
                    + f"Sender: {sender or 'unknown'}\n"
                    + f"Subject: {subject or ''}\n\n"
                    + "Body:\n"
                    + excerpt
                ),
            },
        ]
    )
    if content is None:
        return None

    obj = _parse_json_object(content)
    if not obj:
        log_event(logger, "extraction.ai.unparsable_output", mode="email")
        return None
    return _build_result(obj, document_mode=False, fallback_merchant=fallback_merchant)
