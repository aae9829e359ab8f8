from __future__ import annotations

import re

_CURRENCY_CODE_RE = re.compile(r"^[A-Z]{3}$")

_SYMBOL_TO_CODE: dict[str, str] = {
    "$": "USD",
    "US$": "USD",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
    "₹": "INR",
    "C$": "CAD",
    "A$": "AUD",
    "CHF": "CHF",
}


def normalize_currency(value: str | None) -> str | None:
    if not value:
        return None
    raw = value.strip()
    if raw in _SYMBOL_TO_CODE:
        return _SYMBOL_TO_CODE[raw]
    code = raw.upper()
    if _CURRENCY_CODE_RE.match(code):
        return code
    return None
