from __future__ import annotations

import enum
import re
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from receipt_nest.core.logging import get_logger, log_event
from receipt_nest.modules.merchants.models import Merchant

logger = get_logger(__name__)

UNKNOWN_MERCHANT = "Unknown"

_TRAILING_STORE_NUMBER_RE = re.compile(r"[#\d]+$")
_WHITESPACE_RE = re.compile(r"\s+")


class MatchedBy(str, enum.Enum):
    FUZZY = "fuzzy"
    ALIAS = "alias"
    AI = "ai"
    MANUAL = "manual"


@dataclass(frozen=True)
class MerchantMatch:
    canonical_id: uuid.UUID
    canonical_name: str
    raw_name: str
    match_confidence: float
    matched_by: MatchedBy

    def to_dict(self) -> dict[str, Any]:
        return {
            "canonicalId": str(self.canonical_id),
            "canonicalName": self.canonical_name,
            "rawName": self.raw_name,
            "matchConfidence": self.match_confidence,
            "matchedBy": self.matched_by.value,
        }


def derive_canonical_name(raw_name: str) -> str:
    """`"Trader Joe's #412"` -> `"Trader Joe's"`; at most three words."""
    stripped = _TRAILING_STORE_NUMBER_RE.sub("", raw_name)
    collapsed = _WHITESPACE_RE.sub(" ", stripped).strip()
    canonical = " ".join(collapsed.split(" ")[:3]) if collapsed else ""
    return canonical or raw_name.strip() or raw_name


def list_user_merchants(session: Session, *, user_id: uuid.UUID) -> list[Merchant]:
    return list(
        session.scalars(
            select(Merchant).where(Merchant.user_id == user_id).order_by(Merchant.created_at)
        )
    )


def _find_exact(merchants: list[Merchant], names: set[str]) -> Merchant | None:
    for merchant in merchants:
        for alias in merchant.aliases or []:
            if str(alias).lower() in names:
                return merchant
    return None


def _find_fuzzy(merchants: list[Merchant], canonical_lower: str) -> Merchant | None:
    for merchant in merchants:
        for alias in merchant.aliases or []:
            alias_lower = str(alias).lower()
            if not alias_lower or not canonical_lower:
                continue
            if alias_lower in canonical_lower or canonical_lower in alias_lower:
                return merchant
    return None


def resolve_merchant(
    session: Session,
    *,
    user_id: uuid.UUID,
    raw_name: str | None,
    confidence: float = 0.0,
) -> MerchantMatch:
    """
    Map a raw supplier string to one of the user's merchants, creating it if needed.

    Matching is a linear scan over the user's merchants: exact alias match first,
    then substring containment either way. The new merchant is flushed, not committed.
    """
    raw = (raw_name or "").strip() or UNKNOWN_MERCHANT
    canonical = derive_canonical_name(raw)
    merchants = list_user_merchants(session, user_id=user_id)

    exact = _find_exact(merchants, {raw.lower(), canonical.lower()})
    if exact is not None:
        return MerchantMatch(
            canonical_id=exact.id,
            canonical_name=exact.canonical_name,
            raw_name=raw,
            match_confidence=1.0,
            matched_by=MatchedBy.ALIAS,
        )

    fuzzy = _find_fuzzy(merchants, canonical.lower())
    if fuzzy is not None:
        return MerchantMatch(
            canonical_id=fuzzy.id,
            canonical_name=fuzzy.canonical_name,
            raw_name=raw,
            match_confidence=0.8,
            matched_by=MatchedBy.FUZZY,
        )

    merchant = Merchant(
        user_id=user_id,
        canonical_name=canonical,
        aliases=[canonical],
        receipt_count=0,
        total_spend=Decimal("0"),
    )
    session.add(merchant)
    session.flush()
    log_event(
        logger,
        "merchant.created",
        merchant_id=str(merchant.id),
        canonical_name=canonical,
    )
    return MerchantMatch(
        canonical_id=merchant.id,
        canonical_name=canonical,
        raw_name=raw,
        match_confidence=max(0.0, min(1.0, float(confidence or 0.0))),
        matched_by=MatchedBy.AI,
    )


def record_merchant_receipt(
    session: Session,
    *,
    merchant_id: uuid.UUID,
    raw_name: str,
    amount: Decimal | None,
) -> Merchant | None:
    merchant = session.get(Merchant, merchant_id)
    if merchant is None:
        return None

    merchant.receipt_count = int(merchant.receipt_count or 0) + 1
    if amount is not None:
        merchant.total_spend = Decimal(merchant.total_spend or 0) + amount

    aliases = list(merchant.aliases or [])
    if raw_name and raw_name.lower() not in {str(a).lower() for a in aliases}:
        # JSON columns only persist on reassignment.
        merchant.aliases = [*aliases, raw_name]
    session.add(merchant)
    return merchant
