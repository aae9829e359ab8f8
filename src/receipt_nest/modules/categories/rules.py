from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from receipt_nest.core.config import settings
from receipt_nest.core.logging import get_logger, log_event

logger = get_logger(__name__)


@dataclass(frozen=True)
class CategoryRule:
    id: str
    name: str
    keywords: tuple[str, ...] = ()


# Order matters: the first rule with a matching keyword wins.
DEFAULT_CATEGORY_RULES: tuple[CategoryRule, ...] = (
    CategoryRule(
        "groceries",
        "Groceries",
        ("grocery", "supermarket", "food", "whole foods", "trader joe", "kroger"),
    ),
    CategoryRule(
        "restaurants",
        "Restaurants",
        ("restaurant", "cafe", "coffee", "starbucks", "mcdonalds", "uber eats"),
    ),
    CategoryRule(
        "shopping",
        "Shopping",
        ("amazon", "target", "walmart", "costco", "best buy", "retail"),
    ),
    CategoryRule(
        "transportation",
        "Transportation",
        ("gas", "fuel", "uber", "lyft", "parking", "transit"),
    ),
    CategoryRule(
        "entertainment",
        "Entertainment",
        ("movie", "netflix", "spotify", "gaming", "concert"),
    ),
    CategoryRule(
        "subscriptions",
        "Subscriptions",
        ("subscription", "monthly", "recurring", "membership"),
    ),
    CategoryRule(
        "utilities",
        "Utilities",
        ("electric", "water", "internet", "phone", "utility"),
    ),
    CategoryRule(
        "healthcare",
        "Healthcare",
        ("pharmacy", "doctor", "hospital", "cvs", "walgreens"),
    ),
    CategoryRule(
        "travel",
        "Travel",
        ("hotel", "flight", "airline", "airbnb", "booking"),
    ),
    CategoryRule("other", "Other"),
)

FALLBACK_CATEGORY = CategoryRule("other", "Other")


def load_category_rules(path: Path) -> tuple[CategoryRule, ...]:
    """
    Load an ordered category table from a JSON file.

    Expected shape: `[{"id": ..., "name": ..., "keywords": [...]}, ...]`.
    """
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError("category rules file must contain a JSON list")

    rules: list[CategoryRule] = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("id"):
            raise ValueError("each category rule needs an id")
        keywords = item.get("keywords") or []
        rules.append(
            CategoryRule(
                id=str(item["id"]),
                name=str(item.get("name") or item["id"]),
                keywords=tuple(str(k).lower() for k in keywords if str(k).strip()),
            )
        )
    return tuple(rules)


@lru_cache(maxsize=1)
def get_category_rules() -> tuple[CategoryRule, ...]:
    path = settings.category_rules_path
    if path is None:
        return DEFAULT_CATEGORY_RULES
    rules = load_category_rules(Path(path))
    log_event(logger, "category.rules.loaded", path=str(path), rule_count=len(rules))
    return rules
