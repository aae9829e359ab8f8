from __future__ import annotations

import enum
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from receipt_nest.modules.categories.rules import (
    FALLBACK_CATEGORY,
    CategoryRule,
    get_category_rules,
)

RULE_CONFIDENCE = 0.9
DEFAULT_CONFIDENCE = 0.5


class AssignedBy(str, enum.Enum):
    RULE = "rule"
    AI = "ai"
    USER = "user"
    DEFAULT = "default"


@dataclass(frozen=True)
class CategoryAssignment:
    id: str
    name: str
    confidence: float
    assigned_by: AssignedBy

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "confidence": self.confidence,
            "assignedBy": self.assigned_by.value,
        }


def classify_category(
    merchant_name: str, *, rules: Sequence[CategoryRule] | None = None
) -> CategoryAssignment:
    table = rules if rules is not None else get_category_rules()
    name = (merchant_name or "").lower()
    for rule in table:
        for keyword in rule.keywords:
            if keyword and keyword.lower() in name:
                return CategoryAssignment(
                    id=rule.id,
                    name=rule.name,
                    confidence=RULE_CONFIDENCE,
                    assigned_by=AssignedBy.RULE,
                )
    return CategoryAssignment(
        id=FALLBACK_CATEGORY.id,
        name=FALLBACK_CATEGORY.name,
        confidence=DEFAULT_CONFIDENCE,
        assigned_by=AssignedBy.DEFAULT,
    )
