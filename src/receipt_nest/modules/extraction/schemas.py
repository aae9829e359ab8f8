from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any


class ExtractionSource(str, enum.Enum):
    STRUCTURED = "structured"
    GENERATIVE = "generative"
    MANUAL = "manual"


def clamp_confidence(value: Any) -> float:
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return 0.0
    if conf != conf:
        return 0.0
    return min(1.0, max(0.0, conf))


@dataclass(frozen=True)
class ExtractedField:
    value: Any
    confidence: float
    raw_text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"value": self.value, "confidence": self.confidence}
        if self.raw_text is not None:
            out["rawText"] = self.raw_text
        return out


@dataclass(frozen=True)
class ExtractionResult:
    source: ExtractionSource
    overall_confidence: float
    total_amount: ExtractedField | None = None
    currency: ExtractedField | None = None
    date: ExtractedField | None = None
    supplier_name: ExtractedField | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "source": self.source.value,
            "overallConfidence": self.overall_confidence,
        }
        for key, field in (
            ("totalAmount", self.total_amount),
            ("currency", self.currency),
            ("date", self.date),
            ("supplierName", self.supplier_name),
        ):
            if field is not None:
                out[key] = field.to_dict()
        return out
