from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from receipt_nest.core.logging import get_logger, log_event, log_exception, monotonic_ms
from receipt_nest.modules.extraction import ai, structured
from receipt_nest.modules.extraction.normalize import infer_merchant_from_sender
from receipt_nest.modules.extraction.schemas import ExtractionResult
from receipt_nest.modules.intake.files import ALLOWED_ATTACHMENT_MIME_TYPES
from receipt_nest.modules.intake.schemas import RawDocument

logger = get_logger(__name__)

LOW_CONFIDENCE_THRESHOLD = 0.5


class ExtractionError(Exception):
    pass


@dataclass(frozen=True)
class ExtractionInput:
    """One document to extract, plus email context when it is a text-only email body."""

    document: RawDocument
    text: str | None = None
    subject: str | None = None
    sender: str | None = None

    @property
    def is_email_text(self) -> bool:
        return self.text is not None

    @property
    def is_attachment(self) -> bool:
        return not self.is_email_text and self.document.mime_type in ALLOWED_ATTACHMENT_MIME_TYPES


@dataclass(frozen=True)
class ExtractionStep:
    """
    One engine in the arbitration chain.

    `should_run` sees the result chosen so far; `decide` picks between that result
    and the engine's candidate.
    """

    name: str
    run: Callable[[ExtractionInput], ExtractionResult | None]
    should_run: Callable[[ExtractionResult | None, ExtractionInput], bool]
    decide: Callable[[ExtractionResult | None, ExtractionResult | None], ExtractionResult | None]


def _run_structured(extraction_input: ExtractionInput) -> ExtractionResult | None:
    return structured.extract_structured_fields(extraction_input.document)


def _run_generative(extraction_input: ExtractionInput) -> ExtractionResult | None:
    if extraction_input.is_email_text:
        return ai.extract_email_fields(
            body=extraction_input.text or "",
            subject=extraction_input.subject,
            sender=extraction_input.sender,
            fallback_merchant=infer_merchant_from_sender(extraction_input.sender),
        )
    return ai.extract_document_fields(extraction_input.document)


def _structured_should_run(
    current: ExtractionResult | None, extraction_input: ExtractionInput
) -> bool:
    return (
        current is None
        and extraction_input.is_attachment
        and structured.structured_extractor_available()
    )


def _generative_should_run(
    current: ExtractionResult | None, extraction_input: ExtractionInput
) -> bool:
    if current is not None and current.overall_confidence >= LOW_CONFIDENCE_THRESHOLD:
        return False
    return ai.receipt_ai_available()


def _take_candidate(
    current: ExtractionResult | None, candidate: ExtractionResult | None
) -> ExtractionResult | None:
    return candidate if candidate is not None else current


def _prefer_strictly_better(
    current: ExtractionResult | None, candidate: ExtractionResult | None
) -> ExtractionResult | None:
    if candidate is None:
        return current
    if current is None:
        return candidate
    # Ties keep the earlier engine's result.
    if candidate.overall_confidence > current.overall_confidence:
        return candidate
    return current


DEFAULT_STEPS: tuple[ExtractionStep, ...] = (
    ExtractionStep(
        name="structured",
        run=_run_structured,
        should_run=_structured_should_run,
        decide=_take_candidate,
    ),
    ExtractionStep(
        name="generative",
        run=_run_generative,
        should_run=_generative_should_run,
        decide=_prefer_strictly_better,
    ),
)


def arbitrate_extraction(
    extraction_input: ExtractionInput, *, steps: Sequence[ExtractionStep] | None = None
) -> ExtractionResult | None:
    """
    Run the extraction engines in priority order and return the chosen result.

    An engine that raises is treated as having produced nothing. Returns None when
    no engine produced a result.
    """
    current: ExtractionResult | None = None
    for step in steps if steps is not None else DEFAULT_STEPS:
        if not step.should_run(current, extraction_input):
            log_event(logger, "extraction.step.skipped", step=step.name)
            continue

        start = time.monotonic()
        try:
            candidate = step.run(extraction_input)
        except Exception:
            log_exception(
                logger,
                "extraction.step.error",
                step=step.name,
                duration_ms=monotonic_ms(start),
            )
            candidate = None

        chosen = step.decide(current, candidate)
        log_event(
            logger,
            "extraction.step.finish",
            step=step.name,
            duration_ms=monotonic_ms(start),
            produced=candidate is not None,
            candidate_confidence=candidate.overall_confidence if candidate else None,
            adopted=chosen is candidate and candidate is not None,
        )
        current = chosen

    log_event(
        logger,
        "extraction.arbitration.done",
        source=current.source.value if current else None,
        overall_confidence=current.overall_confidence if current else None,
        file_name=extraction_input.document.file_name,
    )
    return current
