from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass

from opentelemetry import trace

from engagement.core.models import ClassificationAction, ResponseMethod
from engagement.services.text_classifier import ClassifierError, ClassifierVerdict, TextClassifier

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CONFIDENCE_ACCEPT = 0.80
CONFIDENCE_CLARIFY = 0.60

_NUMERIC_REPLY = re.compile(r"^([1-5])$")


@dataclass(slots=True, frozen=True)
class ClassificationResult:
    level: int
    confidence: float
    rationale: str
    method: ResponseMethod
    action: ClassificationAction


@dataclass(slots=True, frozen=True)
class FallbackPattern:
    name: str
    pattern: re.Pattern[str]
    level: int | None
    confidence: float


# Tested in order; the first match wins. A pattern with level None takes the
# level from its first capture group.
FALLBACK_PATTERNS: tuple[FallbackPattern, ...] = (
    FallbackPattern(
        "embedded_number",
        re.compile(r"\b(?:level|a|was|it's|its)\s*([1-5])\b"),
        None,
        0.90,
    ),
    FallbackPattern(
        "total_disability",
        re.compile(
            r"\b(in bed|couldn.?t function|couldn.?t do anything|worst|debilitating|bedridden"
            r"|couldn.?t move|couldn.?t get up|terrible)\b"
        ),
        5,
        0.88,
    ),
    FallbackPattern(
        "activity_cancelled",
        re.compile(
            r"\b(cancel\w*|skipped|skip|left.{0,10}early|couldn.?t go|had to leave"
            r"|called (?:out|off|in sick)|went home|missed work|missed school)\b"
        ),
        4,
        0.85,
    ),
    FallbackPattern(
        "pushed_through",
        re.compile(r"\b(push(?:ed)?\s*through|rough|managed|got through|tough day|struggled|hard day|powered through)\b"),
        3,
        0.83,
    ),
    FallbackPattern(
        "acute_medication",
        re.compile(
            r"\b(took (?:an? )?(?:excedrin|tylenol|advil|ibuprofen|aleve|imitrex|sumatriptan|triptan"
            r"|medication|medicine|pill|med))\b"
        ),
        3,
        0.75,
    ),
    FallbackPattern(
        "present_no_impact",
        re.compile(r"\b(mild|background|there but|noticed but|slight|dull|low.?grade|lingering|nagging)\b"),
        2,
        0.82,
    ),
    FallbackPattern(
        "headache_free",
        re.compile(
            r"\b(no headache|headache.?free|didn.?t notice|clear(?:\s+head)?|perfect|amazing|great day"
            r"|good day|no complaints|feeling good|all good)\b"
        ),
        1,
        0.85,
    ),
    FallbackPattern(
        "ambiguous_positive",
        re.compile(r"\b(fine|okay|ok|not bad|decent|alright|good|so.?so|meh|not great)\b"),
        2,
        0.65,
    ),
)


def route_by_confidence(confidence: float) -> ClassificationAction:
    if confidence >= CONFIDENCE_ACCEPT:
        return ClassificationAction.ACCEPT
    if confidence >= CONFIDENCE_CLARIFY:
        return ClassificationAction.CLARIFY
    return ClassificationAction.REPROMPT


def regex_fallback(text: str) -> ClassificationResult | None:
    lowered = text.lower().strip()
    for candidate in FALLBACK_PATTERNS:
        match = candidate.pattern.search(lowered)
        if not match:
            continue
        level = candidate.level if candidate.level is not None else int(match.group(1))
        return ClassificationResult(
            level=level,
            confidence=candidate.confidence,
            rationale=f"pattern:{candidate.name}",
            method=ResponseMethod.REGEX_FALLBACK,
            action=route_by_confidence(candidate.confidence),
        )
    return None


class ClassificationPipeline:
    """Maps a free-text reply to a 1-5 level with a confidence-gated action.

    Order: exact numeric reply, then the external classifier under a hard
    timeout, then the ordered pattern fallback when the classifier fails.
    ``None`` means the reply could not be read at all.
    """

    def __init__(self, classifier: TextClassifier, *, timeout_seconds: float = 5.0) -> None:
        self.classifier = classifier
        self.timeout_seconds = timeout_seconds

    async def classify(self, text: str | None) -> ClassificationResult | None:
        if not text or not isinstance(text, str):
            return None
        cleaned = text.strip()
        if not cleaned:
            return None

        numeric = _NUMERIC_REPLY.match(cleaned)
        if numeric:
            return ClassificationResult(
                level=int(numeric.group(1)),
                confidence=1.0,
                rationale="direct numeric input",
                method=ResponseMethod.NUMERIC,
                action=ClassificationAction.ACCEPT,
            )

        with tracer.start_as_current_span("classification.external") as span:
            try:
                verdict = await asyncio.wait_for(self.classifier.classify(cleaned), timeout=self.timeout_seconds)
                confidence = _checked_confidence(verdict)
            except Exception as exc:
                span.set_attribute("classification.fallback", True)
                logger.warning("classifier failed, using pattern fallback: %s", exc or type(exc).__name__)
                return regex_fallback(cleaned)

        return ClassificationResult(
            level=verdict.level,
            confidence=confidence,
            rationale=verdict.rationale,
            method=ResponseMethod.AI_PARSED,
            action=route_by_confidence(confidence),
        )


def _checked_confidence(verdict: ClassifierVerdict) -> float:
    if not isinstance(verdict.level, int) or not 1 <= verdict.level <= 5:
        raise ClassifierError(f"level out of range: {verdict.level}")
    if not 0.0 <= verdict.confidence <= 1.0:
        raise ClassifierError(f"confidence out of range: {verdict.confidence}")
    return round(verdict.confidence, 2)
