"""
Confidence scoring for extracted CV fields.

Combines heterogeneous signals into a single 0.0-1.0 score and a tri-state
decision:
- Source confidence (layout/OCR confidence of the evidence lines)
- Validation pass/fail (0.3 floor when the field was flagged)
- Label proximity (value appears on its evidence line)
- Uniqueness (no competing candidates in the corpus)
- Repetition (value seen more than once, capped at 2 occurrences)
- Section match (evidence sits in the header/contact block)

`calculate_confidence` is pure: identical factors always give identical
(score, status).

Usage:
    result = calculate_confidence(default_factors())
    print(f"{result.score:.2f} -> {result.status}")
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from ..config import ConfidenceScoreConfig
from ..parse.models import PackedCorpus
from ..parse.packer import EMAIL_PATTERN, PHONE_PATTERN
from .schemas import CognitiveResponse, Evidence

logger = logging.getLogger(__name__)

VALIDATION_FAILED_SCORE = 0.3
SECTION_UNMATCHED_SCORE = 0.5
REPETITION_CAP = 2
DEFAULT_SOURCE_CONFIDENCE = 0.8


class ConfidenceStatus(str, Enum):
    AUTOFILL = "autofill"
    REVIEW = "review"
    SKIP = "skip"


@dataclass(frozen=True)
class ConfidenceFactors:
    """Signals for one extracted value."""
    source_confidence: float
    validation_pass: bool
    label_proximity: float
    uniqueness: float
    repetition_count: int
    section_match: bool


@dataclass
class ConfidenceWeights:
    """
    Weights for confidence score components.

    Weights should sum to 1.0; anything else is normalized with a warning.
    """
    source_confidence: float = 0.25
    validation_pass: float = 0.25
    label_proximity: float = 0.15
    uniqueness: float = 0.15
    repetition: float = 0.10
    section_match: float = 0.10

    def __post_init__(self):
        total = (
            self.source_confidence + self.validation_pass + self.label_proximity
            + self.uniqueness + self.repetition + self.section_match
        )
        if total <= 0:
            raise ValueError("Confidence weights must sum to a positive value")
        if abs(total - 1.0) > 0.01:
            logger.warning(f"Confidence weights sum to {total}, normalizing to 1.0")
            self.source_confidence /= total
            self.validation_pass /= total
            self.label_proximity /= total
            self.uniqueness /= total
            self.repetition /= total
            self.section_match /= total

    @classmethod
    def from_config(cls, config: ConfidenceScoreConfig) -> "ConfidenceWeights":
        return cls(
            source_confidence=config.source_confidence,
            validation_pass=config.validation_pass,
            label_proximity=config.label_proximity,
            uniqueness=config.uniqueness,
            repetition=config.repetition,
            section_match=config.section_match,
        )


@dataclass(frozen=True)
class ConfidenceThresholds:
    autofill: float = 0.90
    review: float = 0.70

    @classmethod
    def from_config(cls, config: ConfidenceScoreConfig) -> "ConfidenceThresholds":
        return cls(autofill=config.autofill_threshold, review=config.review_threshold)


@dataclass
class ConfidenceResult:
    """Score and decision for one value."""
    score: float
    status: ConfidenceStatus
    factors: ConfidenceFactors
    field_name: Optional[str] = None
    value: Optional[str] = None

    @property
    def level(self) -> str:
        return get_confidence_level(self.score)

    def to_dict(self) -> dict:
        return {
            "field_name": self.field_name,
            "value": self.value,
            "score": round(self.score, 3),
            "status": self.status.value,
            "level": self.level,
            "factors": {
                "source_confidence": self.factors.source_confidence,
                "validation_pass": self.factors.validation_pass,
                "label_proximity": self.factors.label_proximity,
                "uniqueness": self.factors.uniqueness,
                "repetition_count": self.factors.repetition_count,
                "section_match": self.factors.section_match,
            },
        }


# =============================================================================
# Scoring
# =============================================================================

def calculate_confidence(
    factors: ConfidenceFactors,
    weights: Optional[ConfidenceWeights] = None,
    thresholds: Optional[ConfidenceThresholds] = None,
) -> ConfidenceResult:
    """Weighted sum of the factors, clamped to [0, 1], plus its status."""
    w = weights or ConfidenceWeights()
    t = thresholds or ConfidenceThresholds()

    score = 0.0
    score += factors.source_confidence * w.source_confidence
    score += (1.0 if factors.validation_pass else VALIDATION_FAILED_SCORE) * w.validation_pass
    score += factors.label_proximity * w.label_proximity
    score += factors.uniqueness * w.uniqueness
    score += min(factors.repetition_count / REPETITION_CAP, 1.0) * w.repetition
    score += (1.0 if factors.section_match else SECTION_UNMATCHED_SCORE) * w.section_match

    score = min(max(score, 0.0), 1.0)

    if score >= t.autofill:
        status = ConfidenceStatus.AUTOFILL
    elif score >= t.review:
        status = ConfidenceStatus.REVIEW
    else:
        status = ConfidenceStatus.SKIP

    return ConfidenceResult(score=score, status=status, factors=factors)


def get_confidence_level(score: float) -> str:
    if score >= 0.85:
        return "high"
    if score >= 0.60:
        return "medium"
    return "low"


def default_factors() -> ConfidenceFactors:
    return ConfidenceFactors(
        source_confidence=DEFAULT_SOURCE_CONFIDENCE,
        validation_pass=True,
        label_proximity=0.8,
        uniqueness=1.0,
        repetition_count=1,
        section_match=True,
    )


# =============================================================================
# Field scoring against a corpus
# =============================================================================

# Groups where person/contact evidence is expected to come from
IDENTITY_SECTIONS = {"header", "contact", "kvp"}


def _digits(text: str) -> str:
    return re.sub(r"\D", "", text)


def _mentions(value: str, text: str, is_phone: bool) -> bool:
    if is_phone:
        value_digits = _digits(value)[-9:]
        return bool(value_digits) and value_digits in _digits(text)
    return value.strip().lower() in text.lower()


def _score_field(
    name: str,
    value: str,
    evidence: Iterable[Evidence],
    corpus: PackedCorpus,
    index: dict,
    flagged: set[str],
    competing_candidates: int,
    weights: ConfidenceWeights,
    thresholds: ConfidenceThresholds,
) -> ConfidenceResult:
    is_phone = name == "phone"
    lines = [index[e.line_id] for e in evidence if e.line_id in index]

    confidences = [l.confidence for l in lines if l.confidence is not None]
    if confidences:
        source = sum(confidences) / len(confidences)
    elif lines:
        source = DEFAULT_SOURCE_CONFIDENCE
    else:
        source = 0.5

    proximity = 1.0 if any(_mentions(value, l.text, is_phone) for l in lines) else 0.5
    repetition = sum(1 for l in index.values() if _mentions(value, l.text, is_phone))
    section_match = any(corpus.section_of(l.line_id) in IDENTITY_SECTIONS for l in lines)
    uniqueness = 1.0 / max(competing_candidates, 1)

    factors = ConfidenceFactors(
        source_confidence=round(source, 4),
        validation_pass=name not in flagged,
        label_proximity=proximity,
        uniqueness=uniqueness,
        repetition_count=repetition,
        section_match=section_match,
    )
    result = calculate_confidence(factors, weights, thresholds)
    result.field_name = name
    result.value = value
    return result


def score_response_fields(
    corpus: PackedCorpus,
    response: CognitiveResponse,
    flagged_fields: Iterable[str] = (),
    weights: Optional[ConfidenceWeights] = None,
    thresholds: Optional[ConfidenceThresholds] = None,
) -> dict[str, ConfidenceResult]:
    """
    Score the populated person/contact scalars of a validated response.

    Returns:
        Mapping of wire field name (firstName, email, ...) to its result
    """
    weights = weights or ConfidenceWeights()
    thresholds = thresholds or ConfidenceThresholds()
    flagged = set(flagged_fields)
    index = corpus.line_index()
    data = response.extracted_data

    emails = {m.group(0).lower() for l in index.values() for m in EMAIL_PATTERN.finditer(l.text)}
    phones = {_digits(m.group(0))[-9:] for l in index.values() for m in PHONE_PATTERN.finditer(l.text)}

    candidates = [
        ("firstName", data.person.first_name, data.person.evidence, 1),
        ("lastName", data.person.last_name, data.person.evidence, 1),
        ("email", data.contact.email, data.contact.evidence, len(emails)),
        ("phone", data.contact.phone, data.contact.evidence, len(phones)),
        ("linkedinUrl", data.contact.linkedin_url, data.contact.evidence, 1),
        ("xingUrl", data.contact.xing_url, data.contact.evidence, 1),
        ("website", data.contact.website, data.contact.evidence, 1),
    ]

    results: dict[str, ConfidenceResult] = {}
    for name, value, evidence, competing in candidates:
        if not value:
            continue
        results[name] = _score_field(
            name, value, evidence, corpus, index, flagged, competing, weights, thresholds
        )
    return results
