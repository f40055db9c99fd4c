"""
Feedback / few-shot store.

Persists human corrections and unmapped-segment assignments in DuckDB and
turns them back into prompt context:

- Write path: record_correction / record_segment_assignment /
  record_successful_extraction, each updating per-field accuracy counters
  with a single atomic upsert
- Read path: get_relevant_examples ranks (1) corrections for critical fields
  by usage count, (2) corrections sharing keywords with the current CV,
  (3) built-in examples as a floor, de-duplicated by a normalized context
  hash; get_problematic_fields reports fields whose accuracy is below the
  threshold

Accuracy aggregates are cached in-process for a short TTL; every write
invalidates the cache. All state is scoped by tenant id.

Usage:
    store = FeedbackStore(FeedbackConfig(db_path="data/feedback.duckdb"))
    store.record_correction(CorrectionRecord(
        source_context="Ethnicity: Turkish",
        correct_value="Turkish",
        correct_field="nationality",
    ))
    examples = store.get_relevant_examples(cv_text)
    weak_fields = store.get_problematic_fields()
"""

import hashlib
import logging
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import duckdb
import pandas as pd

from ..config import FeedbackConfig
from .examples import (
    BUILTIN_EXAMPLES,
    FewShotExample,
    format_examples_for_prompt,
    load_examples_from_yaml,
)
from .schemas import UnmappedSegment

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE SEQUENCE IF NOT EXISTS correction_id_seq;

CREATE TABLE IF NOT EXISTS extraction_corrections (
    id BIGINT PRIMARY KEY DEFAULT nextval('correction_id_seq'),
    tenant_id VARCHAR NOT NULL,
    source_context VARCHAR NOT NULL,
    context_hash VARCHAR NOT NULL,      -- md5 of normalized context, 16 hex chars
    source_label VARCHAR,               -- label seen in the CV, e.g. "Ethnicity"
    wrong_extraction VARCHAR,
    correct_value VARCHAR NOT NULL,
    correct_field VARCHAR NOT NULL,
    reasoning VARCHAR,
    cv_hash VARCHAR,
    created_by VARCHAR,
    usage_count INTEGER DEFAULT 0,      -- times injected into a prompt
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE SEQUENCE IF NOT EXISTS assignment_id_seq;

CREATE TABLE IF NOT EXISTS segment_assignments (
    id BIGINT PRIMARY KEY DEFAULT nextval('assignment_id_seq'),
    tenant_id VARCHAR NOT NULL,
    segment_text VARCHAR NOT NULL,
    segment_category VARCHAR NOT NULL,
    assigned_field VARCHAR NOT NULL,
    assigned_value VARCHAR,
    created_by VARCHAR,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS field_metrics (
    tenant_id VARCHAR NOT NULL,
    field_name VARCHAR NOT NULL,
    total_extractions INTEGER DEFAULT 0,
    correct_extractions INTEGER DEFAULT 0,
    corrected_extractions INTEGER DEFAULT 0,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (tenant_id, field_name)
);
"""

UPSERT_FIELD_METRIC_SQL = """
INSERT INTO field_metrics
    (tenant_id, field_name, total_extractions, correct_extractions, corrected_extractions)
VALUES (?, ?, 1, ?, ?)
ON CONFLICT (tenant_id, field_name) DO UPDATE SET
    total_extractions = total_extractions + 1,
    correct_extractions = correct_extractions + EXCLUDED.correct_extractions,
    corrected_extractions = corrected_extractions + EXCLUDED.corrected_extractions,
    updated_at = CURRENT_TIMESTAMP
"""

STOP_WORDS = {
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "have", "has",
    "und", "der", "die", "das", "ein", "eine", "ist", "sind", "von", "mit",
    "für", "auf", "bei", "nach", "zu", "zur", "zum", "in", "im", "an", "am",
}

MAX_KEYWORDS = 20
SIMILARITY_KEYWORDS = 5
MAX_SUGGESTIONS = 5


# =============================================================================
# Records
# =============================================================================

@dataclass(frozen=True)
class CorrectionRecord:
    """A human correction. Immutable once written."""
    source_context: str
    correct_value: str
    correct_field: str
    source_label: Optional[str] = None
    wrong_extraction: Optional[str] = None
    reasoning: Optional[str] = None
    cv_hash: Optional[str] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class SegmentAssignment:
    """A human's manual mapping of an unmapped segment."""
    segment_text: str
    segment_category: str
    assigned_field: str
    assigned_value: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class FieldStats:
    field_name: str
    total: int
    correct: int
    corrected: int

    @property
    def accuracy(self) -> float:
        if self.total == 0:
            return 1.0
        return self.correct / self.total

    def to_dict(self) -> dict:
        return {
            "field_name": self.field_name,
            "total": self.total,
            "correct": self.correct,
            "corrected": self.corrected,
            "accuracy": round(self.accuracy, 3),
        }


@dataclass
class FieldSuggestion:
    field: str
    confidence: float
    reason: str

    def to_dict(self) -> dict:
        return {"field": self.field, "confidence": self.confidence, "reason": self.reason}


# =============================================================================
# Helpers
# =============================================================================

def hash_context(context: str) -> str:
    """Normalized context hash used for de-duplication."""
    return hashlib.md5(context.lower().strip().encode("utf-8")).hexdigest()[:16]


def extract_keywords(text: str) -> list[str]:
    """Stop-word filtered tokens longer than 3 characters (first 20)."""
    cleaned = re.sub(r"[^\w\sÄÖÜäöüß]", " ", text.lower())
    words = [w for w in cleaned.split() if len(w) > 3 and w not in STOP_WORDS]
    return words[:MAX_KEYWORDS]


def _require(value: Optional[str], name: str) -> None:
    if value is None or not str(value).strip():
        raise ValueError(f"{name} must not be empty")


# =============================================================================
# Store
# =============================================================================

class FeedbackStore:
    """DuckDB-backed corrections, assignments and field accuracy metrics."""

    def __init__(
        self,
        config: Optional[FeedbackConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or FeedbackConfig()
        self.tenant_id = self.config.tenant_id
        self.max_examples = self.config.max_examples
        self._clock = clock
        self._lock = threading.Lock()

        self._accuracy_cache: Optional[dict[str, FieldStats]] = None
        self._cache_time = 0.0

        self.builtin_examples = list(BUILTIN_EXAMPLES)
        if self.config.builtin_examples_path:
            self.builtin_examples.extend(load_examples_from_yaml(self.config.builtin_examples_path))

        db_path = self.config.db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = duckdb.connect(db_path)
        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        # DuckDB doesn't have executescript, so execute statements individually
        for stmt in SCHEMA_SQL.split(";"):
            stmt = stmt.strip()
            if stmt:
                self.conn.execute(stmt)
        logger.info(f"Feedback store initialized at {self.config.db_path}")

    def close(self):
        """Close database connection."""
        with self._lock:
            self.conn.close()

    def __enter__(self) -> "FeedbackStore":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def invalidate_cache(self) -> None:
        self._accuracy_cache = None
        self._cache_time = 0.0

    # -------------------------------------------------------------------------
    # Write path
    # -------------------------------------------------------------------------

    def record_correction(self, record: CorrectionRecord) -> int:
        """
        Persist a correction and count it against the field's accuracy.

        Returns:
            The new correction id
        """
        _require(record.source_context, "source_context")
        _require(record.correct_value, "correct_value")
        _require(record.correct_field, "correct_field")

        with self._lock:
            row = self.conn.execute(
                """
                INSERT INTO extraction_corrections
                    (tenant_id, source_context, context_hash, source_label, wrong_extraction,
                     correct_value, correct_field, reasoning, cv_hash, created_by)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                [
                    self.tenant_id,
                    record.source_context,
                    hash_context(record.source_context),
                    record.source_label,
                    record.wrong_extraction,
                    record.correct_value,
                    record.correct_field,
                    record.reasoning,
                    record.cv_hash,
                    record.user_id,
                ],
            ).fetchone()
            self._bump_metric(record.correct_field, was_correct=False)
            self.invalidate_cache()

        logger.info(f"Recorded correction for field: {record.correct_field}")
        return int(row[0])

    def batch_record_corrections(self, records: list[CorrectionRecord]) -> list[int]:
        return [self.record_correction(r) for r in records]

    def record_segment_assignment(self, assignment: SegmentAssignment) -> int:
        """Persist a manual mapping of an unmapped segment."""
        _require(assignment.segment_text, "segment_text")
        _require(assignment.assigned_field, "assigned_field")

        with self._lock:
            row = self.conn.execute(
                """
                INSERT INTO segment_assignments
                    (tenant_id, segment_text, segment_category, assigned_field, assigned_value, created_by)
                VALUES (?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                [
                    self.tenant_id,
                    assignment.segment_text,
                    assignment.segment_category,
                    assignment.assigned_field,
                    assignment.assigned_value,
                    assignment.user_id,
                ],
            ).fetchone()
            self.invalidate_cache()

        logger.info(
            f"Recorded segment assignment {assignment.segment_category} -> {assignment.assigned_field}"
        )
        return int(row[0])

    def record_successful_extraction(self, field_name: str) -> None:
        """Count an extraction that needed no correction."""
        _require(field_name, "field_name")
        with self._lock:
            self._bump_metric(field_name, was_correct=True)
            self.invalidate_cache()

    def _bump_metric(self, field_name: str, was_correct: bool) -> None:
        # Caller holds the lock
        self.conn.execute(
            UPSERT_FIELD_METRIC_SQL,
            [self.tenant_id, field_name, 1 if was_correct else 0, 0 if was_correct else 1],
        )

    # -------------------------------------------------------------------------
    # Accuracy
    # -------------------------------------------------------------------------

    def get_field_accuracies(self) -> dict[str, FieldStats]:
        """Per-field counters for this tenant (TTL-cached)."""
        now = self._clock()
        cache = self._accuracy_cache
        if cache is not None and now - self._cache_time < self.config.cache_ttl_seconds:
            return dict(cache)

        with self._lock:
            rows = self.conn.execute(
                """
                SELECT field_name, total_extractions, correct_extractions, corrected_extractions
                FROM field_metrics
                WHERE tenant_id = ?
                ORDER BY field_name
                """,
                [self.tenant_id],
            ).fetchall()

        stats = {
            name: FieldStats(name, total or 0, correct or 0, corrected or 0)
            for name, total, correct, corrected in rows
        }
        self._accuracy_cache = stats
        self._cache_time = now
        return dict(stats)

    def get_problematic_fields(self) -> list[str]:
        """Fields with enough observations and accuracy below the threshold."""
        return [
            name
            for name, stats in self.get_field_accuracies().items()
            if stats.total >= self.config.min_observations
            and stats.accuracy < self.config.accuracy_threshold
        ]

    def field_metrics_frame(self) -> pd.DataFrame:
        """Field metrics as a DataFrame for reporting."""
        with self._lock:
            df = self.conn.execute(
                """
                SELECT field_name, total_extractions, correct_extractions, corrected_extractions,
                       CASE WHEN total_extractions > 0
                            THEN correct_extractions::DOUBLE / total_extractions
                            ELSE 1.0 END AS accuracy
                FROM field_metrics
                WHERE tenant_id = ?
                ORDER BY field_name
                """,
                [self.tenant_id],
            ).fetchdf()
        return df

    # -------------------------------------------------------------------------
    # Read path (prompt injection)
    # -------------------------------------------------------------------------

    def get_relevant_examples(
        self,
        context_text: str,
        target_fields: Optional[list[str]] = None,
    ) -> list[FewShotExample]:
        """
        Few-shot examples for the next extraction call.

        Never empty when max_examples > 0: built-ins fill whatever the store
        cannot. A store error degrades to built-ins only.
        """
        limit = self.max_examples
        examples: list[FewShotExample] = []
        seen_hashes: set[str] = set()
        used_ids: list[int] = []

        def take(rows) -> None:
            for row in rows:
                if len(examples) >= limit:
                    return
                corr_id, context, wrong, correct_value, correct_field, reasoning = row
                key = hash_context(context)
                if key in seen_hashes:
                    continue
                seen_hashes.add(key)
                used_ids.append(corr_id)
                examples.append(
                    FewShotExample(
                        context=context,
                        wrong=wrong or "null/missing",
                        correct=correct_value,
                        field=correct_field,
                        explanation=reasoning or "User corrected this mapping",
                        source="stored",
                    )
                )

        try:
            fields = target_fields or list(self.config.critical_fields)
            take(self._corrections_for_fields(fields, limit * 2))
            if len(examples) < limit:
                take(self._corrections_with_similar_context(context_text, limit))
            if used_ids:
                self._increment_usage(used_ids)
        except duckdb.Error as e:
            logger.warning(f"Feedback store unavailable, using built-in examples: {e}")
            return list(self.builtin_examples[:limit])

        for ex in self.builtin_examples:
            if len(examples) >= limit:
                break
            key = hash_context(ex.context)
            if key in seen_hashes:
                continue
            seen_hashes.add(key)
            examples.append(ex)

        logger.debug(f"Selected {len(examples)} few-shot examples ({len(used_ids)} stored)")
        return examples

    def _corrections_for_fields(self, fields: list[str], limit: int) -> list[tuple]:
        if not fields:
            return []
        placeholders = ", ".join("?" for _ in fields)
        with self._lock:
            return self.conn.execute(
                f"""
                SELECT id, source_context, wrong_extraction, correct_value, correct_field, reasoning
                FROM extraction_corrections
                WHERE tenant_id = ? AND correct_field IN ({placeholders})
                ORDER BY usage_count DESC, id ASC
                LIMIT ?
                """,
                [self.tenant_id, *fields, limit],
            ).fetchall()

    def _corrections_with_similar_context(self, context_text: str, limit: int) -> list[tuple]:
        keywords = extract_keywords(context_text)[:SIMILARITY_KEYWORDS]
        if not keywords:
            return []
        clauses = " OR ".join("lower(source_context) LIKE ?" for _ in keywords)
        with self._lock:
            return self.conn.execute(
                f"""
                SELECT id, source_context, wrong_extraction, correct_value, correct_field, reasoning
                FROM extraction_corrections
                WHERE tenant_id = ? AND ({clauses})
                ORDER BY id ASC
                LIMIT ?
                """,
                [self.tenant_id, *[f"%{kw}%" for kw in keywords], limit],
            ).fetchall()

    def _increment_usage(self, ids: list[int]) -> None:
        placeholders = ", ".join("?" for _ in ids)
        with self._lock:
            self.conn.execute(
                f"UPDATE extraction_corrections SET usage_count = usage_count + 1 "
                f"WHERE tenant_id = ? AND id IN ({placeholders})",
                [self.tenant_id, *ids],
            )

    def get_suggestions_for_unmapped(self, segment: UnmappedSegment) -> list[FieldSuggestion]:
        """
        Rank target fields for an unmapped segment from past human assignments.

        Past assignments for the same category or the same text score
        min(0.9, 0.5 + 0.1 * count); the model's own suggestion is added
        when not already present.
        """
        suggestions: list[FieldSuggestion] = []
        category = segment.detected_category.value

        try:
            with self._lock:
                rows = self.conn.execute(
                    """
                    SELECT assigned_field, count(*) AS n
                    FROM segment_assignments
                    WHERE tenant_id = ?
                      AND (segment_category = ? OR lower(trim(segment_text)) = lower(trim(?)))
                    GROUP BY assigned_field
                    ORDER BY n DESC, assigned_field ASC
                    LIMIT ?
                    """,
                    [self.tenant_id, category, segment.original_text, MAX_SUGGESTIONS],
                ).fetchall()
        except duckdb.Error as e:
            logger.warning(f"Could not load past assignments: {e}")
            rows = []

        for assigned_field, count in rows:
            suggestions.append(
                FieldSuggestion(
                    field=assigned_field,
                    confidence=min(0.9, 0.5 + 0.1 * count),
                    reason=f"Assigned {count}x by users for similar segments",
                )
            )

        if segment.suggested_field and not any(s.field == segment.suggested_field for s in suggestions):
            suggestions.append(
                FieldSuggestion(
                    field=segment.suggested_field,
                    confidence=segment.confidence,
                    reason="LLM suggestion",
                )
            )

        return sorted(suggestions, key=lambda s: s.confidence, reverse=True)

    def format_examples_for_prompt(self, examples: list[FewShotExample]) -> str:
        return format_examples_for_prompt(examples)

    def stats(self) -> dict:
        """Row counts for this tenant."""
        with self._lock:
            corrections = self.conn.execute(
                "SELECT count(*) FROM extraction_corrections WHERE tenant_id = ?", [self.tenant_id]
            ).fetchone()[0]
            assignments = self.conn.execute(
                "SELECT count(*) FROM segment_assignments WHERE tenant_id = ?", [self.tenant_id]
            ).fetchone()[0]
        return {
            "tenant_id": self.tenant_id,
            "corrections": corrections,
            "segment_assignments": assignments,
            "fields_tracked": len(self.get_field_accuracies()),
        }
