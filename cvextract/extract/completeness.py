"""
Line-level completeness audit.

Reconciles every line of a packed corpus against the evidence references
and residue-bucket references of a validated response. Each line lands in
exactly one bucket, by priority:

    extracted > unmapped > ignorable > missing

so the four sets always partition the corpus. Lines are ignorable when they
are shorter than the significance threshold or match a noise pattern (blank
lines, page numbers, separators, document-title boilerplate); both are
policy, configured via CompletenessConfig.

The validator never mutates its inputs and keeps no state between calls:
re-running it on an unchanged (corpus, response) pair gives an equal report.

Usage:
    validator = CompletenessValidator()
    report = validator.validate(corpus, response)
    print(report.summary)
    if not report.is_complete:
        prompt = build_re_extraction_prompt(report.missing_lines)
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Optional

from ..config import CompletenessConfig
from ..parse.models import PackedCorpus, PackedLine
from .schemas import CognitiveResponse

logger = logging.getLogger(__name__)

RULE = "=" * 79


# =============================================================================
# Policy
# =============================================================================

@dataclass(frozen=True)
class CompletenessPolicy:
    """Compiled ignorable-line policy."""
    ignorable_patterns: tuple = ()
    min_significant_length: int = 3
    token_limit_ratio: float = 0.9375

    @classmethod
    def from_config(cls, config: Optional[CompletenessConfig] = None) -> "CompletenessPolicy":
        """Compile the configured patterns (raises re.error on a bad pattern)."""
        config = config or CompletenessConfig()
        return cls(
            ignorable_patterns=tuple(re.compile(p) for p in config.ignorable_patterns),
            min_significant_length=config.min_significant_length,
            token_limit_ratio=config.token_limit_ratio,
        )

    def is_ignorable(self, text: str) -> bool:
        stripped = text.strip()
        if len(stripped) < self.min_significant_length:
            return True
        return any(p.search(stripped) for p in self.ignorable_patterns)


# =============================================================================
# Report
# =============================================================================

@dataclass(frozen=True)
class MissingLine:
    line_id: str
    page: int
    text: str
    section: Optional[str]
    possible_reason: str

    def to_dict(self) -> dict:
        return {
            "line_id": self.line_id,
            "page": self.page,
            "text": self.text,
            "section": self.section,
            "possible_reason": self.possible_reason,
        }


@dataclass(frozen=True)
class CompletenessReport:
    """
    Derived, read-only reconciliation of a corpus against a response.

    Line id tuples are in corpus order.
    """
    total_lines: int
    significant_lines: int
    extracted_line_ids: tuple = ()
    unmapped_line_ids: tuple = ()
    ignorable_line_ids: tuple = ()
    missing_line_ids: tuple = ()
    missing_lines: tuple = ()
    unknown_line_references: tuple = ()
    completeness_percentage: int = 100
    is_complete: bool = True
    token_limit_reached: bool = False
    truncated_lines_count: int = 0
    summary: str = field(default="", compare=False)

    def to_dict(self) -> dict:
        return {
            "is_complete": self.is_complete,
            "completeness_percentage": self.completeness_percentage,
            "total_lines": self.total_lines,
            "significant_lines": self.significant_lines,
            "extracted_line_ids": list(self.extracted_line_ids),
            "unmapped_line_ids": list(self.unmapped_line_ids),
            "ignorable_line_ids": list(self.ignorable_line_ids),
            "missing_line_ids": list(self.missing_line_ids),
            "missing_lines": [m.to_dict() for m in self.missing_lines],
            "unknown_line_references": list(self.unknown_line_references),
            "token_limit_reached": self.token_limit_reached,
            "truncated_lines_count": self.truncated_lines_count,
        }


def guess_missing_reason(line: PackedLine) -> str:
    """Best guess why the model skipped a line."""
    text = line.text.strip()
    if len(text) < 5:
        return "Very short line - possibly judged irrelevant"
    if re.fullmatch(r"\d+", text):
        return "Digits only - possibly a page number"
    if re.match(r"^[•●○◦▪▫-]\s*\w", text):
        return "Bullet item - possibly part of a list"
    if line.page > 2:
        return "Late page - possibly cut off by the token limit"
    return "Unknown - the model may have overlooked this line"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# =============================================================================
# Validator
# =============================================================================

class CompletenessValidator:
    """Computes CompletenessReports."""

    def __init__(self, policy: Optional[CompletenessPolicy] = None):
        self.policy = policy or CompletenessPolicy.from_config()

    def validate(self, corpus: PackedCorpus, response: CognitiveResponse) -> CompletenessReport:
        lines = corpus.all_lines()
        corpus_ids = {line.line_id for line in lines}

        referenced_extracted = response.evidence_line_ids()
        referenced_unmapped = response.unmapped_line_ids()
        unknown = sorted((referenced_extracted | referenced_unmapped) - corpus_ids)

        extracted: list[str] = []
        unmapped: list[str] = []
        ignorable: list[str] = []
        missing: list[MissingLine] = []
        significant = 0
        accounted_significant = 0

        for line in lines:
            is_noise = self.policy.is_ignorable(line.text)
            if not is_noise:
                significant += 1

            if line.line_id in referenced_extracted:
                extracted.append(line.line_id)
            elif line.line_id in referenced_unmapped:
                unmapped.append(line.line_id)
            elif is_noise:
                ignorable.append(line.line_id)
                continue
            else:
                missing.append(
                    MissingLine(
                        line_id=line.line_id,
                        page=line.page,
                        text=line.text,
                        section=corpus.section_of(line.line_id),
                        possible_reason=guess_missing_reason(line),
                    )
                )
                continue

            if not is_noise:
                accounted_significant += 1

        if significant:
            percentage = _round_half_up(accounted_significant * 100 / significant)
        else:
            percentage = 100

        token_limit_reached = (
            corpus.estimated_tokens >= corpus.token_hard_cap * self.policy.token_limit_ratio
        )
        is_complete = not missing

        summary = build_summary(
            is_complete=is_complete,
            total=len(lines),
            extracted=len(extracted),
            unmapped=len(unmapped),
            ignored=len(ignorable),
            missing=len(missing),
            percentage=percentage,
            token_limit_reached=token_limit_reached,
            unknown=len(unknown),
        )

        return CompletenessReport(
            total_lines=len(lines),
            significant_lines=significant,
            extracted_line_ids=tuple(extracted),
            unmapped_line_ids=tuple(unmapped),
            ignorable_line_ids=tuple(ignorable),
            missing_line_ids=tuple(m.line_id for m in missing),
            missing_lines=tuple(missing),
            unknown_line_references=tuple(unknown),
            completeness_percentage=percentage,
            is_complete=is_complete,
            token_limit_reached=token_limit_reached,
            truncated_lines_count=corpus.truncated_lines_count,
            summary=summary,
        )

    def is_extraction_complete(self, corpus: PackedCorpus, response: CognitiveResponse) -> bool:
        return self.validate(corpus, response).is_complete

    def get_missing_significant_lines(
        self, corpus: PackedCorpus, response: CognitiveResponse
    ) -> list[PackedLine]:
        """Corpus lines that are neither referenced nor ignorable."""
        report = self.validate(corpus, response)
        index = corpus.line_index()
        return [index[line_id] for line_id in report.missing_line_ids]


def build_summary(
    is_complete: bool,
    total: int,
    extracted: int,
    unmapped: int,
    ignored: int,
    missing: int,
    percentage: int,
    token_limit_reached: bool,
    unknown: int = 0,
) -> str:
    """Human-readable report text."""
    lines = [
        RULE,
        "COMPLETENESS REPORT",
        RULE,
        "",
        f"Status: {'COMPLETE' if is_complete else 'INCOMPLETE'}",
        f"Completeness: {percentage}%",
        "",
        f"Input lines total: {total}",
        f"  extracted (in extracted_data):   {extracted}",
        f"  unmapped (in unmapped_segments): {unmapped}",
        f"  ignored (noise, blank, etc.):    {ignored}",
        f"  MISSING:                         {missing}",
    ]

    if unknown:
        lines.append("")
        lines.append(f"WARNING: {unknown} evidence references point to unknown line ids")

    if token_limit_reached:
        lines.append("")
        lines.append("WARNING: Token limit nearly reached - input may have been truncated")

    if not is_complete:
        lines.append("")
        lines.append(f"{missing} lines were not processed and should be reviewed manually.")

    lines.append(RULE)
    return "\n".join(lines)


def build_re_extraction_prompt(missing_lines: list) -> str:
    """
    List missing lines for a narrow follow-up extraction.

    Accepts MissingLine or PackedLine items; reasons are shown when known.
    """
    if not missing_lines:
        return ""

    parts = [
        RULE,
        "MISSING DATA DETECTED - EXTRACT THESE LINES",
        RULE,
        "",
        f"The following {len(missing_lines)} lines were overlooked in the first extraction.",
        "Analyze them NOW and either:",
        "1. Map them to a field in extracted_data (with evidence), or",
        "2. Add them to unmapped_segments (with lineReference)",
        "",
        "MISSING LINES:",
    ]
    for line in missing_lines:
        parts.append(f'[{line.line_id}] (page {line.page}): "{line.text}"')
        reason = getattr(line, "possible_reason", None)
        if reason:
            parts.append(f"  → Possible reason: {reason}")

    parts.extend([
        "",
        "YOUR TASK:",
        "1. Analyze every line in _thought_process",
        "2. Extract it or add it to unmapped_segments",
        "3. Make sure EVERY one of these lines is handled",
    ])
    return "\n".join(parts)
