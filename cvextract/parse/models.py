"""
Pydantic models for document layout input and the packed line corpus.

The layout models mirror what the document-layout service returns (pages,
lines with polygons, key/value pairs, detected languages). The packed models
are what the extraction prompt embeds and what the completeness audit counts.
"""

import json
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Document Layout Models (input)
# =============================================================================

class Point(BaseModel):
    x: float
    y: float


class Polygon(BaseModel):
    points: list[Point] = Field(default_factory=list)


class DocumentLine(BaseModel):
    """A single OCR/layout line."""
    text: str
    confidence: Optional[float] = None
    page: Optional[int] = None
    polygon: Optional[Polygon] = None


class DocumentPage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    page_number: int = Field(alias="pageNumber", ge=1)
    width: Optional[float] = None
    height: Optional[float] = None
    unit: Optional[str] = None          # "inch" | "pixel"
    lines: list[DocumentLine] = Field(default_factory=list)


class KeyValuePair(BaseModel):
    key: str
    value: str
    confidence: float = 1.0
    page: int = 1


class DetectedLanguage(BaseModel):
    locale: str
    confidence: Optional[float] = None


class DocumentRep(BaseModel):
    """Layout analysis result for one uploaded CV."""
    model_config = ConfigDict(populate_by_name=True)

    pages: list[DocumentPage] = Field(default_factory=list)
    key_value_pairs: list[KeyValuePair] = Field(default_factory=list, alias="keyValuePairs")
    detected_languages: list[DetectedLanguage] = Field(default_factory=list, alias="detectedLanguages")
    content: str = ""
    page_count: Optional[int] = Field(default=None, alias="pageCount")

    @property
    def total_pages(self) -> int:
        return self.page_count if self.page_count is not None else len(self.pages)


# =============================================================================
# Packed Corpus Models (output of the packer)
# =============================================================================

class PackedLine(BaseModel):
    """The atomic unit of completeness accounting."""
    model_config = ConfigDict(populate_by_name=True)

    line_id: str = Field(alias="lineId")   # p<page>_l<index> or kvp_<key>
    page: int
    text: str
    confidence: Optional[float] = None


class PackedKvp(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    line_id: str = Field(alias="lineId")
    key: str
    value: str
    page: int
    confidence: float = 1.0

    def as_line(self) -> PackedLine:
        """Re-express this pair as a synthetic corpus line."""
        return PackedLine(
            line_id=self.line_id,
            page=self.page,
            text=f"{self.key}: {self.value}",
            confidence=self.confidence,
        )


class PackedSection(BaseModel):
    name: str                # experience | education | skills | languages | certificates | profile | content
    lines: list[PackedLine] = Field(default_factory=list)


class PackedCorpus(BaseModel):
    """Token-budgeted, line-identified CV content for a single LLM call."""

    header_lines: list[PackedLine] = Field(default_factory=list)
    contact_lines: list[PackedLine] = Field(default_factory=list)
    kvp: list[PackedKvp] = Field(default_factory=list)
    sections: list[PackedSection] = Field(default_factory=list)
    detected_languages: list[str] = Field(default_factory=list)
    total_pages: int = 1
    estimated_tokens: int = 0
    token_hard_cap: int = 16000
    truncated_line_ids: list[str] = Field(default_factory=list)

    def all_lines(self) -> list[PackedLine]:
        """
        Flatten into the ordered list of distinct lines.

        Header lines, contact lines, section lines and synthetic key/value
        lines, in that order. A line that appears in several groups is kept
        once (first occurrence).
        """
        seen: set[str] = set()
        lines: list[PackedLine] = []

        candidates = list(self.header_lines) + list(self.contact_lines)
        for section in self.sections:
            candidates.extend(section.lines)
        candidates.extend(kv.as_line() for kv in self.kvp)

        for line in candidates:
            if line.line_id in seen:
                continue
            seen.add(line.line_id)
            lines.append(line)
        return lines

    def line_index(self) -> dict[str, PackedLine]:
        return {line.line_id: line for line in self.all_lines()}

    def section_of(self, line_id: str) -> Optional[str]:
        """Name of the group a line was packed into ("header", "contact", "kvp" or a section name)."""
        for line in self.header_lines:
            if line.line_id == line_id:
                return "header"
        for line in self.contact_lines:
            if line.line_id == line_id:
                return "contact"
        for section in self.sections:
            for line in section.lines:
                if line.line_id == line_id:
                    return section.name
        for kv in self.kvp:
            if kv.line_id == line_id:
                return "kvp"
        return None

    @property
    def truncated_lines_count(self) -> int:
        return len(self.truncated_line_ids)

    def to_prompt_json(self) -> str:
        """Compact JSON embedded in the user prompt."""
        payload = {
            "header_lines": [_line_payload(l) for l in self.header_lines],
            "contact_lines": [_line_payload(l) for l in self.contact_lines],
            "kvp": [
                {"lineId": kv.line_id, "key": kv.key, "value": kv.value, "page": kv.page}
                for kv in self.kvp
            ],
            "sections": [
                {"name": s.name, "lines": [_line_payload(l) for l in s.lines]}
                for s in self.sections
            ],
            "detected_languages": self.detected_languages,
            "total_pages": self.total_pages,
        }
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _line_payload(line: PackedLine) -> dict:
    return {"lineId": line.line_id, "page": line.page, "text": line.text}
