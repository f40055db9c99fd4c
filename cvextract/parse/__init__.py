"""
Document layout models and the line corpus builder.

This package turns a document-layout result (or raw CV text) into the
line-identified corpus that the extraction prompt embeds and the
completeness audit reconciles against.
"""

from .models import (
    # Layout input
    Point,
    Polygon,
    DocumentLine,
    DocumentPage,
    KeyValuePair,
    DetectedLanguage,
    DocumentRep,
    # Packed corpus
    PackedLine,
    PackedKvp,
    PackedSection,
    PackedCorpus,
)

from .packer import (
    CorpusPacker,
    SECTION_HEADERS,
    RELEVANT_KVP_KEYS,
    estimate_tokens,
    detect_section_type,
    is_contact_line,
    is_relevant_key,
    line_id,
)

__all__ = [
    # Layout input
    "Point",
    "Polygon",
    "DocumentLine",
    "DocumentPage",
    "KeyValuePair",
    "DetectedLanguage",
    "DocumentRep",
    # Packed corpus
    "PackedLine",
    "PackedKvp",
    "PackedSection",
    "PackedCorpus",
    # Packer
    "CorpusPacker",
    "SECTION_HEADERS",
    "RELEVANT_KVP_KEYS",
    "estimate_tokens",
    "detect_section_type",
    "is_contact_line",
    "is_relevant_key",
    "line_id",
]
