"""
Translation between the two wire dialects of the cognitive response.

Upstream prompts have been deployed in two near-identical shapes:

- CAMEL: unmapped segments use `originalText` / `detectedCategory` /
  `lineReference`, metadata lives under `metadata` with camelCase keys.
- SNAKE: unmapped segments use `original_text` / `detected_type` /
  `line_reference`, metadata lives under `extraction_metadata` with
  snake_case keys.

Entity fields (firstName, startDate, ...) are camelCase in both. Everything
inside the package works on `CognitiveResponse`; these functions are the
only place the dialects are told apart.

Usage:
    dialect = detect_dialect(raw)
    response = CognitiveResponse.model_validate(to_canonical(raw))
    payload = to_dialect(response, dialect)
"""

import copy
from enum import Enum
from typing import Any

from .schemas import CognitiveResponse


class SchemaDialect(str, Enum):
    CAMEL = "camel"
    SNAKE = "snake"


# snake wire key -> canonical (camel) wire key
_SEGMENT_KEYS = {
    "original_text": "originalText",
    "detected_type": "detectedCategory",
    "suggested_field": "suggestedField",
    "suggested_parent": "suggestedParent",
    "line_reference": "lineReference",
}

_METADATA_KEYS = {
    "confidence_scores": "confidenceScores",
    "implicit_mappings_applied": "implicitMappingsApplied",
}


def detect_dialect(raw: Any) -> SchemaDialect:
    """
    Decide which dialect a raw response object uses.

    Unknown or ambiguous shapes are treated as CAMEL, the canonical form.
    """
    if not isinstance(raw, dict):
        return SchemaDialect.CAMEL

    if "extraction_metadata" in raw:
        return SchemaDialect.SNAKE
    if "metadata" in raw:
        return SchemaDialect.CAMEL

    segments = raw.get("unmapped_segments")
    if isinstance(segments, list):
        for segment in segments:
            if not isinstance(segment, dict):
                continue
            if any(k in segment for k in _SEGMENT_KEYS):
                return SchemaDialect.SNAKE
            if any(k in segment for k in _SEGMENT_KEYS.values()):
                return SchemaDialect.CAMEL

    return SchemaDialect.CAMEL


def _rename(obj: dict, mapping: dict[str, str]) -> dict:
    renamed = {}
    for key, value in obj.items():
        target = mapping.get(key, key)
        # Never let a translated key clobber one already in canonical form
        if target in obj and target != key:
            continue
        renamed[target] = value
    return renamed


def to_canonical(raw: Any) -> Any:
    """
    Return a copy of `raw` in the canonical (camel) dialect.

    Non-dict input is returned unchanged so the schema check reports it.
    """
    if not isinstance(raw, dict):
        return raw

    if detect_dialect(raw) is SchemaDialect.CAMEL:
        return copy.deepcopy(raw)

    data = copy.deepcopy(raw)

    segments = data.get("unmapped_segments")
    if isinstance(segments, list):
        data["unmapped_segments"] = [
            _rename(s, _SEGMENT_KEYS) if isinstance(s, dict) else s for s in segments
        ]

    if "extraction_metadata" in data:
        metadata = data.pop("extraction_metadata")
        if isinstance(metadata, dict):
            metadata = _rename(metadata, _METADATA_KEYS)
        if metadata is not None:
            data["metadata"] = metadata

    return data


def to_dialect(response: CognitiveResponse, dialect: SchemaDialect) -> dict[str, Any]:
    """Serialize a canonical response into the requested wire dialect."""
    data = response.to_dict()
    if dialect is SchemaDialect.CAMEL:
        return data

    reverse_segments = {v: k for k, v in _SEGMENT_KEYS.items()}
    reverse_metadata = {v: k for k, v in _METADATA_KEYS.items()}

    data["unmapped_segments"] = [
        _rename(s, reverse_segments) for s in data["unmapped_segments"]
    ]
    data["extraction_metadata"] = _rename(data.pop("metadata"), reverse_metadata)
    return data
