"""
Merge a re-extraction answer into the primary response.

Merging only ever adds: values already present in the primary response are
kept, unset scalars are back-filled, and list entries are appended when their
identity key is new. Neither input is mutated.

Usage:
    merged = merge_responses(original, re_extracted)
"""

import logging
from typing import Callable, Optional

from .schemas import CognitiveResponse

logger = logging.getLogger(__name__)

RE_EXTRACTION_MARKER = "\n\n[RE-EXTRACTION]\n"
RE_EXTRACTION_WARNING = "Re-extraction was performed to capture missing data"

PERSON_SCALARS = ("first_name", "last_name", "full_name")
CONTACT_SCALARS = ("email", "phone", "linkedin_url", "xing_url", "website")
ADDRESS_SCALARS = ("street", "postal_code", "city", "canton", "country")
TOP_LEVEL_SCALARS = ("nationality", "birthdate", "work_permit", "drivers_license")


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def _extend_unique(target: list, additions: list, key: Callable) -> int:
    """Append items whose key is not yet present. Returns how many were added."""
    seen = {key(item) for item in target}
    added = 0
    for item in additions:
        k = key(item)
        if k in seen:
            continue
        seen.add(k)
        target.append(item)
        added += 1
    return added


def _extend_entries(target: list, additions: list, key: Callable) -> int:
    """
    Like _extend_unique for evidence-bearing entries.

    A duplicate entry is not appended, but its evidence lines are added to
    the existing entry so they stay accounted for.
    """
    by_key = {key(item): item for item in target}
    added = 0
    for item in additions:
        existing = by_key.get(key(item))
        if existing is None:
            by_key[key(item)] = item
            target.append(item)
            added += 1
            continue
        _extend_unique(existing.evidence, item.evidence, key=lambda e: e.line_id)
    return added


def _fill_scalars(target, source, names) -> list[str]:
    filled = []
    for name in names:
        if getattr(target, name) is None and getattr(source, name) is not None:
            setattr(target, name, getattr(source, name))
            filled.append(name)
    return filled


def merge_responses(original: CognitiveResponse, re_extracted: CognitiveResponse) -> CognitiveResponse:
    """
    Return a new response that is the union of both answers.

    - thought processes are concatenated behind a [RE-EXTRACTION] marker
    - unmapped segments are de-duplicated by line reference
    - unset person/contact/personal scalars are filled from the re-extraction
    - person, contact and address evidence is unioned by line id, even when
      no scalar was filled
    - list entries are de-duplicated by their natural key, keeping the
      duplicate's evidence lines
    """
    merged = original.model_copy(deep=True)
    extra = re_extracted.model_copy(deep=True)
    data = merged.extracted_data
    new = extra.extracted_data

    if extra.thought_process.strip():
        merged.thought_process = f"{merged.thought_process}{RE_EXTRACTION_MARKER}{extra.thought_process}"

    # Residue bucket: segments without a line reference are always kept
    referenced = {s.line_reference for s in merged.unmapped_segments if s.line_reference}
    for segment in extra.unmapped_segments:
        if segment.line_reference and segment.line_reference in referenced:
            continue
        if segment.line_reference:
            referenced.add(segment.line_reference)
        merged.unmapped_segments.append(segment)

    filled = _fill_scalars(data.person, new.person, PERSON_SCALARS)
    _extend_unique(data.person.evidence, new.person.evidence, key=lambda e: e.line_id)

    filled_contact = _fill_scalars(data.contact, new.contact, CONTACT_SCALARS)
    if data.contact.address is None and new.contact.address is not None:
        data.contact.address = new.contact.address
        filled_contact.append("address")
    elif data.contact.address is not None and new.contact.address is not None:
        _fill_scalars(data.contact.address, new.contact.address, ADDRESS_SCALARS)
        _extend_unique(
            data.contact.address.evidence, new.contact.address.evidence, key=lambda e: e.line_id
        )
    _extend_unique(data.contact.evidence, new.contact.evidence, key=lambda e: e.line_id)
    filled += filled_contact

    filled += _fill_scalars(data, new, TOP_LEVEL_SCALARS)

    added = 0
    added += _extend_entries(data.languages, new.languages, key=lambda x: _norm(x.name))
    added += _extend_entries(data.skills, new.skills, key=lambda x: _norm(x.name))
    added += _extend_entries(
        data.experience, new.experience, key=lambda x: (_norm(x.company), _norm(x.title))
    )
    added += _extend_entries(
        data.education, new.education, key=lambda x: (_norm(x.institution), _norm(x.degree))
    )

    for warning in extra.metadata.warnings:
        if warning not in merged.metadata.warnings:
            merged.metadata.warnings.append(warning)
    for mapping in extra.metadata.implicit_mappings_applied:
        if mapping not in merged.metadata.implicit_mappings_applied:
            merged.metadata.implicit_mappings_applied.append(mapping)
    if RE_EXTRACTION_WARNING not in merged.metadata.warnings:
        merged.metadata.warnings.append(RE_EXTRACTION_WARNING)

    logger.info(
        f"Merged re-extraction: {len(filled)} fields filled, {added} entries added, "
        f"{len(merged.unmapped_segments) - len(original.unmapped_segments)} segments added"
    )
    return merged
