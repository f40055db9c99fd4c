"""
Cognitive response validator.

Turns a raw parsed JSON object from the LLM into either a list of structural
errors (the caller must re-prompt) or a corrected CognitiveResponse plus the
auto-corrections that were applied.

Rules, in order:
1. Structure: schema shape, evidence well-formed, reasoning above the floor
2. Name sanity: job titles / company names / malformed names are nulled and
   parked in unmapped_segments
3. Evidence presence: populated person/contact fields without evidence are
   nulled
4. Normalization: e-mail format, phone to E.164, language level to CEFR,
   canton to its code
5. Array filters: languages/skills/experience/education entries with empty
   evidence are removed

Only step 1 can fail validation; steps 2-5 always correct locally.

Usage:
    validator = ResponseValidator(ValidationConfig())
    outcome = validator.validate(raw_json)
    if outcome.valid:
        response = outcome.response
    else:
        print(outcome.errors)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import ValidationError

from ..config import ValidationConfig
from .adapter import SchemaDialect, detect_dialect, to_canonical
from .field_normalization import (
    is_valid_email,
    is_valid_person_name,
    normalize_canton,
    normalize_phone,
    parse_cefr_level,
)
from .schemas import CognitiveResponse, UnmappedCategory, UnmappedSegment

logger = logging.getLogger(__name__)

THOUGHT_FIELD = "_thought_process"
IMPLICIT_MAPPING_KEYWORDS = ["ethnicity", "herkunft", "staatsangehörigkeit", "origin"]
NAME_CORRECTION_CONFIDENCE = 0.2


@dataclass
class AutoCorrection:
    """A local fix applied to the model's answer."""
    field: str
    original: Any
    corrected: Any
    reason: str

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "original": self.original,
            "corrected": self.corrected,
            "reason": self.reason,
        }


@dataclass
class ValidationOutcome:
    """Result of validating one raw response."""
    valid: bool
    response: Optional[CognitiveResponse] = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    flagged_fields: list[str] = field(default_factory=list)
    auto_corrections: list[AutoCorrection] = field(default_factory=list)
    dialect: SchemaDialect = SchemaDialect.CAMEL

    def flag(self, *names: str) -> None:
        for name in names:
            if name not in self.flagged_fields:
                self.flagged_fields.append(name)

    def correct(self, field_path: str, original: Any, corrected: Any, reason: str) -> None:
        self.auto_corrections.append(AutoCorrection(field_path, original, corrected, reason))

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "flagged_fields": self.flagged_fields,
            "auto_corrections": [c.to_dict() for c in self.auto_corrections],
            "dialect": self.dialect.value,
            "response": self.response.to_dict() if self.response else None,
        }


def format_validation_errors(error: ValidationError) -> list[str]:
    """Render pydantic errors as 'path: message' lines."""
    messages = []
    for err in error.errors():
        path = ".".join(str(p) for p in err["loc"]) or "root"
        messages.append(f"{path}: {err['msg']}")
    return messages


def _fill_partial_defaults(data: dict) -> dict:
    """Default missing sections of a narrow (re-extraction) answer."""
    extracted = data.setdefault("extracted_data", {})
    if not isinstance(extracted, dict):
        return data
    person = extracted.setdefault("person", {})
    if isinstance(person, dict):
        person.setdefault("firstName", None)
        person.setdefault("lastName", None)
        person.setdefault("evidence", [])
    contact = extracted.setdefault("contact", {})
    if isinstance(contact, dict):
        contact.setdefault("email", None)
        contact.setdefault("phone", None)
        contact.setdefault("evidence", [])
    for key in ("languages", "skills", "experience", "education"):
        extracted.setdefault(key, [])
    data.setdefault("unmapped_segments", [])
    return data


class ResponseValidator:
    """Validates and corrects cognitive responses."""

    def __init__(self, config: Optional[ValidationConfig] = None):
        self.config = config or ValidationConfig()

    def validate(self, raw: Any, partial: bool = False) -> ValidationOutcome:
        """
        Validate a raw parsed JSON object.

        Args:
            raw: The decoded JSON object, in either wire dialect
            partial: Narrow answer (re-extraction): the reasoning floor is
                one character and missing sections default to empty

        Returns:
            ValidationOutcome; `valid` is False only for structural errors
        """
        dialect = detect_dialect(raw)
        data = to_canonical(raw)
        if partial and isinstance(data, dict):
            data = _fill_partial_defaults(data)

        outcome = self._check_structure(data, partial)
        outcome.dialect = dialect
        if not outcome.valid:
            logger.debug(f"Structural validation failed with {len(outcome.errors)} errors")
            return outcome

        self._check_name_sanity(outcome)
        self._check_evidence_presence(outcome)
        self._normalize_fields(outcome)
        self._filter_arrays(outcome)
        self._check_implicit_mappings(outcome)

        if outcome.auto_corrections:
            logger.info(f"Applied {len(outcome.auto_corrections)} auto-corrections")
        return outcome

    # -------------------------------------------------------------------------
    # Step 1: structure
    # -------------------------------------------------------------------------

    def _check_structure(self, data: Any, partial: bool) -> ValidationOutcome:
        try:
            response = CognitiveResponse.model_validate(data)
        except ValidationError as e:
            errors = format_validation_errors(e)
            if any(THOUGHT_FIELD in err for err in errors):
                errors.append(
                    "CRITICAL: _thought_process field is missing or empty. "
                    "The model MUST reason before extracting."
                )
            return ValidationOutcome(valid=False, errors=errors, flagged_fields=["all"])

        floor = 1 if partial else self.config.min_thought_length
        if len(response.thought_process.strip()) < floor:
            return ValidationOutcome(
                valid=False,
                errors=[
                    f"{THOUGHT_FIELD}: Thought process too short "
                    f"({len(response.thought_process.strip())} < {floor} characters) - "
                    "the model must reason thoroughly",
                    "CRITICAL: _thought_process field is missing or empty. "
                    "The model MUST reason before extracting.",
                ],
                flagged_fields=["all"],
            )

        return ValidationOutcome(valid=True, response=response)

    # -------------------------------------------------------------------------
    # Step 2: name sanity
    # -------------------------------------------------------------------------

    def _check_name_sanity(self, outcome: ValidationOutcome) -> None:
        response = outcome.response
        person = response.extracted_data.person
        if not (person.first_name and person.last_name):
            return
        if is_valid_person_name(person.first_name, person.last_name):
            return

        original_first = person.first_name
        original_last = person.last_name
        full_text = f"{original_first} {original_last}"
        reason = f'"{full_text}" detected as job title or invalid name pattern'

        outcome.flag("firstName", "lastName")
        outcome.correct("extracted_data.person.firstName", original_first, None, reason)
        outcome.correct("extracted_data.person.lastName", original_last, None, reason)

        # Person evidence moves to the residue bucket so the lines stay accounted
        evidence = list(person.evidence)
        first_ref = evidence[0].line_id if evidence else None
        response.unmapped_segments.append(
            UnmappedSegment(
                original_text=full_text,
                detected_category=UnmappedCategory.PERSONAL,
                reason="Extracted as name but detected as job title or invalid name. "
                       "Requires manual review.",
                confidence=NAME_CORRECTION_CONFIDENCE,
                suggested_field="person.firstName",
                line_reference=first_ref,
            )
        )
        seen = {first_ref}
        for ev in evidence[1:]:
            if ev.line_id in seen:
                continue
            seen.add(ev.line_id)
            response.unmapped_segments.append(
                UnmappedSegment(
                    original_text=ev.text or full_text,
                    detected_category=UnmappedCategory.PERSONAL,
                    reason="Evidence for a rejected name extraction",
                    confidence=NAME_CORRECTION_CONFIDENCE,
                    suggested_field="person.firstName",
                    line_reference=ev.line_id,
                )
            )

        person.first_name = None
        person.last_name = None
        person.full_name = None
        person.evidence = []
        logger.info(f"Rejected name {full_text!r}: {reason}")

    # -------------------------------------------------------------------------
    # Step 3: evidence presence
    # -------------------------------------------------------------------------

    def _check_evidence_presence(self, outcome: ValidationOutcome) -> None:
        data = outcome.response.extracted_data
        person = data.person
        if not person.evidence and (person.first_name or person.last_name or person.full_name):
            outcome.flag("firstName", "lastName")
            outcome.warnings.append("Name extracted without evidence - flagged for review")
            for attr, wire in (("first_name", "firstName"), ("last_name", "lastName"), ("full_name", "fullName")):
                value = getattr(person, attr)
                if value:
                    outcome.correct(f"extracted_data.person.{wire}", value, None, "No evidence provided")
                    setattr(person, attr, None)

        contact = data.contact
        if not contact.evidence:
            for attr, wire in (
                ("email", "email"),
                ("phone", "phone"),
                ("linkedin_url", "linkedinUrl"),
                ("xing_url", "xingUrl"),
                ("website", "website"),
            ):
                value = getattr(contact, attr)
                if value:
                    outcome.flag(wire)
                    outcome.correct(f"extracted_data.contact.{wire}", value, None, "No evidence provided")
                    setattr(contact, attr, None)

            address = contact.address
            if address is not None and not address.evidence and not address.is_empty():
                outcome.flag("address")
                outcome.correct(
                    "extracted_data.contact.address",
                    address.model_dump(by_alias=True),
                    None,
                    "No evidence provided",
                )
                contact.address = None

    # -------------------------------------------------------------------------
    # Step 4: field normalization
    # -------------------------------------------------------------------------

    def _normalize_fields(self, outcome: ValidationOutcome) -> None:
        data = outcome.response.extracted_data
        contact = data.contact

        if contact.email:
            email = contact.email.strip()
            if not is_valid_email(email):
                outcome.flag("email")
                outcome.correct("extracted_data.contact.email", contact.email, None, "Invalid email format")
                contact.email = None
            elif email != contact.email:
                contact.email = email

        if contact.phone:
            result = normalize_phone(contact.phone, self.config.phone_regions)
            if result.valid:
                if result.normalized != contact.phone:
                    outcome.correct(
                        "extracted_data.contact.phone",
                        contact.phone,
                        result.normalized,
                        f"Normalized to E.164 format (detected country: {result.region})",
                    )
                    contact.phone = result.normalized
            else:
                outcome.flag("phone")
                outcome.warnings.append(
                    f'Phone "{contact.phone}" format not recognized - kept for manual review'
                )

        if self.config.normalize_language_levels:
            for idx, language in enumerate(data.languages):
                level = parse_cefr_level(language.level)
                if level and level != language.level:
                    outcome.correct(
                        f"extracted_data.languages.{idx}.level",
                        language.level,
                        level,
                        "Normalized to CEFR level",
                    )
                    language.level = level

        address = contact.address
        if self.config.normalize_cantons and address is not None and address.canton:
            code = normalize_canton(address.canton)
            if code and code != address.canton:
                outcome.correct(
                    "extracted_data.contact.address.canton",
                    address.canton,
                    code,
                    "Normalized to canton code",
                )
                address.canton = code

    # -------------------------------------------------------------------------
    # Step 5: array filters
    # -------------------------------------------------------------------------

    def _filter_arrays(self, outcome: ValidationOutcome) -> None:
        data = outcome.response.extracted_data

        for name in ("experience", "education", "skills", "languages"):
            entries = getattr(data, name)
            kept = [entry for entry in entries if entry.evidence]
            dropped = len(entries) - len(kept)
            if not dropped:
                continue
            setattr(data, name, kept)
            if name in ("experience", "education"):
                outcome.flag(name)
            outcome.correct(
                f"extracted_data.{name}",
                f"{len(entries)} entries",
                f"{len(kept)} entries",
                f"Removed {dropped} {name} entries without evidence",
            )

    def _check_implicit_mappings(self, outcome: ValidationOutcome) -> None:
        response = outcome.response
        thought = response.thought_process.lower()
        if any(kw in thought for kw in IMPLICIT_MAPPING_KEYWORDS) and not response.extracted_data.nationality:
            outcome.warnings.append(
                "Thought process mentions ethnicity/origin but nationality is null. "
                "May need manual review."
            )


def validate_cognitive_response(
    raw: Any,
    config: Optional[ValidationConfig] = None,
    partial: bool = False,
) -> ValidationOutcome:
    """Convenience wrapper around ResponseValidator.validate."""
    return ResponseValidator(config).validate(raw, partial=partial)
