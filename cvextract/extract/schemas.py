"""
Pydantic schemas for the cognitive extraction response.

The LLM must answer with a single JSON object that externalizes its reasoning
(`_thought_process`) before the structured fields, cites a source line for
every extracted value (`evidence`), and parks anything it could not place in
the residue bucket (`unmapped_segments`).

These models are the canonical in-process representation. Field names are
snake_case; aliases are the camelCase wire names. The snake_case wire dialect
is translated by `adapter.to_canonical` before validation.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    """Accepts wire aliases and python names alike."""
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# EVIDENCE & RESIDUE BUCKET
# =============================================================================

class Evidence(_WireModel):
    """Pointer from an extracted value back to exactly one corpus line."""
    line_id: str = Field(alias="lineId", description="Corpus line id, e.g. 'p1_l5'")
    page: int = Field(gt=0, description="Page the line is on (1-based)")
    text: str = Field(description="The exact line text supporting the value")


class UnmappedCategory(str, Enum):
    """What kind of data an unmapped segment appears to be."""
    PERSONAL = "personal"
    CONTACT = "contact"
    DATE = "date"
    SKILL = "skill"
    CREDENTIAL = "credential"
    JOB_DETAILS = "job_details"              # orphaned job description text
    EDUCATION_DETAILS = "education_details"  # orphaned course/project text
    OTHER = "other"


class UnmappedSegment(_WireModel):
    """Text the model saw but could not confidently place."""
    original_text: str = Field(alias="originalText", min_length=1)
    detected_category: UnmappedCategory = Field(alias="detectedCategory")
    reason: str = Field(min_length=1, description="Why it could not be mapped")
    confidence: float = Field(ge=0, le=1)
    suggested_field: Optional[str] = Field(default=None, alias="suggestedField")
    suggested_parent: Optional[str] = Field(
        default=None,
        alias="suggestedParent",
        description="Job or education entry the text probably belongs to",
    )
    line_reference: Optional[str] = Field(default=None, alias="lineReference")


# =============================================================================
# EXTRACTED ENTITIES
# =============================================================================

class Person(_WireModel):
    first_name: Optional[str] = Field(alias="firstName")
    last_name: Optional[str] = Field(alias="lastName")
    full_name: Optional[str] = Field(default=None, alias="fullName")
    evidence: list[Evidence]


class Address(_WireModel):
    street: Optional[str] = None
    postal_code: Optional[str] = Field(default=None, alias="postalCode")
    city: Optional[str] = None
    canton: Optional[str] = None
    country: Optional[str] = None
    evidence: list[Evidence] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not any([self.street, self.postal_code, self.city, self.canton, self.country])


class Contact(_WireModel):
    email: Optional[str]
    phone: Optional[str]
    linkedin_url: Optional[str] = Field(default=None, alias="linkedinUrl")
    xing_url: Optional[str] = Field(default=None, alias="xingUrl")
    website: Optional[str] = None
    address: Optional[Address] = None
    evidence: list[Evidence]


class Language(_WireModel):
    name: str
    level: Optional[str] = Field(default=None, description="CEFR level (A1-C2) or native")
    evidence: list[Evidence]


class Skill(_WireModel):
    name: str
    category: Optional[str] = None
    years_of_experience: Optional[float] = Field(default=None, alias="yearsOfExperience")
    evidence: list[Evidence]


class Experience(_WireModel):
    company: Optional[str] = None
    title: Optional[str] = None
    start_date: Optional[str] = Field(default=None, alias="startDate")
    end_date: Optional[str] = Field(default=None, alias="endDate")
    location: Optional[str] = None
    description: Optional[str] = None
    responsibilities: list[str] = Field(
        default_factory=list,
        description="Every bullet/paragraph between this entry and the next, verbatim",
    )
    technologies: list[str] = Field(default_factory=list)
    evidence: list[Evidence]


class Education(_WireModel):
    institution: Optional[str] = None
    degree: Optional[str] = None
    field: Optional[str] = None
    start_date: Optional[str] = Field(default=None, alias="startDate")
    end_date: Optional[str] = Field(default=None, alias="endDate")
    evidence: list[Evidence]


class CvData(_WireModel):
    """The structured CV data."""
    person: Person
    contact: Contact

    # Implicit mapping target for Ethnicity / Herkunft / Staatsangehörigkeit / Origin
    nationality: Optional[str] = None
    birthdate: Optional[str] = None
    work_permit: Optional[str] = Field(default=None, alias="workPermit")
    drivers_license: Optional[str] = Field(default=None, alias="driversLicense")

    languages: list[Language]
    skills: list[Skill]
    experience: list[Experience]
    education: list[Education]


class ResponseMetadata(_WireModel):
    confidence_scores: dict[str, float] = Field(default_factory=dict, alias="confidenceScores")
    warnings: list[str] = Field(default_factory=list)
    implicit_mappings_applied: list[str] = Field(
        default_factory=list, alias="implicitMappingsApplied"
    )


# =============================================================================
# COGNITIVE RESPONSE (ROOT)
# =============================================================================

class CognitiveResponse(_WireModel):
    """
    The LLM's answer: reasoning first, then data, then residue.

    `thought_process` is only required to be non-empty here; the validator
    enforces the configurable length floor.
    """
    thought_process: str = Field(alias="_thought_process", min_length=1)
    extracted_data: CvData
    unmapped_segments: list[UnmappedSegment]
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)

    def evidence_line_ids(self) -> set[str]:
        """Line ids cited by any evidence inside extracted_data."""
        data = self.extracted_data
        ids: set[str] = set()

        def add(evidence: list[Evidence]) -> None:
            ids.update(e.line_id for e in evidence)

        add(data.person.evidence)
        add(data.contact.evidence)
        if data.contact.address is not None:
            add(data.contact.address.evidence)
        for group in (data.languages, data.skills, data.experience, data.education):
            for entry in group:
                add(entry.evidence)
        return ids

    def unmapped_line_ids(self) -> set[str]:
        """Line ids referenced by the residue bucket."""
        return {
            s.line_reference for s in self.unmapped_segments if s.line_reference
        }

    def to_dict(self) -> dict[str, Any]:
        """Canonical (camelCase) wire form."""
        return self.model_dump(by_alias=True, mode="json")
