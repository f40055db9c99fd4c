"""
Extraction prompts for the cognitive CV extraction call.

The system prompt forces a reasoning-first answer (`_thought_process`), then
structured data with evidence line ids, then a residue bucket. User prompts
embed the packed corpus JSON plus the problem-field list; follow-up prompts
cover the corrective retry and the narrow re-extraction of missed lines.
"""

from typing import Optional

from ..parse.models import PackedCorpus
from .completeness import build_re_extraction_prompt

MAX_OUTPUT_TOKENS = 4000
RE_EXTRACTION_MAX_TOKENS = 2000
TEMPERATURE = 0.0

RETRY_PREVIEW_CHARS = 1500

RULE = "=" * 79


# =============================================================================
# SYSTEM PROMPT
# =============================================================================

SYSTEM_PROMPT = """You are a METICULOUS entity extraction engine for CV/resume documents. You answer in THREE MANDATORY PHASES and output a single JSON object.

PHASE 1: COGNITIVE ANALYSIS (_thought_process)
Before extracting ANY data, write your explicit reasoning into "_thought_process". Address, in order:
1. NAME IDENTIFICATION
   - Quote the header text you found.
   - Decide whether it is a person name or a job title, and why.
   - If it is a name, split it: firstName = given name, lastName = family name.
   - If uncertain, set both to null and explain in unmapped_segments.
2. IMPLICIT MAPPINGS
   For every labeled value without a direct schema field, decide whether it can be mapped:
   | Found label               | Target field   |
   | Ethnicity: X              | nationality    |
   | Herkunft: X               | nationality    |
   | Staatsangehörigkeit: X    | nationality    |
   | Wohnort: X                | address.city   |
   | Aufenthaltstitel: X       | workPermit     |
   | Führerschein: X           | driversLicense |
3. AMBIGUOUS DATA: list the options, pick one with a reason, or park it in unmapped_segments.
4. UNMAPPABLE DATA: name everything significant you could not place.

PHASE 2: STRUCTURED EXTRACTION (extracted_data)
1. EVIDENCE REQUIRED: every non-null value cites its source lines as {"lineId", "page", "text"}. Use the lineIds from the input exactly.
2. NO HALLUCINATION: data that is not in the input is null.
3. JOB TITLES ARE NOT NAMES: "Senior Developer", "Project Manager" are professions.
4. DATES AS FOUND; normalize only "present"/"heute" to "present".
5. PHONES: keep the original format, they are normalized later.
6. JOB DESCRIPTIONS: capture every bullet between one job header and the next VERBATIM in responsibilities[], one entry per bullet; technologies mentioned go to technologies[]; the evidence lists the description lines too.

PHASE 3: RESIDUE COLLECTION (unmapped_segments)
Never discard information. Anything you saw but could not place goes here:
{"originalText": "exact text", "detectedCategory": "personal|contact|date|skill|credential|job_details|education_details|other", "reason": "why it could not be mapped", "confidence": 0.0-1.0, "suggestedField": "field or null", "suggestedParent": "job/education entry it belongs to, or null", "lineReference": "lineId"}
If in doubt, put it in unmapped_segments. Better to ask the user than lose the data.

EVERY input line must end up either in the evidence of extracted_data or as the lineReference of an unmapped segment, unless it is pure noise (page numbers, separators).

OUTPUT FORMAT (valid JSON only):
{
  "_thought_process": "your complete Phase 1 analysis",
  "extracted_data": {
    "person": {"firstName": null, "lastName": null, "fullName": null, "evidence": []},
    "contact": {"email": null, "phone": null, "linkedinUrl": null, "xingUrl": null, "website": null,
                "address": {"street": null, "postalCode": null, "city": null, "canton": null, "country": null, "evidence": []},
                "evidence": []},
    "nationality": null, "birthdate": null, "workPermit": null, "driversLicense": null,
    "languages": [{"name": "", "level": null, "evidence": []}],
    "skills": [{"name": "", "category": null, "yearsOfExperience": null, "evidence": []}],
    "experience": [{"company": null, "title": null, "startDate": null, "endDate": null, "location": null,
                    "responsibilities": [], "technologies": [], "evidence": []}],
    "education": [{"institution": null, "degree": null, "field": null, "startDate": null, "endDate": null, "evidence": []}]
  },
  "unmapped_segments": [],
  "metadata": {"confidenceScores": {}, "warnings": [], "implicitMappingsApplied": []}
}"""


def build_system_prompt(examples_block: str = "") -> str:
    """System prompt with the few-shot correction block appended."""
    if not examples_block:
        return SYSTEM_PROMPT
    return f"{SYSTEM_PROMPT}\n\n{examples_block}"


# =============================================================================
# USER PROMPTS
# =============================================================================

def build_user_prompt(
    corpus: PackedCorpus,
    problem_fields: Optional[list[str]] = None,
    field_accuracies: Optional[dict[str, float]] = None,
) -> str:
    """Main extraction prompt: problem fields, then the packed corpus."""
    parts = []

    if problem_fields:
        accuracies = field_accuracies or {}
        parts.extend([
            RULE,
            "HIGH-ERROR FIELDS - APPLY EXTRA SCRUTINY",
            RULE,
            "",
            "These fields have historically had extraction errors. Be EXTRA careful:",
        ])
        for name in problem_fields:
            if name in accuracies:
                parts.append(f"- {name} (accuracy: {accuracies[name] * 100:.0f}%)")
            else:
                parts.append(f"- {name}")
        parts.extend([
            "",
            "For these fields you MUST double-check your extraction in _thought_process,",
            "prefer unmapped_segments when uncertain, and give explicit confidence scores.",
            "",
        ])

    parts.extend([
        RULE,
        "CV CONTENT TO ANALYZE (packed lines with lineIds)",
        RULE,
        "",
        corpus.to_prompt_json(),
        "",
        RULE,
        "YOUR TASK",
        RULE,
        "1. Populate _thought_process with your COMPLETE analysis",
        "2. Populate extracted_data with evidence for every value",
        "3. Populate unmapped_segments with ANY data that does not fit the schema",
        "4. Apply ALL patterns from the corrections shown in the instructions",
        "",
        "Output ONLY valid JSON:",
    ])
    return "\n".join(parts)


def build_retry_prompt(previous_response: str, errors: list[str]) -> str:
    """Corrective follow-up after a structural validation failure."""
    preview = previous_response[:RETRY_PREVIEW_CHARS]
    if len(previous_response) > RETRY_PREVIEW_CHARS:
        preview += "..."

    error_lines = "\n".join(f"- {e}" for e in errors)
    return f"""{RULE}
YOUR PREVIOUS RESPONSE HAD ERRORS - FIX THEM
{RULE}

VALIDATION ERRORS:
{error_lines}

YOUR PREVIOUS (INVALID) RESPONSE:
{preview}

REQUIREMENTS FOR THE FIXED RESPONSE:
1. Fix ALL validation errors listed above
2. "_thought_process" must be a thorough, non-empty analysis
3. "extracted_data" must contain person, contact, languages, skills, experience and education
4. "unmapped_segments" must be an array (it can be empty)
5. Every evidence entry needs lineId, page (integer > 0) and text

Output ONLY the corrected JSON object:"""


def build_re_extraction_user_prompt(missing_lines: list) -> str:
    """Narrow prompt covering only the lines the first pass missed."""
    listing = build_re_extraction_prompt(missing_lines)
    return f"""{listing}

Answer with the same JSON structure as before. Only include data from the lines above:
- extracted_data: only entries supported by these lines (evidence must cite their lineIds)
- unmapped_segments: every line you cannot map, with lineReference set
- _thought_process: a short analysis of each line

Output ONLY valid JSON:"""


def build_messages(system_prompt: str, user_prompt: str) -> list[dict]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]
