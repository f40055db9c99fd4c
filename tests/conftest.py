"""
Shared fixtures for the cvextract test suite.

Provides:
1. A small two-page layout document (German CV) and its packed corpus
2. A builder for raw cognitive responses in the camelCase wire dialect
3. A scripted LLM client that replays canned completions (no network)
"""

import json
from typing import Any, Optional

import pytest

from cvextract.config import AppConfig
from cvextract.extract.llm_provider import LLMCompletion
from cvextract.parse.models import DocumentRep, PackedCorpus, PackedLine, PackedSection
from cvextract.parse.packer import CorpusPacker


THOUGHT = (
    "PHASE 1 analysis: the header on page 1 holds the name Max Müller, the line below "
    "is a job title. Contact lines carry an e-mail and a Swiss mobile number. Page 2 "
    "lists one position, one degree and two languages. Line p2_l8 is a page number."
)


# =============================================================================
# Layout document
# =============================================================================

LAYOUT = {
    "pages": [
        {
            "pageNumber": 1,
            "lines": [
                {"text": "Max Müller", "confidence": 0.99},
                {"text": "Senior Software Engineer", "confidence": 0.98},
                {"text": "max.mueller@example.ch", "confidence": 0.97},
                {"text": "+41 79 1234567", "confidence": 0.96},
                {"text": "Zürich, Schweiz", "confidence": 0.95},
            ],
        },
        {
            "pageNumber": 2,
            "lines": [
                {"text": "Berufserfahrung"},
                {"text": "Senior Software Engineer, Acme AG"},
                {"text": "2019 - heute"},
                {"text": "Ausbildung"},
                {"text": "MSc Informatik, ETH Zürich"},
                {"text": "Sprachen"},
                {"text": "Deutsch - Muttersprache"},
                {"text": "Englisch - fliessend"},
                {"text": "12"},
            ],
        },
    ],
    "keyValuePairs": [
        {"key": "Hobby", "value": "Schach", "page": 1},
    ],
    "detectedLanguages": [{"locale": "de", "confidence": 0.99}],
}


@pytest.fixture
def layout_dict() -> dict:
    return json.loads(json.dumps(LAYOUT))


@pytest.fixture
def layout(layout_dict) -> DocumentRep:
    return DocumentRep.model_validate(layout_dict)


@pytest.fixture
def corpus(layout) -> PackedCorpus:
    return CorpusPacker().pack(layout)


# =============================================================================
# Raw responses
# =============================================================================

def ev(line_id: str, text: str, page: Optional[int] = None) -> dict:
    """Evidence entry in wire form; page defaults to the one in the line id."""
    if page is None:
        page = int(line_id[1:].split("_")[0]) if line_id.startswith("p") else 1
    return {"lineId": line_id, "page": page, "text": text}


def make_response(
    first_name: Optional[str] = "Max",
    last_name: Optional[str] = "Müller",
    person_evidence: Optional[list] = None,
    email: Optional[str] = "max.mueller@example.ch",
    phone: Optional[str] = "+41 79 1234567",
    contact_evidence: Optional[list] = None,
    address: Optional[dict] = None,
    languages: Optional[list] = None,
    skills: Optional[list] = None,
    experience: Optional[list] = None,
    education: Optional[list] = None,
    unmapped: Optional[list] = None,
    nationality: Optional[str] = None,
    thought: str = THOUGHT,
    warnings: Optional[list] = None,
) -> dict[str, Any]:
    """Raw cognitive response (camelCase dialect) for the LAYOUT fixture."""
    if person_evidence is None:
        person_evidence = [ev("p1_l0", "Max Müller")]
    if contact_evidence is None:
        contact_evidence = [
            ev("p1_l2", "max.mueller@example.ch"),
            ev("p1_l3", "+41 79 1234567"),
        ]
    if address is None:
        address = {"city": "Zürich", "country": "Schweiz", "evidence": [ev("p1_l4", "Zürich, Schweiz")]}
    if languages is None:
        languages = [
            {"name": "Deutsch", "level": "Muttersprache", "evidence": [ev("p2_l6", "Deutsch - Muttersprache")]},
            {"name": "Englisch", "level": "fliessend", "evidence": [ev("p2_l7", "Englisch - fliessend")]},
        ]
    if experience is None:
        experience = [
            {
                "company": "Acme AG",
                "title": "Senior Software Engineer",
                "startDate": "2019",
                "endDate": None,
                "responsibilities": [],
                "evidence": [
                    ev("p2_l1", "Senior Software Engineer, Acme AG"),
                    ev("p2_l2", "2019 - heute"),
                ],
            }
        ]
    if education is None:
        education = [
            {
                "institution": "ETH Zürich",
                "degree": "MSc",
                "field": "Informatik",
                "evidence": [ev("p2_l4", "MSc Informatik, ETH Zürich")],
            }
        ]
    if unmapped is None:
        unmapped = [
            {
                "originalText": "Senior Software Engineer",
                "detectedCategory": "job_details",
                "reason": "Headline job title, already covered by the experience entry",
                "confidence": 0.7,
                "lineReference": "p1_l1",
            }
        ]

    return {
        "_thought_process": thought,
        "extracted_data": {
            "person": {"firstName": first_name, "lastName": last_name, "evidence": person_evidence},
            "contact": {
                "email": email,
                "phone": phone,
                "address": address,
                "evidence": contact_evidence,
            },
            "nationality": nationality,
            "languages": languages,
            "skills": skills or [],
            "experience": experience,
            "education": education,
        },
        "unmapped_segments": unmapped,
        "metadata": {
            "confidenceScores": {},
            "warnings": warnings or [],
            "implicitMappingsApplied": [],
        },
    }


@pytest.fixture
def build_response():
    """Factory for raw responses (see make_response)."""
    return make_response


@pytest.fixture
def evidence():
    """Factory for evidence entries (see ev)."""
    return ev


# =============================================================================
# Scenario B corpus: 100 significant lines in one section
# =============================================================================

def make_hundred_line_corpus() -> PackedCorpus:
    lines = [
        PackedLine(line_id=f"p1_l{i}", page=1, text=f"Project milestone number {i} delivered")
        for i in range(100)
    ]
    return PackedCorpus(
        sections=[PackedSection(name="experience", lines=lines)],
        estimated_tokens=1500,
    )


def skills_for(line_ids: list[str]) -> list[dict]:
    return [
        {"name": f"Milestone {lid}", "evidence": [ev(lid, f"Project milestone number {lid[4:]} delivered")]}
        for lid in line_ids
    ]


def make_skills_response(line_ids: list[str], thought: str = THOUGHT) -> dict:
    """Response that accounts for exactly the given lines (as skills)."""
    return {
        "_thought_process": thought,
        "extracted_data": {
            "person": {"firstName": None, "lastName": None, "evidence": []},
            "contact": {"email": None, "phone": None, "evidence": []},
            "languages": [],
            "skills": skills_for(line_ids),
            "experience": [],
            "education": [],
        },
        "unmapped_segments": [],
    }


@pytest.fixture
def hundred_line_corpus() -> PackedCorpus:
    return make_hundred_line_corpus()


@pytest.fixture
def skills_response():
    return make_skills_response


# =============================================================================
# Scripted LLM client
# =============================================================================

class ScriptedClient:
    """
    Replays a script of completions.

    Each script item is a dict (sent as JSON), a str (sent verbatim), None
    (empty content) or an exception instance (raised).
    """

    def __init__(self, script: list):
        self.script = list(script)
        self.calls: list[dict] = []

    def complete(self, messages, max_tokens, temperature=0.0, timeout=None) -> LLMCompletion:
        self.calls.append({
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "timeout": timeout,
        })
        if not self.script:
            raise AssertionError("ScriptedClient ran out of responses")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, dict):
            item = json.dumps(item, ensure_ascii=False)
        return LLMCompletion(content=item, prompt_tokens=100, completion_tokens=50, model="scripted")


@pytest.fixture
def scripted_client():
    return ScriptedClient


@pytest.fixture
def app_config() -> AppConfig:
    """Config with fast backoff and the feedback loop off."""
    config = AppConfig()
    config.parser.enable_feedback_loop = False
    config.parser.initial_backoff_ms = 10
    config.parser.max_backoff_ms = 40
    return config
