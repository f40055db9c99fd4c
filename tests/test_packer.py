"""
Tests for the line corpus builder.

Tests cover:
1. Deterministic line ids and header/contact/section classification
2. Key/value filtering against the synonym allowlist
3. Raw text packing
4. Token budgeting and truncation floors
5. Prompt JSON and corpus flattening
"""

import json

from cvextract.config import PackerConfig
from cvextract.parse import packer as packer_module
from cvextract.parse.models import DocumentRep
from cvextract.parse.packer import (
    CorpusPacker,
    detect_section_type,
    estimate_tokens,
    is_contact_line,
    is_relevant_key,
    line_id,
)


class TestHelpers:
    """Tests for the classification helpers."""

    def test_line_id_format(self):
        """Line ids encode page and in-page index."""
        assert line_id(1, 0) == "p1_l0"
        assert line_id(3, 12) == "p3_l12"

    def test_contact_line_detection(self):
        """Email, phone and profile URLs count as contact lines."""
        assert is_contact_line("anna@example.com")
        assert is_contact_line("+41 79 1234567")
        assert is_contact_line("linkedin.com/in/anna")
        assert not is_contact_line("Projektleiter bei Acme")

    def test_section_headers_german_and_english(self):
        """Section vocabulary is case-insensitive and bilingual."""
        assert detect_section_type("Berufserfahrung") == "experience"
        assert detect_section_type("WORK EXPERIENCE") == "experience"
        assert detect_section_type("Ausbildung") == "education"
        assert detect_section_type("Sprachkenntnisse") == "languages"
        assert detect_section_type("Zertifikate") == "certificates"
        assert detect_section_type("Über mich") == "profile"
        assert detect_section_type("Acme AG, Zürich") is None

    def test_relevant_keys(self):
        """Only known personal/contact keys are kept."""
        assert is_relevant_key("Nationalität")
        assert is_relevant_key("E-Mail")
        assert is_relevant_key("Date of Birth")
        assert not is_relevant_key("Hobby")

    def test_estimate_tokens_rounds_up(self):
        """The heuristic is length / 3.5, rounded up."""
        assert estimate_tokens("") == 0
        assert estimate_tokens("abc") == 1
        assert estimate_tokens("a" * 7) == 2
        assert estimate_tokens("a" * 8) == 3

    def test_tiktoken_estimator_uses_cl100k(self, monkeypatch):
        """The tiktoken estimator counts with the cl100k_base encoding."""
        requested = []

        class FakeEncoding:
            def encode(self, text):
                return text.split()

        def get_encoding(name):
            requested.append(name)
            return FakeEncoding()

        monkeypatch.setattr(packer_module.tiktoken, "get_encoding", get_encoding)
        packer = CorpusPacker(PackerConfig(token_estimator="tiktoken"))

        assert requested == ["cl100k_base"]
        assert packer.count_tokens("Senior Software Engineer") == 3


class TestPackLayout:
    """Tests for CorpusPacker.pack."""

    def test_line_ids_are_deterministic(self, layout):
        """Packing the same document twice yields identical corpora."""
        packer = CorpusPacker()
        assert packer.pack(layout) == packer.pack(layout)

    def test_header_lines_are_first_page(self, corpus):
        """Header holds page 1 lines only."""
        assert [l.line_id for l in corpus.header_lines] == [f"p1_l{i}" for i in range(5)]

    def test_contact_lines(self, corpus):
        """Email and phone lines are collected as contact lines."""
        assert [l.line_id for l in corpus.contact_lines] == ["p1_l2", "p1_l3"]

    def test_sections(self, corpus):
        """Section header lines open sections and are not members themselves."""
        sections = {s.name: [l.line_id for l in s.lines] for s in corpus.sections}
        assert sections == {
            "experience": ["p2_l1", "p2_l2"],
            "education": ["p2_l4"],
            "languages": ["p2_l6", "p2_l7", "p2_l8"],
        }

    def test_irrelevant_kvp_dropped(self, corpus):
        """Keys outside the allowlist do not reach the corpus."""
        assert corpus.kvp == []

    def test_relevant_kvp_kept_with_unique_ids(self, layout_dict):
        """Relevant keys become kvp lines; repeated keys get suffixed ids."""
        layout_dict["keyValuePairs"] = [
            {"key": "Nationalität", "value": "Schweiz", "page": 1},
            {"key": "Telefon", "value": "044 123 45 67", "page": 1},
            {"key": "Telefon", "value": "079 765 43 21", "page": 1},
        ]
        corpus = CorpusPacker().pack(DocumentRep.model_validate(layout_dict))

        ids = [kv.line_id for kv in corpus.kvp]
        assert ids == ["kvp_nationalität", "kvp_telefon", "kvp_telefon_2"]
        assert corpus.line_index()["kvp_nationalität"].text == "Nationalität: Schweiz"

    def test_all_lines_deduplicates(self, corpus):
        """Lines in both header and contact groups appear once."""
        ids = [l.line_id for l in corpus.all_lines()]
        assert len(ids) == len(set(ids))
        assert len(ids) == 11

    def test_detected_languages_and_pages(self, corpus):
        assert corpus.detected_languages == ["de"]
        assert corpus.total_pages == 2

    def test_section_of(self, corpus):
        """Lines are attributed to their first group."""
        assert corpus.section_of("p1_l0") == "header"
        assert corpus.section_of("p2_l4") == "education"
        assert corpus.section_of("p9_l9") is None

    def test_prompt_json_uses_wire_ids(self, corpus):
        """The prompt payload is compact JSON with lineId keys."""
        payload = json.loads(corpus.to_prompt_json())
        assert payload["header_lines"][0] == {"lineId": "p1_l0", "page": 1, "text": "Max Müller"}
        assert payload["sections"][0]["name"] == "experience"
        assert payload["total_pages"] == 2


class TestPackRawText:
    """Tests for CorpusPacker.pack_raw_text."""

    def test_blank_lines_removed_and_ids_on_page_one(self):
        """Blank lines are dropped before ids are assigned."""
        corpus = CorpusPacker().pack_raw_text("Anna Meier\n\n  \nanna@example.com\n")
        assert [l.line_id for l in corpus.all_lines()] == ["p1_l0", "p1_l1"]
        assert all(l.page == 1 for l in corpus.all_lines())

    def test_key_value_lines_become_kvp(self):
        """'Key: value' lines with a relevant key are kept as kvp."""
        corpus = CorpusPacker().pack_raw_text("Anna Meier\nNationality: Swiss\nHobby: Chess")
        assert [kv.line_id for kv in corpus.kvp] == ["kvp_nationality"]

    def test_content_section_when_no_headers(self):
        """Without section headers, lines after the header become 'content'."""
        config = PackerConfig(raw_text_header_lines=2)
        text = "\n".join(f"Line {i} of the profile" for i in range(5))
        corpus = CorpusPacker(config).pack_raw_text(text)

        assert [s.name for s in corpus.sections] == ["content"]
        assert [l.line_id for l in corpus.sections[0].lines] == ["p1_l2", "p1_l3", "p1_l4"]

    def test_named_sections(self):
        """Section headers are honoured in raw text as well."""
        corpus = CorpusPacker().pack_raw_text("Anna Meier\nSkills\nPython\nSQL")
        assert corpus.sections[0].name == "skills"
        assert [l.text for l in corpus.sections[0].lines] == ["Python", "SQL"]


class TestTruncation:
    """Tests for token budgeting."""

    def _document(self, skills: int, experience: int) -> DocumentRep:
        lines = [{"text": "Skills"}]
        lines += [{"text": f"Skill item number {i:03d} with some words"} for i in range(skills)]
        lines += [{"text": "Experience"}]
        lines += [{"text": f"Experience bullet number {i:03d} with words"} for i in range(experience)]
        # Page 2 so header lines do not hide truncated section lines
        return DocumentRep.model_validate({
            "pages": [
                {"pageNumber": 1, "lines": [{"text": "Anna Meier"}]},
                {"pageNumber": 2, "lines": lines},
            ]
        })

    def test_under_cap_untouched(self):
        corpus = CorpusPacker().pack(self._document(skills=20, experience=20))
        assert corpus.truncated_line_ids == []
        assert corpus.estimated_tokens <= corpus.token_hard_cap

    def test_low_value_sections_trimmed_first(self):
        """Skills shrink towards their floor before experience is touched."""
        config = PackerConfig(token_hard_cap=1200, prompt_overhead_tokens=0)
        corpus = CorpusPacker(config).pack(self._document(skills=100, experience=60))

        sections = {s.name: s for s in corpus.sections}
        assert len(sections["skills"].lines) < 100
        assert len(sections["skills"].lines) >= config.low_value_floor
        assert len(sections["experience"].lines) == 60
        assert corpus.estimated_tokens <= config.token_hard_cap
        assert corpus.truncated_lines_count == 100 - len(sections["skills"].lines)

    def test_floors_respected_and_overage_accepted(self):
        """When floors are reached, packing stops and accepts the overage."""
        config = PackerConfig(token_hard_cap=50, prompt_overhead_tokens=0)
        corpus = CorpusPacker(config).pack(self._document(skills=30, experience=80))

        sections = {s.name: s for s in corpus.sections}
        assert len(sections["skills"].lines) == config.low_value_floor
        assert len(sections["experience"].lines) == config.section_floor
        assert corpus.estimated_tokens > config.token_hard_cap
        assert corpus.truncated_lines_count == (30 - 10) + (80 - 50)

    def test_truncated_ids_not_in_corpus(self):
        """Every truncated id is absent from the flattened corpus."""
        config = PackerConfig(token_hard_cap=50, prompt_overhead_tokens=0)
        corpus = CorpusPacker(config).pack(self._document(skills=30, experience=80))
        remaining = {l.line_id for l in corpus.all_lines()}
        assert not remaining & set(corpus.truncated_line_ids)

