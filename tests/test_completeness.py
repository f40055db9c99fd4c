"""
Tests for the line-level completeness audit.

Tests cover:
1. Partition of corpus lines into extracted/unmapped/ignorable/missing
2. Percentage over significant lines only
3. Unknown references, token-limit detection, truncation count
4. Missing-line reasons and the re-extraction prompt
"""

import pytest

from cvextract.config import CompletenessConfig
from cvextract.extract.completeness import (
    CompletenessPolicy,
    CompletenessValidator,
    build_re_extraction_prompt,
    guess_missing_reason,
)
from cvextract.extract.validator import ResponseValidator
from cvextract.parse.models import PackedCorpus, PackedLine, PackedSection


def _validated(raw):
    outcome = ResponseValidator().validate(raw)
    assert outcome.valid, outcome.errors
    return outcome.response


@pytest.fixture
def auditor():
    return CompletenessValidator()


class TestCompletenessReport:
    """Tests for CompletenessValidator.validate on the small CV."""

    def test_complete_response(self, auditor, corpus, build_response):
        report = auditor.validate(corpus, _validated(build_response()))

        assert report.is_complete
        assert report.completeness_percentage == 100
        assert report.total_lines == 11
        assert report.significant_lines == 10
        assert report.unmapped_line_ids == ("p1_l1",)
        assert report.ignorable_line_ids == ("p2_l8",)
        assert report.missing_line_ids == ()

    def test_unreferenced_line_is_missing(self, auditor, corpus, build_response):
        report = auditor.validate(corpus, _validated(build_response(unmapped=[])))

        assert not report.is_complete
        assert report.missing_line_ids == ("p1_l1",)
        assert report.completeness_percentage == 90

        missing = report.missing_lines[0]
        assert missing.text == "Senior Software Engineer"
        assert missing.section == "header"
        assert missing.page == 1
        assert missing.possible_reason.startswith("Unknown")

    def test_partition_is_exact(self, auditor, corpus, build_response):
        """Every corpus line lands in exactly one bucket."""
        report = auditor.validate(corpus, _validated(build_response(unmapped=[], languages=[])))
        buckets = [
            set(report.extracted_line_ids),
            set(report.unmapped_line_ids),
            set(report.ignorable_line_ids),
            set(report.missing_line_ids),
        ]
        all_ids = {line.line_id for line in corpus.all_lines()}

        assert set().union(*buckets) == all_ids
        assert sum(len(b) for b in buckets) == len(all_ids)

    def test_extracted_wins_over_unmapped(self, auditor, corpus, build_response):
        """A line cited both as evidence and as residue counts as extracted."""
        unmapped = [{
            "originalText": "Max Müller",
            "detectedCategory": "personal",
            "reason": "duplicate",
            "confidence": 0.5,
            "lineReference": "p1_l0",
        }]
        report = auditor.validate(corpus, _validated(build_response(unmapped=unmapped)))
        assert "p1_l0" in report.extracted_line_ids
        assert "p1_l0" not in report.unmapped_line_ids

    def test_referenced_noise_counts_as_extracted(self, auditor, corpus, build_response, evidence):
        """An ignorable line with evidence is extracted but adds no significance."""
        skills = [{"name": "Page", "evidence": [evidence("p2_l8", "12")]}]
        report = auditor.validate(corpus, _validated(build_response(skills=skills)))
        assert "p2_l8" in report.extracted_line_ids
        assert report.ignorable_line_ids == ()
        assert report.significant_lines == 10
        assert report.completeness_percentage == 100

    def test_unknown_references_reported_not_counted(self, auditor, corpus, build_response, evidence):
        skills = [{"name": "Ghost", "evidence": [evidence("p9_l9", "Ghost")]}]
        report = auditor.validate(corpus, _validated(build_response(skills=skills, unmapped=[])))

        assert report.unknown_line_references == ("p9_l9",)
        assert report.completeness_percentage == 90
        assert "unknown line ids" in report.summary

    def test_idempotent(self, auditor, corpus, build_response):
        response = _validated(build_response(unmapped=[]))
        assert auditor.validate(corpus, response) == auditor.validate(corpus, response)

    def test_inputs_not_mutated(self, auditor, corpus, build_response):
        response = _validated(build_response(unmapped=[]))
        before_response = response.model_dump()
        before_corpus = corpus.model_dump()

        auditor.validate(corpus, response)

        assert response.model_dump() == before_response
        assert corpus.model_dump() == before_corpus

    def test_summary_text(self, auditor, corpus, build_response):
        report = auditor.validate(corpus, _validated(build_response(unmapped=[])))
        assert "Status: INCOMPLETE" in report.summary
        assert "Completeness: 90%" in report.summary
        assert "1 lines were not processed" in report.summary

    def test_to_dict(self, auditor, corpus, build_response):
        data = auditor.validate(corpus, _validated(build_response(unmapped=[]))).to_dict()
        assert data["missing_line_ids"] == ["p1_l1"]
        assert data["missing_lines"][0]["line_id"] == "p1_l1"
        assert "summary" not in data

    def test_missing_significant_lines(self, auditor, corpus, build_response):
        lines = auditor.get_missing_significant_lines(corpus, _validated(build_response(unmapped=[])))
        assert [l.line_id for l in lines] == ["p1_l1"]
        assert not auditor.is_extraction_complete(corpus, _validated(build_response(unmapped=[])))


class TestHundredLines:
    """A 100-line section with 90 lines covered."""

    def test_ninety_percent(self, auditor, hundred_line_corpus, skills_response):
        covered = [f"p1_l{i}" for i in range(90)]
        report = auditor.validate(hundred_line_corpus, _validated(skills_response(covered)))

        assert report.completeness_percentage == 90
        assert not report.is_complete
        assert report.missing_line_ids == tuple(f"p1_l{i}" for i in range(90, 100))
        assert all(m.section == "experience" for m in report.missing_lines)

    def test_rounding(self, auditor, hundred_line_corpus, skills_response):
        """Two of three significant lines round to 67."""
        corpus = PackedCorpus(sections=[
            PackedSection(name="skills", lines=hundred_line_corpus.sections[0].lines[:3])
        ])
        report = auditor.validate(corpus, _validated(skills_response(["p1_l0", "p1_l1"])))
        assert report.completeness_percentage == 67

    def test_empty_corpus_is_complete(self, auditor, skills_response):
        report = auditor.validate(PackedCorpus(), _validated(skills_response([])))
        assert report.is_complete
        assert report.completeness_percentage == 100
        assert report.total_lines == 0


class TestPolicy:
    """Ignorable-line policy and token-limit detection."""

    @pytest.mark.parametrize("text", ["", "   ", "12", "Seite 3", "Page 2 of 4", "-----", "•"])
    def test_default_noise(self, text):
        assert CompletenessPolicy.from_config().is_ignorable(text)

    @pytest.mark.parametrize("text", ["Python", "ETH Zürich", "2019 - heute"])
    def test_default_signal(self, text):
        assert not CompletenessPolicy.from_config().is_ignorable(text)

    def test_configurable_policy(self, corpus, build_response):
        """Without noise rules the page number becomes a missing line."""
        policy = CompletenessPolicy.from_config(
            CompletenessConfig(ignorable_patterns=[], min_significant_length=0)
        )
        report = CompletenessValidator(policy).validate(corpus, _validated(build_response()))
        assert report.missing_line_ids == ("p2_l8",)
        assert report.significant_lines == 11

    def test_token_limit_reached(self, auditor, hundred_line_corpus, skills_response):
        corpus = hundred_line_corpus.model_copy(update={"estimated_tokens": 15000})
        report = auditor.validate(corpus, _validated(skills_response([])))
        assert report.token_limit_reached
        assert "Token limit nearly reached" in report.summary

    def test_token_limit_not_reached(self, auditor, hundred_line_corpus, skills_response):
        report = auditor.validate(hundred_line_corpus, _validated(skills_response([])))
        assert not report.token_limit_reached

    def test_truncated_count_passed_through(self, auditor, hundred_line_corpus, skills_response):
        corpus = hundred_line_corpus.model_copy(update={"truncated_line_ids": ["p3_l1", "p3_l2"]})
        report = auditor.validate(corpus, _validated(skills_response([])))
        assert report.truncated_lines_count == 2


class TestMissingLines:
    """Reasons and the re-extraction prompt."""

    @pytest.mark.parametrize(
        "text,page,prefix",
        [
            ("abc", 1, "Very short"),
            ("123456", 1, "Digits only"),
            ("• Led a team of five", 1, "Bullet item"),
            ("Built the data platform", 3, "Late page"),
            ("Built the data platform", 1, "Unknown"),
        ],
    )
    def test_reasons(self, text, page, prefix):
        line = PackedLine(line_id=f"p{page}_l0", page=page, text=text)
        assert guess_missing_reason(line).startswith(prefix)

    def test_prompt_lists_lines(self, auditor, corpus, build_response):
        report = auditor.validate(corpus, _validated(build_response(unmapped=[])))
        prompt = build_re_extraction_prompt(list(report.missing_lines))

        assert "The following 1 lines were overlooked" in prompt
        assert '[p1_l1] (page 1): "Senior Software Engineer"' in prompt
        assert "Possible reason: Unknown" in prompt

    def test_prompt_accepts_packed_lines(self):
        prompt = build_re_extraction_prompt([PackedLine(line_id="p2_l3", page=2, text="Kubernetes")])
        assert '[p2_l3] (page 2): "Kubernetes"' in prompt
        assert "Possible reason" not in prompt

    def test_prompt_empty(self):
        assert build_re_extraction_prompt([]) == ""
