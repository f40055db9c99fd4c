"""
Tests for confidence scoring.

Tests cover:
1. Weighted scoring and the autofill/review/skip thresholds
2. Weight normalization
3. Scoring populated person/contact fields against a corpus
"""

import pytest

from cvextract.config import ConfidenceScoreConfig
from cvextract.extract.confidence import (
    ConfidenceFactors,
    ConfidenceStatus,
    ConfidenceThresholds,
    ConfidenceWeights,
    calculate_confidence,
    default_factors,
    get_confidence_level,
    score_response_fields,
)
from cvextract.extract.validator import ResponseValidator


def _factors(**overrides) -> ConfidenceFactors:
    values = dict(
        source_confidence=1.0,
        validation_pass=True,
        label_proximity=1.0,
        uniqueness=1.0,
        repetition_count=2,
        section_match=True,
    )
    values.update(overrides)
    return ConfidenceFactors(**values)


class TestCalculateConfidence:
    """Tests for calculate_confidence."""

    def test_perfect_signals_autofill(self):
        result = calculate_confidence(_factors())
        assert result.score == pytest.approx(1.0)
        assert result.status == ConfidenceStatus.AUTOFILL

    def test_default_factors_review(self):
        """0.8 source, 0.8 proximity, one occurrence -> 0.87."""
        result = calculate_confidence(default_factors())
        assert result.score == pytest.approx(0.87)
        assert result.status == ConfidenceStatus.REVIEW
        assert result.level == "high"

    def test_failed_validation_drops_to_skip(self):
        """A failed validation contributes 0.3 instead of 1.0."""
        result = calculate_confidence(ConfidenceFactors(
            source_confidence=0.8,
            validation_pass=False,
            label_proximity=0.8,
            uniqueness=1.0,
            repetition_count=1,
            section_match=True,
        ))
        assert result.score == pytest.approx(0.695)
        assert result.status == ConfidenceStatus.SKIP

    def test_section_mismatch_half_credit(self):
        result = calculate_confidence(_factors(section_match=False))
        assert result.score == pytest.approx(0.95)

    def test_repetition_capped(self):
        """Repetition counts above two add nothing."""
        assert calculate_confidence(_factors(repetition_count=2)).score == pytest.approx(
            calculate_confidence(_factors(repetition_count=7)).score
        )

    def test_score_clamped(self):
        result = calculate_confidence(_factors(source_confidence=5.0))
        assert result.score == 1.0

    def test_deterministic(self):
        """Identical factors always give identical results."""
        factors = _factors(source_confidence=0.61, uniqueness=0.5)
        first = calculate_confidence(factors)
        second = calculate_confidence(factors)
        assert (first.score, first.status) == (second.score, second.status)

    def test_custom_thresholds(self):
        thresholds = ConfidenceThresholds(autofill=0.99, review=0.5)
        result = calculate_confidence(default_factors(), thresholds=thresholds)
        assert result.status == ConfidenceStatus.REVIEW

    def test_validation_and_section_only(self):
        """Only validation and section signals present scores 0.35, a skip."""
        factors = _factors(source_confidence=0.0, label_proximity=0.0, uniqueness=0.0, repetition_count=0)
        result = calculate_confidence(factors)
        assert result.score == pytest.approx(0.35)
        assert result.status == ConfidenceStatus.SKIP

    @pytest.mark.parametrize("score,level", [(0.9, "high"), (0.85, "high"), (0.7, "medium"), (0.2, "low")])
    def test_levels(self, score, level):
        assert get_confidence_level(score) == level

    def test_to_dict(self):
        data = calculate_confidence(default_factors()).to_dict()
        assert data["status"] == "review"
        assert data["score"] == 0.87
        assert data["factors"]["repetition_count"] == 1


class TestWeights:
    """Tests for ConfidenceWeights."""

    def test_defaults_sum_to_one(self):
        w = ConfidenceWeights()
        total = (
            w.source_confidence + w.validation_pass + w.label_proximity
            + w.uniqueness + w.repetition + w.section_match
        )
        assert total == pytest.approx(1.0)

    def test_normalized_when_off(self):
        """Weights summing to 2.0 are halved."""
        w = ConfidenceWeights(
            source_confidence=0.5,
            validation_pass=0.5,
            label_proximity=0.3,
            uniqueness=0.3,
            repetition=0.2,
            section_match=0.2,
        )
        assert w.source_confidence == pytest.approx(0.25)
        assert w.section_match == pytest.approx(0.1)

    def test_zero_weights_rejected(self):
        with pytest.raises(ValueError):
            ConfidenceWeights(0, 0, 0, 0, 0, 0)

    def test_from_config(self):
        config = ConfidenceScoreConfig(autofill_threshold=0.95, review_threshold=0.6)
        assert ConfidenceThresholds.from_config(config) == ConfidenceThresholds(0.95, 0.6)
        assert ConfidenceWeights.from_config(config).source_confidence == pytest.approx(0.25)


class TestScoreResponseFields:
    """Tests for score_response_fields."""

    @pytest.fixture
    def response(self, build_response):
        return ResponseValidator().validate(build_response()).response

    def test_populated_fields_scored(self, corpus, response):
        results = score_response_fields(corpus, response)
        assert {"firstName", "lastName", "email", "phone"} <= set(results)
        assert "linkedinUrl" not in results
        for result in results.values():
            assert 0.0 <= result.score <= 1.0

    def test_name_autofill(self, corpus, response):
        """The name sits on a high-confidence header line and repeats in the e-mail."""
        result = score_response_fields(corpus, response)["firstName"]
        assert result.factors.section_match
        assert result.factors.repetition_count == 2
        assert result.score == pytest.approx(0.9975)
        assert result.status == ConfidenceStatus.AUTOFILL

    def test_email_uses_line_confidence(self, corpus, response):
        """Source confidence is the mean of the evidence lines' confidences."""
        result = score_response_fields(corpus, response)["email"]
        assert result.factors.source_confidence == pytest.approx(0.965)
        assert result.factors.label_proximity == 1.0

    def test_flagged_field_penalized(self, corpus, response):
        results = score_response_fields(corpus, response, flagged_fields=["firstName"])
        assert not results["firstName"].factors.validation_pass
        assert results["firstName"].status == ConfidenceStatus.REVIEW

    def test_normalized_phone_still_matches_line(self, corpus, response):
        """E.164 phones are compared on digits."""
        result = score_response_fields(corpus, response)["phone"]
        assert response.extracted_data.contact.phone == "+41791234567"
        assert result.factors.label_proximity == 1.0
