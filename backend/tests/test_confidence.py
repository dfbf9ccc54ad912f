"""
Tests for confidence scoring.
"""

import pytest
from pydantic import ValidationError

from services.confidence import ConfidenceScorer, extract_keywords
from services.models import BusinessConfig, ConfidenceWeights, ContextCandidate, SourceKind


QUESTION = "What are your opening hours on sunday?"
RESPONSE = "What are your opening hours on sunday? Our opening hours on sunday are from 10 am to 4 pm. We are closed on holidays."


def _candidate(kind=SourceKind.TEMPLATE, similarity=0.5, content="We open at 10 on sunday."):
    return ContextCandidate(
        id=1,
        source_kind=kind,
        display_name="hours",
        content=content,
        similarity_score=similarity,
    )


@pytest.fixture
def scorer():
    return ConfidenceScorer()


class TestExtractKeywords:
    def test_drops_short_and_stop_words(self):
        assert extract_keywords("What are the opening hours, between noon and five?") == [
            "what", "opening", "hours", "noon", "five",
        ]

    def test_empty(self):
        assert extract_keywords("") == []


class TestWeights:
    """Tests for weight validation."""

    def test_defaults(self):
        weights = ConfidenceWeights()

        assert (weights.relevance, weights.completeness, weights.source_quality, weights.semantic_match) == (
            0.4, 0.3, 0.2, 0.1,
        )

    def test_must_sum_to_one(self):
        with pytest.raises(ValidationError):
            ConfidenceWeights(relevance=0.5, completeness=0.5, source_quality=0.5, semantic_match=0.5)


class TestScore:
    """Tests for the aggregated score."""

    @pytest.mark.parametrize("weights", [
        ConfidenceWeights(),
        ConfidenceWeights(relevance=0.25, completeness=0.25, source_quality=0.25, semantic_match=0.25),
        ConfidenceWeights(relevance=1.0, completeness=0.0, source_quality=0.0, semantic_match=0.0),
        ConfidenceWeights(relevance=0.1, completeness=0.2, source_quality=0.3, semantic_match=0.4),
    ])
    def test_score_is_weighted_sum(self, weights):
        """Test that the score equals the weighted sum of the breakdown."""
        scorer = ConfidenceScorer(weights=weights)

        result = scorer.score(QUESTION, RESPONSE, [_candidate()], semantic_score=0.3)

        b = result.breakdown
        expected = (
            b.relevance * weights.relevance
            + b.completeness * weights.completeness
            + b.source_quality * weights.source_quality
            + b.semantic_match * weights.semantic_match
        )
        assert result.score == pytest.approx(expected)
        assert result.weights == weights

    def test_components_are_bounded(self, scorer):
        result = scorer.score(QUESTION, RESPONSE, [_candidate(), _candidate(SourceKind.FAQ, 0.9)], semantic_score=5)

        for value in result.breakdown.model_dump().values():
            assert 0.0 <= value <= 1.0

    def test_no_context_is_not_confident(self, scorer):
        result = scorer.score(QUESTION, "", [], semantic_score=0.0)

        assert result.score == 0.0
        assert result.is_confident is False
        assert len(result.recommendations) == 4

    def test_grounded_answer_is_confident(self, scorer):
        result = scorer.score(QUESTION, RESPONSE, [_candidate(similarity=0.7)], semantic_score=0.7)

        assert result.is_confident is True
        assert result.threshold == 0.7
        assert result.recommendations == []

    def test_business_threshold_overrides_default(self, scorer):
        config = BusinessConfig(confidence_threshold=0.99)

        result = scorer.score(QUESTION, RESPONSE, [_candidate(similarity=0.7)], 0.7, business_config=config)

        assert result.threshold == 0.99
        assert result.is_confident is False

    def test_business_weights_apply_to_one_call(self, scorer):
        weights = ConfidenceWeights(relevance=0.0, completeness=0.0, source_quality=0.0, semantic_match=1.0)
        config = BusinessConfig(weights=weights)

        overridden = scorer.score(QUESTION, RESPONSE, [_candidate()], 0.25, business_config=config)
        default = scorer.score(QUESTION, RESPONSE, [_candidate()], 0.25)

        assert overridden.score == pytest.approx(0.25)
        assert default.weights == ConfidenceWeights()

    def test_context_sources_count(self, scorer):
        result = scorer.score(QUESTION, RESPONSE, [_candidate(), _candidate()], 0.1)

        assert result.context_sources_count == 2


class TestComponents:
    """Tests for individual components."""

    def test_relevance_needs_context(self, scorer):
        assert scorer.relevance(QUESTION, RESPONSE, []) == 0.0

    def test_relevance_full_overlap(self, scorer):
        assert scorer.relevance("opening hours", "opening hours today", [_candidate()]) == 1.0

    def test_relevance_ignores_punctuation(self, scorer):
        assert scorer.relevance("opening hours?", "Opening hours: 10 to 4.", [_candidate()]) == 1.0

    def test_completeness_short_answer(self, scorer):
        # 4 chars of 50, no question words echoed, no sentence end
        assert scorer.completeness("Where are you?", "Nope") == pytest.approx((4 / 50) / 3)

    def test_completeness_full(self, scorer):
        assert scorer.completeness(QUESTION, RESPONSE) == pytest.approx(
            (1.0 + scorer._word_overlap(QUESTION, RESPONSE) + 1.0) / 3
        )

    def test_source_quality_single_template(self, scorer):
        assert scorer.source_quality([_candidate(similarity=0.5)]) == pytest.approx(0.6)

    def test_source_quality_rewards_strong_long_sources(self, scorer):
        long_faq = _candidate(SourceKind.FAQ, similarity=0.85, content="x" * 250)
        template = _candidate(SourceKind.TEMPLATE, similarity=0.65)

        # faq: 0.5 + 0.2 + 0.2 + 0.1 = 1.0; template: 0.5 + 0.2 + 0.1 + 0.1 = 0.9
        assert scorer.source_quality([long_faq, template]) == pytest.approx(0.95)

    @pytest.mark.parametrize("raw, expected", [(None, 0.0), (-1, 0.0), (0.4, 0.4), (3, 1.0)])
    def test_semantic_match_is_clamped(self, scorer, raw, expected):
        assert scorer.semantic_match(raw) == expected
