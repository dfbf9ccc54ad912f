"""Confidence scoring for candidate answers."""
import logging
import re
from typing import Optional

from services.models import (
    BusinessConfig,
    ConfidenceBreakdown,
    ConfidenceResult,
    ConfidenceWeights,
    ContextCandidate,
    SourceKind,
)

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS = ConfidenceWeights()
DEFAULT_THRESHOLD = 0.7

STOP_WORDS = frozenset({
    "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
    "by", "from", "up", "about", "into", "through", "during", "before",
    "after", "above", "below", "between", "among",
})

RECOMMENDATIONS = {
    "relevance": "Add more relevant context that directly addresses the question",
    "completeness": "Provide more detailed and comprehensive responses",
    "source_quality": "Improve the quality and detail of context sources",
    "semantic_match": "Add context that is more semantically similar to common questions",
}


def extract_keywords(text: Optional[str]) -> list[str]:
    """Lowercased tokens longer than 3 chars, punctuation and stop words removed."""
    if not text:
        return []
    words = re.sub(r"[^\w\s]", "", text.lower()).split()
    return [w for w in words if len(w) > 3 and w not in STOP_WORDS]


def _words(text: str) -> list[str]:
    return re.sub(r"[^\w\s]", "", text.lower()).split()


class ConfidenceScorer:
    """Combines relevance, completeness, source quality and semantic match."""

    def __init__(
        self,
        weights: ConfidenceWeights = DEFAULT_WEIGHTS,
        default_threshold: float = DEFAULT_THRESHOLD,
    ):
        self.weights = weights
        self.default_threshold = default_threshold

    def score(
        self,
        question: str,
        response: str,
        context_candidates: list[ContextCandidate],
        semantic_score: Optional[float] = 0.0,
        business_config: Optional[BusinessConfig] = None,
    ) -> ConfidenceResult:
        """
        Score how confidently `response` answers `question`.

        Per-business weights and threshold in `business_config` take precedence
        over the scorer defaults for this call only.
        """
        weights = self.weights
        threshold = self.default_threshold
        if business_config is not None:
            if business_config.weights is not None:
                weights = business_config.weights
            if business_config.confidence_threshold is not None:
                threshold = business_config.confidence_threshold

        breakdown = ConfidenceBreakdown(
            relevance=self.relevance(question, response, context_candidates),
            completeness=self.completeness(question, response),
            source_quality=self.source_quality(context_candidates),
            semantic_match=self.semantic_match(semantic_score),
        )

        score = (
            breakdown.relevance * weights.relevance
            + breakdown.completeness * weights.completeness
            + breakdown.source_quality * weights.source_quality
            + breakdown.semantic_match * weights.semantic_match
        )
        is_confident = score >= threshold

        recommendations = []
        if not is_confident:
            recommendations = [
                text for component, text in RECOMMENDATIONS.items()
                if getattr(breakdown, component) < 0.5
            ]

        logger.info(
            f"Confidence {score:.2f} (threshold {threshold}) confident={is_confident} "
            f"sources={len(context_candidates)}"
        )

        return ConfidenceResult(
            score=score,
            is_confident=is_confident,
            threshold=threshold,
            breakdown=breakdown,
            weights=weights,
            context_sources_count=len(context_candidates),
            recommendations=recommendations,
        )

    def relevance(self, question: str, response: str, context_candidates: list[ContextCandidate]) -> float:
        """Keyword and raw-word overlap between question and response."""
        if not question or not response or not context_candidates:
            return 0.0

        question_keywords = extract_keywords(question)
        response_keywords = set(extract_keywords(response))
        keyword_relevance = 0.0
        if question_keywords:
            common = [k for k in question_keywords if k in response_keywords]
            keyword_relevance = len(common) / len(question_keywords)

        word_relevance = self._word_overlap(question, response)
        return min(1.0, (keyword_relevance + word_relevance) / 2)

    def completeness(self, question: str, response: str) -> float:
        """Length, question echo and sentence structure, averaged."""
        if not question or not response:
            return 0.0

        min_length = max(50, len(question) * 2)
        length_score = min(1.0, len(response) / min_length)
        addressing_score = self._word_overlap(question, response)
        sentence_count = len(re.findall(r"[.!?]+", response))
        structure_score = min(1.0, sentence_count / 2)

        return (length_score + addressing_score + structure_score) / 3

    def source_quality(self, context_candidates: list[ContextCandidate]) -> float:
        if not context_candidates:
            return 0.0

        total = 0.0
        for candidate in context_candidates:
            candidate_score = 0.5
            if len(context_candidates) > 1:
                candidate_score += 0.2
            if candidate.similarity_score > 0.8:
                candidate_score += 0.2
            elif candidate.similarity_score > 0.6:
                candidate_score += 0.1
            if candidate.source_kind is SourceKind.TEMPLATE:
                candidate_score += 0.1
            if candidate.character_count > 200:
                candidate_score += 0.1
            total += min(1.0, candidate_score)

        return total / len(context_candidates)

    def semantic_match(self, semantic_score: Optional[float]) -> float:
        return max(0.0, min(1.0, semantic_score or 0.0))

    def _word_overlap(self, question: str, response: str) -> float:
        question_words = _words(question)
        if not question_words:
            return 0.0
        response_words = set(_words(response))
        return sum(1 for w in question_words if w in response_words) / len(question_words)
