"""Context retrieval across template responses, context sections and FAQs."""
import asyncio
import logging
import re
from typing import Optional

from services.models import (
    ContextCandidate,
    RetrievalPolicy,
    SearchResult,
    SourceKind,
)

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.01
MAX_RESULTS = 10


def tokenize(text: str) -> list[str]:
    """Lowercased whitespace tokens with punctuation stripped."""
    return re.sub(r"[^\w\s]", "", text.lower()).split()


def text_similarity(a: Optional[str], b: Optional[str]) -> float:
    """
    Jaccard similarity of lowercased whitespace tokens.

    Punctuation is dropped first, so "prices?" matches "prices".
    0 when either side is empty, 1 for identical token sets.
    """
    if not a or not b:
        return 0.0

    tokens_a = set(tokenize(a))
    tokens_b = set(tokenize(b))
    if not tokens_a or not tokens_b:
        return 0.0

    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


class ContextRetriever:
    """Fetches candidate content for a business and ranks it against a query."""

    def __init__(self, repository, diversity_bonus: float = 0.05):
        self.repository = repository
        self.diversity_bonus = diversity_bonus

    async def search(
        self,
        query: str,
        business_id: int,
        language: str = "en",
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        limit: int = MAX_RESULTS,
        policy: RetrievalPolicy = RetrievalPolicy.FILTERED,
    ) -> SearchResult:
        """
        Search all three source kinds for a business.

        Args:
            query: User question (already screened)
            business_id: Owning business
            language: Content language code
            threshold: Minimum similarity for the filtered policy
            limit: Maximum number of candidates returned
            policy: FILTERED ranks by similarity, ALL returns everything

        Returns:
            SearchResult with ranked candidates and per-kind counts
        """
        logger.info(
            f"Context search: business={business_id} language={language} "
            f"policy={policy.value} threshold={threshold} limit={limit}"
        )

        templates, sections, faqs = await asyncio.gather(
            self._fetch(self.repository.fetch_template_responses, business_id, language, "template responses"),
            self._fetch(self.repository.fetch_context_sections, business_id, language, "context sections"),
            self._fetch(self.repository.fetch_faq_items, business_id, language, "FAQ items"),
        )

        template_results = [self._template_candidate(row, query, policy) for row in templates]
        section_results = [self._section_candidate(row, query, policy) for row in sections]
        faq_results = [self._faq_candidate(row, query, policy) for row in faqs]

        combined = [
            c for c in template_results + section_results + faq_results
            if c is not None
        ]
        if policy is RetrievalPolicy.FILTERED:
            combined = [c for c in combined if c.similarity_score >= threshold]

        results = self.rank(combined, limit)

        counts = {kind.value: 0 for kind in SourceKind}
        for candidate in results:
            counts[candidate.source_kind.value] += 1

        logger.info(
            f"Context search completed: business={business_id} "
            f"returned={len(results)} of {len(combined)} "
            f"(templates={counts['template']}, sections={counts['section']}, faqs={counts['faq']})"
        )

        return SearchResult(
            results=results,
            metadata={
                "total_results": len(results),
                "candidates_considered": len(combined),
                "template_results": counts["template"],
                "section_results": counts["section"],
                "faq_results": counts["faq"],
                "search_query": query,
                "threshold": threshold,
                "language": language,
                "policy": policy.value,
            },
        )

    def rank(self, candidates: list[ContextCandidate], limit: int) -> list[ContextCandidate]:
        """
        Select the top `limit` candidates with a diversity adjustment.

        Each candidate loses `diversity_bonus` per candidate of the same kind
        ranked above it, so one kind cannot monopolize the selection. The
        selected candidates are returned in descending similarity order.

        Despite the parameter name this is a penalty, not a +bonus per prior
        same-kind candidate followed by a re-sort on the bonus. A bonus would
        lift repeats of one kind and return results out of similarity order.
        """
        ordered = sorted(candidates, key=lambda c: c.similarity_score, reverse=True)

        seen = {kind: 0 for kind in SourceKind}
        for candidate in ordered:
            candidate.adjusted_score = (
                candidate.similarity_score - seen[candidate.source_kind] * self.diversity_bonus
            )
            seen[candidate.source_kind] += 1

        selected = sorted(ordered, key=lambda c: c.adjusted_score, reverse=True)[:limit]
        return sorted(selected, key=lambda c: (c.similarity_score, c.adjusted_score), reverse=True)

    async def _fetch(self, fetch, business_id: int, language: str, label: str) -> list[dict]:
        try:
            return await fetch(business_id, language)
        except Exception as e:
            logger.error(f"Failed to fetch {label} for business {business_id}: {e}")
            return []

    def _template_candidate(self, row: dict, query: str, policy: RetrievalPolicy) -> Optional[ContextCandidate]:
        content = row.get("content") or ""
        if not content.strip():
            return None
        return ContextCandidate(
            id=row["id"],
            source_kind=SourceKind.TEMPLATE,
            section_key=row.get("section_key"),
            display_name=row.get("section_key") or f"template_{row['id']}",
            content=content,
            similarity_score=self._score(query, content, policy),
            source_metadata={
                "template_id": row.get("template_id"),
                "character_count": row.get("character_count") or len(content),
                "word_count": row.get("word_count") or len(content.split()),
                "search_hits": row.get("search_hits", 0),
            },
        )

    def _section_candidate(self, row: dict, query: str, policy: RetrievalPolicy) -> Optional[ContextCandidate]:
        content = row.get("content") or ""
        if not content.strip():
            return None
        return ContextCandidate(
            id=row["id"],
            source_kind=SourceKind.SECTION,
            section_key=row.get("section_key"),
            display_name=row.get("section_name") or row.get("section_key") or f"section_{row['id']}",
            content=content,
            similarity_score=self._score(query, content, policy),
            source_metadata={
                "section_type": row.get("section_type"),
                "character_count": row.get("character_count") or len(content),
                "word_count": row.get("word_count") or len(content.split()),
                "search_hits": row.get("search_hits", 0),
            },
        )

    def _faq_candidate(self, row: dict, query: str, policy: RetrievalPolicy) -> Optional[ContextCandidate]:
        question = row.get("question") or ""
        answer = row.get("answer") or ""
        if not question.strip() and not answer.strip():
            return None

        content = f"Question: {question}\n\nAnswer: {answer}"
        question_similarity = text_similarity(query, question)
        answer_similarity = text_similarity(query, answer)
        if policy is RetrievalPolicy.ALL:
            similarity = 1.0
        else:
            similarity = max(question_similarity, answer_similarity)

        return ContextCandidate(
            id=row["id"],
            source_kind=SourceKind.FAQ,
            section_key=f"faq_{row['id']}",
            display_name=f"FAQ: {question[:50]}...",
            content=content,
            similarity_score=similarity,
            source_metadata={
                "category": row.get("category"),
                "character_count": len(content),
                "word_count": len(content.split()),
                "usage_count": row.get("usage_count", 0),
                "question_similarity": question_similarity,
                "answer_similarity": answer_similarity,
            },
        )

    def _score(self, query: str, content: str, policy: RetrievalPolicy) -> float:
        if policy is RetrievalPolicy.ALL:
            return 1.0
        return text_similarity(query, content)

    async def record_hits(self, ids: list[int], source_kind: SourceKind) -> None:
        """Increment usage counters for candidates used in a reply. Never raises."""
        if not ids:
            return
        try:
            if source_kind is SourceKind.TEMPLATE:
                await self.repository.increment_template_hits(ids)
            elif source_kind is SourceKind.SECTION:
                await self.repository.increment_section_hits(ids)
            elif source_kind is SourceKind.FAQ:
                await self.repository.increment_faq_usage(ids)
            else:
                raise ValueError(f"Unknown source kind: {source_kind}")

            logger.info(f"Updated search hits: kind={source_kind.value} ids={ids}")
        except Exception as e:
            logger.error(f"Failed to update search hits: kind={source_kind.value} ids={ids}: {e}")

    async def record_usage(self, candidates: list[ContextCandidate]) -> None:
        """Record hits for every candidate, grouped by source kind."""
        by_kind: dict[SourceKind, list[int]] = {kind: [] for kind in SourceKind}
        for candidate in candidates:
            by_kind[candidate.source_kind].append(candidate.id)

        await asyncio.gather(*(
            self.record_hits(ids, kind) for kind, ids in by_kind.items()
        ))
