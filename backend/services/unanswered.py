"""Deduplicated tracking of questions the assistant could not answer confidently."""
import hashlib
import logging
import re
from typing import Optional

from services.errors import PersistenceConflict
from services.models import ContextCandidate, UnansweredQuestion

logger = logging.getLogger(__name__)


def normalize_question(question: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    text = re.sub(r"[^\w\s]", "", question.lower())
    return re.sub(r"\s+", " ", text).strip()


def question_hash(normalized: str) -> str:
    """Stable dedup key for a normalized question."""
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class UnansweredQuestionTracker:
    """Records low-confidence questions, one record per business and question."""

    def __init__(self, repository):
        self.repository = repository

    async def track(
        self,
        question: str,
        business_id: int,
        session_id: int,
        context_candidates: list[ContextCandidate],
        confidence_score: float,
        conversation_context: Optional[dict] = None,
        language: str = "en",
    ) -> Optional[UnansweredQuestion]:
        """
        Insert or bump the record for this question.

        The store performs an atomic upsert keyed on (business_id, hash). If a
        concurrent first insert still surfaces as a conflict, the write is
        retried as an update. Failures are logged and never raised.
        """
        content_hash = None
        try:
            normalized = normalize_question(question)
            content_hash = question_hash(normalized)
            searched = [
                {
                    "id": c.id,
                    "source_kind": c.source_kind.value,
                    "similarity_score": c.similarity_score,
                }
                for c in context_candidates
            ]

            try:
                record = await self.repository.upsert_unanswered_question(
                    business_id=business_id,
                    question_text=question,
                    normalized_text=normalized,
                    content_hash=content_hash,
                    confidence_score=confidence_score,
                    session_id=session_id,
                    context_sources_searched=searched,
                    conversation_context=conversation_context or {},
                    language_code=language,
                )
            except PersistenceConflict:
                logger.info(f"Unanswered question insert raced, retrying as update: {content_hash[:12]}")
                record = await self.repository.bump_unanswered_question(
                    business_id=business_id,
                    content_hash=content_hash,
                    confidence_score=confidence_score,
                    session_id=session_id,
                )

            logger.info(
                f"Unanswered question tracked: business={business_id} session={session_id} "
                f"hash={content_hash[:12]} frequency={record.frequency if record else '?'} "
                f"confidence={confidence_score:.2f}"
            )
            return record

        except Exception as e:
            logger.error(
                f"Failed to track unanswered question ({type(e).__name__}): "
                f"business={business_id} session={session_id} hash={content_hash}: {e}"
            )
            return None
