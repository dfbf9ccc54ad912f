"""
Pytest configuration and fixtures.
"""

import os
from datetime import datetime, timezone
from itertools import count
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

# Set test environment
os.environ["ANTHROPIC_API_KEY"] = "test-key"
os.environ["DATABASE_URL"] = ""

from config import Settings
from services.errors import PersistenceConflict, PersistenceFailure
from services.llm import CompletionClient, CompletionResult
from services.models import (
    BusinessConfig,
    BusinessInfo,
    ConfidenceWeights,
    FrequentQuestion,
    MessageType,
    TestMessage,
    TestSession,
    UnansweredQuestion,
    UnansweredQuestionStats,
)
from services.pipeline import build_pipeline


PRICING_CONTENT = (
    "Here is what we charge: our prices are 40 dollars for a basic wash and 90 dollars "
    "for a premium package. Your first visit includes a free tyre shine. "
    "Contact us to book a visit today."
)

COMPLETION_REPLY = "Our basic wash costs 40 dollars and premium packages cost 90 dollars."


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRepository:
    """
    Dict-backed stand-in for services.database.Repository.

    Every counter update runs without awaiting in between, so each call is
    atomic under asyncio just like the single-statement SQL it replaces.
    """

    def __init__(self):
        self._ids = count(1)
        self.businesses: dict[int, dict] = {}
        self.templates: list[dict] = []
        self.sections: list[dict] = []
        self.faqs: list[dict] = []
        self.sessions: dict[int, TestSession] = {}
        self.last_sequence: dict[int, int] = {}
        self.messages: list[TestMessage] = []
        self.unanswered: dict[tuple[int, str], UnansweredQuestion] = {}
        self.fetch_calls = 0
        # failure injection
        self.conflict_on_next_upsert = False
        self.fail_upserts = False
        self.fail_writes = False
        self.fail_fetch: set[str] = set()

    def _next_id(self) -> int:
        return next(self._ids)

    # Seeding helpers

    def add_business(
        self,
        company_name: str = "Harbour Car Wash",
        business_type: str = "car_wash",
        confidence_threshold: Optional[float] = None,
        weights: Optional[ConfidenceWeights] = None,
    ) -> int:
        business_id = self._next_id()
        self.businesses[business_id] = {
            "company_name": company_name,
            "business_type": business_type,
            "confidence_threshold": confidence_threshold,
            "weights": weights,
        }
        return business_id

    def add_template(self, business_id: int, content: str, section_key: str = "general",
                     language: str = "en", status: str = "completed") -> int:
        template_id = self._next_id()
        self.templates.append({
            "id": template_id,
            "business_id": business_id,
            "language_code": language,
            "completion_status": status,
            "template_id": None,
            "section_key": section_key,
            "content": content,
            "character_count": len(content),
            "word_count": len(content.split()),
            "search_hits": 0,
        })
        return template_id

    def add_section(self, business_id: int, content: str, section_name: str = "About",
                    language: str = "en", is_active: bool = True) -> int:
        section_id = self._next_id()
        self.sections.append({
            "id": section_id,
            "business_id": business_id,
            "language_code": language,
            "is_active": is_active,
            "section_key": section_name.lower(),
            "section_name": section_name,
            "section_type": "general",
            "content": content,
            "character_count": len(content),
            "word_count": len(content.split()),
            "search_hits": 0,
        })
        return section_id

    def add_faq(self, business_id: int, question: str, answer: str,
                language: str = "en", is_active: bool = True) -> int:
        faq_id = self._next_id()
        self.faqs.append({
            "id": faq_id,
            "business_id": business_id,
            "language_code": language,
            "is_active": is_active,
            "question": question,
            "answer": answer,
            "category": None,
            "usage_count": 0,
            "success_rate": None,
        })
        return faq_id

    # Business content

    def _check_fetch(self, name: str):
        self.fetch_calls += 1
        if name in self.fail_fetch:
            raise PersistenceFailure(f"{name} unavailable")

    async def fetch_template_responses(self, business_id: int, language: str) -> list[dict]:
        self._check_fetch("templates")
        return [
            dict(row) for row in self.templates
            if row["business_id"] == business_id and row["language_code"] == language
            and row["completion_status"] == "completed"
        ]

    async def fetch_context_sections(self, business_id: int, language: str) -> list[dict]:
        self._check_fetch("sections")
        return [
            dict(row) for row in self.sections
            if row["business_id"] == business_id and row["language_code"] == language
            and row["is_active"]
        ]

    async def fetch_faq_items(self, business_id: int, language: str) -> list[dict]:
        self._check_fetch("faqs")
        return [
            dict(row) for row in self.faqs
            if row["business_id"] == business_id and row["language_code"] == language
            and row["is_active"]
        ]

    async def increment_template_hits(self, ids: list[int]) -> None:
        for row in self.templates:
            if row["id"] in ids:
                row["search_hits"] += 1

    async def increment_section_hits(self, ids: list[int]) -> None:
        for row in self.sections:
            if row["id"] in ids:
                row["search_hits"] += 1

    async def increment_faq_usage(self, ids: list[int]) -> None:
        for row in self.faqs:
            if row["id"] in ids:
                row["usage_count"] += 1

    async def get_business_info(self, business_id: int) -> BusinessInfo:
        business = self.businesses.get(business_id)
        if not business:
            return BusinessInfo()
        return BusinessInfo(
            id=business_id,
            company_name=business["company_name"],
            business_type=business["business_type"],
        )

    async def get_business_config(self, business_id: int) -> BusinessConfig:
        business = self.businesses.get(business_id)
        if not business:
            return BusinessConfig()
        return BusinessConfig(
            confidence_threshold=business["confidence_threshold"],
            weights=business["weights"],
        )

    # Unanswered questions

    def _bump(self, record: UnansweredQuestion, confidence_score: float, session_id: int):
        scores = record.confidence_scores + [confidence_score]
        sessions = record.source_sessions
        if session_id not in sessions:
            sessions = sessions + [session_id]
        return record.model_copy(update={
            "frequency": record.frequency + 1,
            "last_asked_at": _now(),
            "confidence_scores": scores,
            "average_confidence": sum(scores) / len(scores),
            "source_sessions": sessions,
        })

    async def upsert_unanswered_question(
        self,
        business_id: int,
        question_text: str,
        normalized_text: str,
        content_hash: str,
        confidence_score: float,
        session_id: int,
        context_sources_searched: list[dict],
        conversation_context: dict,
        language_code: str = "en",
    ) -> UnansweredQuestion:
        if self.fail_upserts:
            raise PersistenceFailure("store unreachable")

        key = (business_id, content_hash)
        if self.conflict_on_next_upsert:
            # another writer inserted the first occurrence between our check and insert
            self.conflict_on_next_upsert = False
            self.unanswered[key] = UnansweredQuestion(
                id=self._next_id(),
                business_id=business_id,
                question_text=question_text,
                normalized_text=normalized_text,
                content_hash=content_hash,
                first_asked_at=_now(),
                last_asked_at=_now(),
                confidence_scores=[confidence_score],
                average_confidence=confidence_score,
                source_sessions=[session_id + 1000],
                language_code=language_code,
            )
            raise PersistenceConflict("duplicate key value violates unique constraint")

        existing = self.unanswered.get(key)
        if existing:
            self.unanswered[key] = self._bump(existing, confidence_score, session_id)
        else:
            self.unanswered[key] = UnansweredQuestion(
                id=self._next_id(),
                business_id=business_id,
                question_text=question_text,
                normalized_text=normalized_text,
                content_hash=content_hash,
                first_asked_at=_now(),
                last_asked_at=_now(),
                confidence_scores=[confidence_score],
                average_confidence=confidence_score,
                source_sessions=[session_id],
                language_code=language_code,
                context_sources_searched=context_sources_searched,
                conversation_context=conversation_context,
            )
        return self.unanswered[key]

    async def bump_unanswered_question(
        self,
        business_id: int,
        content_hash: str,
        confidence_score: float,
        session_id: int,
    ) -> Optional[UnansweredQuestion]:
        key = (business_id, content_hash)
        existing = self.unanswered.get(key)
        if not existing:
            return None
        self.unanswered[key] = self._bump(existing, confidence_score, session_id)
        return self.unanswered[key]

    async def list_unanswered_questions(
        self,
        business_id: int,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        limit: int = 50,
    ) -> list[UnansweredQuestion]:
        records = [
            r for r in self.unanswered.values()
            if r.business_id == business_id
            and (status is None or r.status.value == status)
            and (priority is None or r.priority.value == priority)
        ]
        records.sort(key=lambda r: (r.frequency, r.last_asked_at), reverse=True)
        return records[:limit]

    async def unanswered_question_stats(self, business_id: int) -> UnansweredQuestionStats:
        stats = UnansweredQuestionStats()
        records = [r for r in self.unanswered.values() if r.business_id == business_id]
        for r in records:
            stats.by_status[r.status.value] += 1
            stats.by_priority[r.priority.value] += 1
            stats.by_language[r.language_code] = stats.by_language.get(r.language_code, 0) + 1
        stats.total = len(records)
        records.sort(key=lambda r: (r.frequency, r.last_asked_at), reverse=True)
        stats.most_frequent = [
            FrequentQuestion(question_text=r.question_text, frequency=r.frequency)
            for r in records[:5]
        ]
        return stats

    # Testing sessions

    async def create_session(
        self,
        business_id: int,
        session_name: Optional[str] = None,
        scenario_type: str = "manual",
        metadata: Optional[dict] = None,
    ) -> TestSession:
        session = TestSession(
            id=self._next_id(),
            business_id=business_id,
            session_name=session_name,
            scenario_type=scenario_type,
            started_at=_now(),
            metadata=metadata or {},
        )
        self.sessions[session.id] = session
        self.last_sequence[session.id] = 0
        return session

    async def get_session(self, session_id: int) -> Optional[TestSession]:
        return self.sessions.get(session_id)

    async def add_message(
        self,
        session_id: int,
        business_id: int,
        message_type: MessageType,
        content: str,
        confidence_score: Optional[float] = None,
        is_answered: bool = False,
        context_sources: Optional[list[dict]] = None,
        response_time: Optional[int] = None,
        security_flags: Optional[dict] = None,
    ) -> TestMessage:
        if self.fail_writes:
            raise PersistenceFailure("store unreachable")
        if session_id not in self.sessions:
            raise LookupError(f"Session {session_id} not found")

        self.last_sequence[session_id] += 1
        message = TestMessage(
            id=self._next_id(),
            session_id=session_id,
            business_id=business_id,
            message_type=message_type,
            content=content,
            confidence_score=confidence_score,
            is_answered=is_answered,
            context_sources=context_sources or [],
            response_time=response_time,
            sequence_number=self.last_sequence[session_id],
            security_flags=security_flags or {},
            created_at=_now(),
        )
        self.messages.append(message)
        return message

    async def list_messages(
        self,
        session_id: int,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[TestMessage]:
        messages = sorted(
            (m for m in self.messages if m.session_id == session_id),
            key=lambda m: m.sequence_number,
            reverse=newest_first,
        )
        return messages[:limit] if limit is not None else messages

    async def update_session_stats(
        self,
        session_id: int,
        is_answered: bool,
        response_time: int,
        confidence_score: float,
    ) -> Optional[TestSession]:
        session = self.sessions.get(session_id)
        if not session:
            return None

        message_count = session.message_count + 1
        total_response_time = session.total_response_time + response_time
        previous_total = (session.average_confidence or 0.0) * session.message_count
        self.sessions[session_id] = session.model_copy(update={
            "message_count": message_count,
            "answered_count": session.answered_count + (1 if is_answered else 0),
            "unanswered_count": session.unanswered_count + (0 if is_answered else 1),
            "total_response_time": total_response_time,
            "average_response_time": round(total_response_time / message_count),
            "average_confidence": (previous_total + confidence_score) / message_count,
        })
        return self.sessions[session_id]


@pytest.fixture
def repository():
    """Empty in-memory repository."""
    return InMemoryRepository()


@pytest.fixture
def completion():
    """Completion client whose API call succeeds with a fixed reply."""
    client = MagicMock(spec=CompletionClient)
    client.complete = AsyncMock(return_value=CompletionResult.success(COMPLETION_REPLY))
    return client


@pytest.fixture
def settings():
    """Default settings without a live database or API key."""
    return Settings(anthropic_api_key="test-key", database_url="")


@pytest.fixture
def pipeline(repository, completion, settings):
    """Pipeline wired to the in-memory repository and mocked completion client."""
    return build_pipeline(repository, completion_client=completion, settings=settings)


@pytest.fixture
def car_wash(repository):
    """Business with a pricing template and an unrelated FAQ."""
    business_id = repository.add_business()
    repository.add_template(business_id, PRICING_CONTENT, section_key="pricing")
    repository.add_faq(
        business_id,
        "Do I need an appointment?",
        "Walk-ins welcome, booking guarantees a slot.",
    )
    return business_id


@pytest.fixture
def empty_business(repository):
    """Business with no content at all."""
    return repository.add_business(company_name="Empty Bakery", business_type="bakery")
