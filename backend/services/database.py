"""PostgreSQL persistence for business content, testing sessions and unanswered questions."""
import json
import logging
from typing import Optional
from contextlib import asynccontextmanager

import asyncpg

from config import get_settings
from services.errors import PersistenceConflict, PersistenceFailure
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

logger = logging.getLogger(__name__)

# Global connection pool
_pool: Optional[asyncpg.Pool] = None


async def init_database() -> None:
    """Initialize database connection pool and create tables."""
    global _pool
    settings = get_settings()

    if not settings.database_url:
        logger.warning("DATABASE_URL not set, skipping database initialization")
        return

    try:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=2,
            max_size=10,
            command_timeout=60,
        )
        logger.info("Database connection pool initialized")

        await create_tables(_pool)
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


async def close_database() -> None:
    """Close database connection pool."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database connection pool closed")


def get_pool() -> asyncpg.Pool:
    if not _pool:
        raise RuntimeError("Database not initialized")
    return _pool


async def is_database_ready() -> bool:
    """Check if database is initialized and ready."""
    return _pool is not None


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS businesses (
        id SERIAL PRIMARY KEY,
        company_name VARCHAR(255) NOT NULL,
        business_type VARCHAR(100),
        confidence_threshold DOUBLE PRECISION,
        confidence_weights JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS business_template_responses (
        id SERIAL PRIMARY KEY,
        business_id INTEGER NOT NULL REFERENCES businesses(id) ON DELETE CASCADE,
        template_id INTEGER,
        section_key VARCHAR(100),
        language_code VARCHAR(10) NOT NULL DEFAULT 'en',
        content TEXT NOT NULL DEFAULT '',
        completion_status VARCHAR(20) NOT NULL DEFAULT 'draft',
        character_count INTEGER NOT NULL DEFAULT 0,
        word_count INTEGER NOT NULL DEFAULT 0,
        search_hits INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS business_context_sections (
        id SERIAL PRIMARY KEY,
        business_id INTEGER NOT NULL REFERENCES businesses(id) ON DELETE CASCADE,
        section_key VARCHAR(100),
        section_name VARCHAR(255),
        section_type VARCHAR(50),
        language_code VARCHAR(10) NOT NULL DEFAULT 'en',
        content TEXT NOT NULL DEFAULT '',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        character_count INTEGER NOT NULL DEFAULT 0,
        word_count INTEGER NOT NULL DEFAULT 0,
        search_hits INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS faq_items (
        id SERIAL PRIMARY KEY,
        business_id INTEGER NOT NULL REFERENCES businesses(id) ON DELETE CASCADE,
        language_code VARCHAR(10) NOT NULL DEFAULT 'en',
        question TEXT NOT NULL,
        answer TEXT NOT NULL,
        category VARCHAR(100),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        usage_count INTEGER NOT NULL DEFAULT 0,
        success_rate DOUBLE PRECISION
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS test_sessions (
        id SERIAL PRIMARY KEY,
        business_id INTEGER NOT NULL REFERENCES businesses(id) ON DELETE CASCADE,
        session_name VARCHAR(255),
        scenario_type VARCHAR(20) NOT NULL DEFAULT 'manual',
        status VARCHAR(20) NOT NULL DEFAULT 'active',
        message_count INTEGER NOT NULL DEFAULT 0,
        answered_count INTEGER NOT NULL DEFAULT 0,
        unanswered_count INTEGER NOT NULL DEFAULT 0,
        total_response_time INTEGER NOT NULL DEFAULT 0,
        average_response_time INTEGER,
        confidence_total DOUBLE PRECISION NOT NULL DEFAULT 0,
        average_confidence DOUBLE PRECISION,
        last_sequence_number INTEGER NOT NULL DEFAULT 0,
        started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        completed_at TIMESTAMPTZ,
        metadata JSONB DEFAULT '{}',
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS test_messages (
        id SERIAL PRIMARY KEY,
        session_id INTEGER NOT NULL REFERENCES test_sessions(id) ON DELETE CASCADE,
        business_id INTEGER NOT NULL REFERENCES businesses(id) ON DELETE CASCADE,
        message_type VARCHAR(20) NOT NULL,
        content TEXT NOT NULL,
        confidence_score DOUBLE PRECISION,
        is_answered BOOLEAN NOT NULL DEFAULT FALSE,
        context_sources JSONB DEFAULT '[]',
        response_time INTEGER,
        sequence_number INTEGER NOT NULL,
        security_flags JSONB DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (session_id, sequence_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS unanswered_questions (
        id SERIAL PRIMARY KEY,
        business_id INTEGER NOT NULL REFERENCES businesses(id) ON DELETE CASCADE,
        question_text TEXT NOT NULL,
        normalized_question TEXT NOT NULL,
        question_hash VARCHAR(64) NOT NULL,
        frequency INTEGER NOT NULL DEFAULT 1,
        first_asked_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        last_asked_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        status VARCHAR(20) NOT NULL DEFAULT 'unanswered',
        priority VARCHAR(20) NOT NULL DEFAULT 'medium',
        confidence_scores DOUBLE PRECISION[] NOT NULL DEFAULT '{}',
        average_confidence DOUBLE PRECISION,
        source_sessions INTEGER[] NOT NULL DEFAULT '{}',
        context_sources_searched JSONB DEFAULT '[]',
        conversation_context JSONB DEFAULT '{}',
        language_code VARCHAR(10) NOT NULL DEFAULT 'en',
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (business_id, question_hash)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_unanswered_business_status
    ON unanswered_questions(business_id, status)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_test_messages_session
    ON test_messages(session_id, sequence_number)
    """,
]


async def create_tables(pool: asyncpg.Pool) -> None:
    """Create required tables if they don't exist."""
    async with pool.acquire() as conn:
        for statement in SCHEMA:
            await conn.execute(statement)
    logger.info("Database tables created/verified")


def _json(value, default):
    if value is None:
        return default
    return json.loads(value) if isinstance(value, str) else value


def _bump_set_clause(score: str, session: str) -> str:
    """SET clause applying one repeat occurrence; shared by upsert and bump."""
    return f"""
    frequency = unanswered_questions.frequency + 1,
    last_asked_at = NOW(),
    confidence_scores = array_append(unanswered_questions.confidence_scores, {score}::float8),
    average_confidence = (
        SELECT AVG(s) FROM unnest(
            array_append(unanswered_questions.confidence_scores, {score}::float8)
        ) AS s
    ),
    source_sessions = CASE
        WHEN {session}::int = ANY(unanswered_questions.source_sessions)
            THEN unanswered_questions.source_sessions
        ELSE array_append(unanswered_questions.source_sessions, {session}::int)
    END,
    updated_at = NOW()
"""


class Repository:
    """Storage operations used by the message pipeline."""

    def __init__(self, pool: Optional[asyncpg.Pool] = None):
        self._pool = pool

    @property
    def pool(self) -> asyncpg.Pool:
        return self._pool or get_pool()

    @asynccontextmanager
    async def connection(self):
        """Acquire a connection, mapping driver errors onto the pipeline taxonomy."""
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except asyncpg.UniqueViolationError as e:
            raise PersistenceConflict(str(e)) from e
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise PersistenceFailure(f"{type(e).__name__}: {e}") from e

    # Business content

    async def fetch_template_responses(self, business_id: int, language: str) -> list[dict]:
        async with self.connection() as conn:
            rows = await conn.fetch("""
                SELECT id, template_id, section_key, content, character_count, word_count, search_hits
                FROM business_template_responses
                WHERE business_id = $1 AND language_code = $2 AND completion_status = 'completed'
                ORDER BY id
            """, business_id, language)
        return [dict(row) for row in rows]

    async def fetch_context_sections(self, business_id: int, language: str) -> list[dict]:
        async with self.connection() as conn:
            rows = await conn.fetch("""
                SELECT id, section_key, section_name, section_type, content,
                       character_count, word_count, search_hits
                FROM business_context_sections
                WHERE business_id = $1 AND language_code = $2 AND is_active = TRUE
                ORDER BY id
            """, business_id, language)
        return [dict(row) for row in rows]

    async def fetch_faq_items(self, business_id: int, language: str) -> list[dict]:
        async with self.connection() as conn:
            rows = await conn.fetch("""
                SELECT id, question, answer, category, usage_count, success_rate
                FROM faq_items
                WHERE business_id = $1 AND language_code = $2 AND is_active = TRUE
                ORDER BY id
            """, business_id, language)
        return [dict(row) for row in rows]

    async def increment_template_hits(self, ids: list[int]) -> None:
        async with self.connection() as conn:
            await conn.execute(
                "UPDATE business_template_responses SET search_hits = search_hits + 1 WHERE id = ANY($1::int[])",
                ids,
            )

    async def increment_section_hits(self, ids: list[int]) -> None:
        async with self.connection() as conn:
            await conn.execute(
                "UPDATE business_context_sections SET search_hits = search_hits + 1 WHERE id = ANY($1::int[])",
                ids,
            )

    async def increment_faq_usage(self, ids: list[int]) -> None:
        async with self.connection() as conn:
            await conn.execute(
                "UPDATE faq_items SET usage_count = usage_count + 1 WHERE id = ANY($1::int[])",
                ids,
            )

    async def get_business_info(self, business_id: int) -> BusinessInfo:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT id, company_name, business_type FROM businesses WHERE id = $1",
                business_id,
            )
        return BusinessInfo(**dict(row)) if row else BusinessInfo()

    async def get_business_config(self, business_id: int) -> BusinessConfig:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT confidence_threshold, confidence_weights FROM businesses WHERE id = $1",
                business_id,
            )
        if not row:
            return BusinessConfig()
        weights = _json(row["confidence_weights"], None)
        return BusinessConfig(
            confidence_threshold=row["confidence_threshold"],
            weights=ConfidenceWeights(**weights) if weights else None,
        )

    # Unanswered questions

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
        """Insert a new record or bump the existing one in a single statement."""
        async with self.connection() as conn:
            row = await conn.fetchrow(f"""
                INSERT INTO unanswered_questions (
                    business_id, question_hash, question_text, normalized_question,
                    confidence_scores, average_confidence, source_sessions,
                    context_sources_searched, conversation_context, language_code
                )
                VALUES ($1, $2, $3, $4, ARRAY[$5::float8], $5::float8, ARRAY[$6::int], $7::jsonb, $8::jsonb, $9)
                ON CONFLICT (business_id, question_hash) DO UPDATE SET {_bump_set_clause('$5', '$6')}
                RETURNING *
            """,
                business_id, content_hash, question_text, normalized_text,
                confidence_score, session_id,
                json.dumps(context_sources_searched), json.dumps(conversation_context),
                language_code,
            )
        return self._unanswered(row)

    async def bump_unanswered_question(
        self,
        business_id: int,
        content_hash: str,
        confidence_score: float,
        session_id: int,
    ) -> Optional[UnansweredQuestion]:
        """Update an existing record as a repeat occurrence."""
        async with self.connection() as conn:
            row = await conn.fetchrow(f"""
                UPDATE unanswered_questions SET {_bump_set_clause('$3', '$4')}
                WHERE business_id = $1 AND question_hash = $2
                RETURNING *
            """, business_id, content_hash, confidence_score, session_id)
        return self._unanswered(row) if row else None

    async def list_unanswered_questions(
        self,
        business_id: int,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        limit: int = 50,
    ) -> list[UnansweredQuestion]:
        async with self.connection() as conn:
            rows = await conn.fetch("""
                SELECT * FROM unanswered_questions
                WHERE business_id = $1
                  AND ($2::text IS NULL OR status = $2)
                  AND ($3::text IS NULL OR priority = $3)
                ORDER BY frequency DESC, last_asked_at DESC
                LIMIT $4
            """, business_id, status, priority, limit)
        return [self._unanswered(row) for row in rows]

    async def unanswered_question_stats(self, business_id: int) -> UnansweredQuestionStats:
        """Counts by status, priority and language plus the five most frequent questions."""
        stats = UnansweredQuestionStats()
        async with self.connection() as conn:
            for column, counts in (
                ("status", stats.by_status),
                ("priority", stats.by_priority),
                ("language_code", stats.by_language),
            ):
                rows = await conn.fetch(f"""
                    SELECT {column} AS value, COUNT(*) AS count
                    FROM unanswered_questions
                    WHERE business_id = $1
                    GROUP BY {column}
                """, business_id)
                for row in rows:
                    counts[row["value"]] = row["count"]

            top = await conn.fetch("""
                SELECT question_text, frequency FROM unanswered_questions
                WHERE business_id = $1
                ORDER BY frequency DESC, last_asked_at DESC
                LIMIT 5
            """, business_id)

        stats.total = sum(stats.by_status.values())
        stats.most_frequent = [
            FrequentQuestion(question_text=row["question_text"], frequency=row["frequency"])
            for row in top
        ]
        return stats

    def _unanswered(self, row) -> UnansweredQuestion:
        return UnansweredQuestion(
            id=row["id"],
            business_id=row["business_id"],
            question_text=row["question_text"],
            normalized_text=row["normalized_question"],
            content_hash=row["question_hash"],
            frequency=row["frequency"],
            first_asked_at=row["first_asked_at"],
            last_asked_at=row["last_asked_at"],
            confidence_scores=list(row["confidence_scores"] or []),
            average_confidence=row["average_confidence"] or 0.0,
            source_sessions=list(row["source_sessions"] or []),
            status=row["status"],
            priority=row["priority"],
            language_code=row["language_code"],
            context_sources_searched=_json(row["context_sources_searched"], []),
            conversation_context=_json(row["conversation_context"], {}),
        )

    # Testing sessions

    async def create_session(
        self,
        business_id: int,
        session_name: Optional[str] = None,
        scenario_type: str = "manual",
        metadata: Optional[dict] = None,
    ) -> TestSession:
        async with self.connection() as conn:
            row = await conn.fetchrow("""
                INSERT INTO test_sessions (business_id, session_name, scenario_type, metadata)
                VALUES ($1, $2, $3, $4::jsonb)
                RETURNING *
            """, business_id, session_name, scenario_type, json.dumps(metadata or {}))
        return self._session(row)

    async def get_session(self, session_id: int) -> Optional[TestSession]:
        async with self.connection() as conn:
            row = await conn.fetchrow("SELECT * FROM test_sessions WHERE id = $1", session_id)
        return self._session(row) if row else None

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
        """
        Append a message to a session.

        The sequence number comes from the session's counter, incremented in
        the same transaction as the insert, so concurrent writers never share
        a position.
        """
        async with self.connection() as conn:
            async with conn.transaction():
                sequence_number = await conn.fetchval("""
                    UPDATE test_sessions
                    SET last_sequence_number = last_sequence_number + 1, updated_at = NOW()
                    WHERE id = $1
                    RETURNING last_sequence_number
                """, session_id)
                if sequence_number is None:
                    raise LookupError(f"Session {session_id} not found")

                row = await conn.fetchrow("""
                    INSERT INTO test_messages (
                        session_id, business_id, message_type, content, confidence_score,
                        is_answered, context_sources, response_time, sequence_number, security_flags
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10::jsonb)
                    RETURNING *
                """,
                    session_id, business_id, message_type.value, content, confidence_score,
                    is_answered, json.dumps(context_sources or []), response_time,
                    sequence_number, json.dumps(security_flags or {}),
                )
        return self._message(row)

    async def list_messages(
        self,
        session_id: int,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[TestMessage]:
        order = "DESC" if newest_first else "ASC"
        async with self.connection() as conn:
            rows = await conn.fetch(f"""
                SELECT * FROM test_messages
                WHERE session_id = $1
                ORDER BY sequence_number {order}
                LIMIT $2
            """, session_id, limit)
        return [self._message(row) for row in rows]

    async def update_session_stats(
        self,
        session_id: int,
        is_answered: bool,
        response_time: int,
        confidence_score: float,
    ) -> Optional[TestSession]:
        """Apply one exchange to the session counters in a single statement."""
        async with self.connection() as conn:
            row = await conn.fetchrow("""
                UPDATE test_sessions SET
                    message_count = message_count + 1,
                    answered_count = answered_count + CASE WHEN $2 THEN 1 ELSE 0 END,
                    unanswered_count = unanswered_count + CASE WHEN $2 THEN 0 ELSE 1 END,
                    total_response_time = total_response_time + $3,
                    average_response_time = ROUND((total_response_time + $3)::numeric / (message_count + 1)),
                    confidence_total = confidence_total + $4,
                    average_confidence = (confidence_total + $4) / (message_count + 1),
                    updated_at = NOW()
                WHERE id = $1
                RETURNING *
            """, session_id, is_answered, response_time, confidence_score)
        return self._session(row) if row else None

    def _session(self, row) -> TestSession:
        return TestSession(
            id=row["id"],
            business_id=row["business_id"],
            session_name=row["session_name"],
            scenario_type=row["scenario_type"],
            status=row["status"],
            message_count=row["message_count"],
            answered_count=row["answered_count"],
            unanswered_count=row["unanswered_count"],
            total_response_time=row["total_response_time"],
            average_response_time=row["average_response_time"],
            average_confidence=row["average_confidence"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            metadata=_json(row["metadata"], {}),
        )

    def _message(self, row) -> TestMessage:
        return TestMessage(
            id=row["id"],
            session_id=row["session_id"],
            business_id=row["business_id"],
            message_type=MessageType(row["message_type"]),
            content=row["content"],
            confidence_score=row["confidence_score"],
            is_answered=row["is_answered"],
            context_sources=_json(row["context_sources"], []),
            response_time=row["response_time"],
            sequence_number=row["sequence_number"],
            security_flags=_json(row["security_flags"], {}),
            created_at=row["created_at"],
        )
