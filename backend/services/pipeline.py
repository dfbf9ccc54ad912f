"""Message pipeline for chatbot testing sessions."""
from typing import Optional
import logging
import time

from config import Settings, get_settings
from services.confidence import ConfidenceScorer
from services.context_search import ContextRetriever
from services.errors import PersistenceFailure, SecurityRejection
from services.llm import CompletionClient
from services.models import (
    ContextCandidate,
    MessageType,
    ProcessResult,
    RetrievalPolicy,
    SecurityValidation,
    SessionStats,
    TestSession,
)
from services.responder import ResponseGenerator
from services.security import SecurityScreen
from services.unanswered import UnansweredQuestionTracker

logger = logging.getLogger(__name__)


def grounding_evidence(candidates: list[ContextCandidate]) -> str:
    """Joined candidate content, scored as the answer before generation."""
    return "\n\n".join(c.content for c in candidates)


class MessagePipeline:
    """
    Runs one inbound message through the whole pipeline.

    1. Screen input (unsafe input is rejected here)
    2. Persist the user message
    3. Retrieve context
    4. Score confidence
    5. Generate the reply
    6. Screen the reply
    7. Persist the assistant message
    8. Track the question if confidence is low
    9. Record candidate hits
    10. Update session statistics

    `process_message` is the error boundary and never raises.
    """

    def __init__(
        self,
        repository,
        security: SecurityScreen,
        retriever: ContextRetriever,
        scorer: ConfidenceScorer,
        generator: ResponseGenerator,
        tracker: UnansweredQuestionTracker,
        settings: Optional[Settings] = None,
    ):
        self.repository = repository
        self.security = security
        self.retriever = retriever
        self.scorer = scorer
        self.generator = generator
        self.tracker = tracker
        self.settings = settings or get_settings()

    async def process_message(
        self,
        message: str,
        session_id: int,
        business_id: int,
        language: str = "en",
        user_context: Optional[dict] = None,
    ) -> ProcessResult:
        start = time.monotonic()
        logger.info(
            f"Processing message: session={session_id} business={business_id} "
            f"length={len(message or '')} language={language}"
        )

        verdict = self.security.validate_input(message, {
            "business_id": business_id,
            "session_id": session_id,
            "user_context": user_context or {},
        })
        if not verdict.is_safe:
            self.security.log_security_event({
                "type": "unsafe_input",
                "severity": "high",
                "input": message,
                "flags": verdict.flags,
                "session_id": session_id,
                "business_id": business_id,
            })
            rejection = SecurityRejection("Input contains potentially harmful content", verdict.flags)
            return ProcessResult(
                success=False,
                error=str(rejection),
                error_type=type(rejection).__name__,
                security_flags=verdict.flags,
                security_validation=SecurityValidation(
                    input_safe=False,
                    response_safe=True,
                    input_flags=verdict.flags,
                ),
                response_time_ms=_elapsed_ms(start),
            )

        question = verdict.sanitized_text
        try:
            await self._save(
                session_id=session_id,
                business_id=business_id,
                message_type=MessageType.USER,
                content=question,
                security_flags={"warnings": [w.model_dump(mode="json") for w in verdict.warnings]},
            )

            search = await self.retriever.search(
                query=question,
                business_id=business_id,
                language=language,
                threshold=self.settings.retrieval_threshold,
                limit=self.settings.retrieval_limit,
                policy=RetrievalPolicy(self.settings.retrieval_policy),
            )
            candidates = search.results

            business_config = await self.repository.get_business_config(business_id)
            confidence = self.scorer.score(
                question=question,
                response=grounding_evidence(candidates),
                context_candidates=candidates,
                semantic_score=candidates[0].similarity_score if candidates else 0.0,
                business_config=business_config,
            )

            business_info = await self.repository.get_business_info(business_id)
            generated = await self.generator.generate(
                question=question,
                context_candidates=candidates,
                confidence_score=confidence.score,
                is_confident=confidence.is_confident,
                business_info=business_info,
                language=language,
            )

            output = self.security.validate_output(generated.response)
            reply = generated.response
            if not output.is_safe:
                self.security.log_security_event({
                    "type": "unsafe_response",
                    "severity": "high",
                    "response": generated.response,
                    "flags": output.flags,
                    "session_id": session_id,
                    "business_id": business_id,
                })
                reply = output.sanitized_response

            assistant_message = await self._save(
                session_id=session_id,
                business_id=business_id,
                message_type=MessageType.ASSISTANT,
                content=reply,
                confidence_score=confidence.score,
                is_answered=confidence.is_confident,
                context_sources=[s.model_dump(mode="json") for s in generated.sources_used],
                response_time=generated.response_time_ms,
                security_flags={"flags": [f.model_dump(mode="json") for f in output.flags]},
            )

            if not confidence.is_confident:
                await self.tracker.track(
                    question=question,
                    business_id=business_id,
                    session_id=session_id,
                    context_candidates=candidates,
                    confidence_score=confidence.score,
                    conversation_context=await self._conversation_context(session_id),
                    language=language,
                )

            await self.retriever.record_usage(candidates)

            await self._update_session_stats(
                session_id,
                is_answered=confidence.is_confident,
                response_time=generated.response_time_ms,
                confidence_score=confidence.score,
            )

            total_ms = _elapsed_ms(start)
            logger.info(
                f"Message processed: session={session_id} business={business_id} "
                f"time={total_ms}ms confidence={confidence.score:.2f} "
                f"answered={confidence.is_confident} sources={len(candidates)}"
            )

            return ProcessResult(
                success=True,
                response=reply,
                confidence_score=confidence.score,
                is_answered=confidence.is_confident,
                response_time_ms=total_ms,
                context_sources=candidates,
                security_validation=SecurityValidation(
                    input_safe=verdict.is_safe,
                    response_safe=output.is_safe,
                    input_flags=verdict.flags,
                    response_flags=output.flags,
                ),
                metadata={
                    "session_id": session_id,
                    "business_id": business_id,
                    "language": language,
                    "message_id": assistant_message.id,
                    "method": generated.metadata.get("method"),
                    "confidence": confidence.model_dump(mode="json"),
                    "search": search.metadata,
                },
            )

        except Exception as e:
            logger.exception(
                f"Message processing failed: session={session_id} business={business_id} "
                f"message={(message or '')[:100]!r}"
            )
            await self._save_error(session_id, business_id, e)

            if isinstance(e, PersistenceFailure):
                error = "Internal error while saving the conversation"
            else:
                error = "Failed to process message"
            return ProcessResult(
                success=False,
                error=error,
                error_details=str(e),
                error_type=type(e).__name__,
                response_time_ms=_elapsed_ms(start),
            )

    async def _save(self, **fields):
        return await self.repository.add_message(**fields)

    async def _save_error(self, session_id: int, business_id: int, error: Exception) -> None:
        """Best-effort system message recording the failure."""
        try:
            await self.repository.add_message(
                session_id=session_id,
                business_id=business_id,
                message_type=MessageType.SYSTEM,
                content=f"Error: {error}",
                security_flags={"error": True},
            )
        except Exception as save_error:
            logger.error(f"Failed to save error message for session {session_id}: {save_error}")

    async def _conversation_context(self, session_id: int) -> dict:
        try:
            messages = await self.repository.list_messages(
                session_id, limit=self.settings.history_window, newest_first=True
            )
        except Exception as e:
            logger.warning(f"Could not load conversation context for session {session_id}: {e}")
            return {"recent_messages": [], "message_count": 0}

        return {
            "recent_messages": [
                {
                    "type": m.message_type.value,
                    "content": m.content[:100],
                    "sequence_number": m.sequence_number,
                }
                for m in messages
            ],
            "message_count": len(messages),
        }

    async def _update_session_stats(self, session_id: int, **stats) -> None:
        try:
            await self.repository.update_session_stats(session_id, **stats)
        except PersistenceFailure as e:
            logger.error(f"Failed to update stats for session {session_id}: {e}")

    async def create_session(
        self,
        business_id: int,
        session_name: Optional[str] = None,
        scenario_type: str = "manual",
        metadata: Optional[dict] = None,
    ) -> TestSession:
        session = await self.repository.create_session(
            business_id=business_id,
            session_name=session_name,
            scenario_type=scenario_type,
            metadata=metadata,
        )
        logger.info(f"Test session created: id={session.id} business={business_id}")
        return session

    async def get_session_stats(self, session_id: int) -> SessionStats:
        """Session counters plus its messages in sequence order."""
        session = await self.repository.get_session(session_id)
        if session is None:
            raise LookupError(f"Session {session_id} not found")
        messages = await self.repository.list_messages(session_id)
        return SessionStats(session=session, messages=messages)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def build_pipeline(
    repository,
    completion_client: Optional[CompletionClient] = None,
    settings: Optional[Settings] = None,
) -> MessagePipeline:
    """Wire a pipeline with default components."""
    settings = settings or get_settings()
    security = SecurityScreen()
    return MessagePipeline(
        repository=repository,
        security=security,
        retriever=ContextRetriever(repository, diversity_bonus=settings.diversity_bonus),
        scorer=ConfidenceScorer(default_threshold=settings.confidence_threshold),
        generator=ResponseGenerator(completion_client or CompletionClient(), security),
        tracker=UnansweredQuestionTracker(repository),
        settings=settings,
    )


_pipeline: Optional[MessagePipeline] = None


def get_pipeline() -> MessagePipeline:
    """Get or create the process-wide pipeline backed by Postgres."""
    global _pipeline
    if _pipeline is None:
        from services.database import Repository
        _pipeline = build_pipeline(Repository())
    return _pipeline
