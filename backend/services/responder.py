"""Response generation with grounding context and deterministic fallbacks."""
import logging
import time
from typing import Optional

from prompts.system import DEFLECTION_REPLY, GENERIC_HELP_REPLY, SYSTEM_PROMPT, get_fallback_reply
from services.llm import CompletionClient, CompletionResult
from services.models import BusinessInfo, ContextCandidate, GeneratedResponse, SourceUsed
from services.security import SecurityScreen

logger = logging.getLogger(__name__)


def build_context(candidates: list[ContextCandidate], business_info: Optional[BusinessInfo]) -> str:
    """Build the grounding string handed to the model."""
    name = (business_info.company_name if business_info else None) or "Unknown Business"
    context = f"Business: {name}\n\n"

    if not candidates:
        return context + "No specific context available for this question.\n"

    context += "Relevant Business Information:\n\n"
    for i, candidate in enumerate(candidates, 1):
        context += f"{i}. {candidate.display_name}:\n{candidate.content}\n\n"
    return context


class ResponseGenerator:
    """Produces replies through the completion API, degrading to canned text."""

    def __init__(
        self,
        completion_client: CompletionClient,
        security: SecurityScreen,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        self.completion_client = completion_client
        self.security = security
        self.system_prompt = system_prompt

    async def generate(
        self,
        question: str,
        context_candidates: list[ContextCandidate],
        confidence_score: float = 0.0,
        is_confident: bool = False,
        business_info: Optional[BusinessInfo] = None,
        language: str = "en",
    ) -> GeneratedResponse:
        """
        Generate a reply for the question.

        Confident and unconfident branches share one completion request but
        resolve failures to different fallback texts.
        """
        start = time.monotonic()
        context = build_context(context_candidates, business_info)

        result, method = await self._request(question, context, language)
        text, method = self.resolve(result, method, question, is_confident)

        elapsed_ms = int((time.monotonic() - start) * 1000)

        logger.info(
            f"Generated response: method={method} length={len(text)} "
            f"time={elapsed_ms}ms sources={len(context_candidates)}"
        )

        return GeneratedResponse(
            response=text,
            confidence_score=confidence_score,
            is_confident=is_confident,
            response_time_ms=elapsed_ms,
            sources_used=[
                SourceUsed(
                    id=c.id,
                    source_kind=c.source_kind,
                    display_name=c.display_name,
                    similarity_score=c.similarity_score,
                )
                for c in context_candidates
            ],
            metadata={
                "language": language,
                "business_id": business_info.id if business_info else None,
                "context_sources_count": len(context_candidates),
                "response_length": len(text),
                "word_count": len(text.split()),
                "method": method,
                "upstream_error": str(result.error) if result.error else None,
            },
        )

    def resolve(
        self,
        result: CompletionResult,
        method: str,
        question: str,
        is_confident: bool,
    ) -> tuple[str, str]:
        """Turn a completion result into reply text and a method tag."""
        branch = "confident" if is_confident else "unconfident"
        if not result.ok:
            logger.warning(f"Completion unavailable, using {branch} fallback: {result.error}")
            return get_fallback_reply(question, is_confident), f"fallback_{branch}"
        if method == "deflected":
            return result.text, method
        return result.text, f"completion_{branch}"

    async def _request(self, question: str, context: str, language: str) -> tuple[CompletionResult, str]:
        """Screen the question, then call the completion API and screen its output."""
        verdict = self.security.validate_input(question, {"language": language})
        if not verdict.is_safe:
            logger.warning(
                f"Unsafe input reached the generator, deflecting: "
                f"{[f.kind for f in verdict.flags]} {question[:100]!r}"
            )
            return CompletionResult.success(DEFLECTION_REPLY), "deflected"

        result = await self.completion_client.complete(
            system_prompt=self.system_prompt,
            user_message=f"Context: {context}\n\nQuestion: {verdict.sanitized_text}",
        )
        if not result.ok:
            return result, "completion"

        filtered = self.security.filter_output(result.text) or GENERIC_HELP_REPLY
        screened = self.security.validate_output(filtered)
        return CompletionResult.success(screened.sanitized_response), "completion"
