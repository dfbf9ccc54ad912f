"""Claude completion client."""
from dataclasses import dataclass
from typing import Optional
import logging

import httpx
from anthropic import AsyncAnthropic

from config import get_settings
from services.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

_client: Optional[AsyncAnthropic] = None


def get_client() -> AsyncAnthropic:
    """Get or create Anthropic client."""
    global _client
    if _client is None:
        settings = get_settings()
        _client = AsyncAnthropic(
            api_key=settings.anthropic_api_key,
            timeout=httpx.Timeout(settings.completion_timeout, connect=5.0),
            max_retries=1,
        )
    return _client


@dataclass(frozen=True)
class CompletionResult:
    """Either generated text or the upstream error that prevented it."""
    text: Optional[str] = None
    error: Optional[UpstreamUnavailable] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, text: str) -> "CompletionResult":
        return cls(text=text)

    @classmethod
    def failure(cls, error: UpstreamUnavailable) -> "CompletionResult":
        return cls(error=error)


class CompletionClient:
    """Thin wrapper over the Messages API that never raises for API errors."""

    def __init__(
        self,
        client: Optional[AsyncAnthropic] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ):
        settings = get_settings()
        self._client = client
        self.model = model or settings.claude_model
        self.max_tokens = max_tokens or settings.completion_max_tokens
        self.temperature = temperature if temperature is not None else settings.completion_temperature

    @property
    def client(self) -> AsyncAnthropic:
        return self._client or get_client()

    async def complete(self, system_prompt: str, user_message: str) -> CompletionResult:
        """
        Generate a reply.

        Args:
            system_prompt: System instructions
            user_message: Grounding context and the question

        Returns:
            CompletionResult with text, or with an UpstreamUnavailable error
        """
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": user_message}],
            )
            text = "".join(
                block.text for block in response.content if getattr(block, "type", None) == "text"
            )
            return CompletionResult.success(text)
        except Exception as e:
            logger.error(f"Claude completion failed ({type(e).__name__}): {e}")
            return CompletionResult.failure(
                UpstreamUnavailable(f"Completion request failed: {e}", cause=e)
            )
