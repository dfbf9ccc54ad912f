"""Pattern-based screening of user input and generated replies.

Input is checked against two independent pattern sets: injection patterns
(instruction overrides, requests for system internals, roleplay, jailbreak
phrasing) and suspicious patterns (code/SQL injection substrings, backend
probing). Either raises a blocking flag. Topical relevance to the business
vocabulary only ever produces a warning.

The pattern lists and vocabulary are English-only.
"""
import logging
import re
from typing import Optional

from pydantic import BaseModel, ConfigDict

from prompts.system import GENERIC_HELP_REPLY
from services.models import (
    OutputVerdict,
    RelevanceScore,
    SecurityFlag,
    SecurityVerdict,
    SecurityWarning,
    Severity,
)

logger = logging.getLogger(__name__)

FILTERED_TOKEN = "[FILTERED]"
LOW_RELEVANCE_THRESHOLD = 0.1


class GuardrailConfig(BaseModel):
    """Immutable pattern tables for the security screen."""
    model_config = ConfigDict(frozen=True)

    injection_patterns: tuple[str, ...]
    suspicious_patterns: tuple[str, ...]
    business_keywords: tuple[str, ...]
    leakage_patterns: tuple[str, ...]
    unsafe_topic_patterns: tuple[str, ...]
    # (pattern, replacement) pairs applied to flagged replies
    output_rewrites: tuple[tuple[str, str], ...]
    # self-referential phrases removed from every completion
    sensitive_output_patterns: tuple[str, ...]


DEFAULT_GUARDRAILS = GuardrailConfig(
    injection_patterns=(
        # Direct override attempts
        r"ignore\s+(?:previous|all)\s+(?:instructions?|prompts?)",
        r"ignore\s+all\s+previous\s+instructions",
        r"forget\s+(?:everything|all)\s+(?:previous|prior)",
        r"forget\s+everything",
        r"you\s+are\s+now\s+(?:a\s+)?(?:different|new)",
        r"pretend\s+to\s+be",
        r"act\s+as\s+if",
        r"roleplay\s+as",
        r"system\s*:\s*",
        r"assistant\s*:\s*",
        r"user\s*:\s*",
        r"new\s+(?:instructions?|rules?|prompts?)",
        r"override\s+(?:previous|current)",
        r"disregard\s+(?:previous|all)",
        r"ignore\s+(?:the\s+)?(?:above|previous)",
        # System information requests
        r"what\s+(?:are\s+)?(?:your\s+)?(?:instructions?|prompts?)",
        r"show\s+(?:me\s+)?(?:your\s+)?(?:system\s+)?(?:instructions?|prompts?)",
        r"reveal\s+(?:your\s+)?(?:instructions?|prompts?)",
        r"tell\s+me\s+(?:your\s+)?(?:instructions?|prompts?)",
        # Jailbreaks
        r"jailbreak",
        r"developer\s+mode",
        r"admin\s+mode",
        r"debug\s+mode",
        r"bypass\s+(?:security|filters?)",
    ),
    suspicious_patterns=(
        r"what\s+(?:is\s+)?(?:the\s+)?(?:backend|server|database|api)",
        r"how\s+(?:does\s+)?(?:the\s+)?(?:system|backend|server)",
        r"explain\s+(?:the\s+)?(?:system|backend|server)",
        r"<script",
        r"javascript:",
        r"eval\s*\(",
        r"function\s*\(",
        r"\.exec\s*\(",
        r"union\s+select",
        r"drop\s+table",
        r"delete\s+from",
        r"insert\s+into",
        r"update\s+set",
        r"select\s+\*\s+from",
    ),
    business_keywords=(
        "service", "services", "product", "products", "company", "business",
        "customer", "customers", "client", "clients", "price", "prices",
        "cost", "costs", "fee", "fees", "payment", "payments", "order",
        "orders", "purchase", "purchases", "buy", "buying", "support", "help",
        "assistance", "contact", "phone", "email", "hours", "time", "schedule",
        "appointment", "appointments", "booking", "bookings", "reservation",
        "reservations", "location", "address", "directions", "map", "store",
        "office", "about", "team", "staff", "employee", "employees", "founder",
        "owner", "policy", "policies", "terms", "conditions", "refund",
        "refunds", "return", "returns", "warranty", "warranties",
    ),
    leakage_patterns=(
        r"\bmy\s+(?:instructions?|prompts?)\b",
        r"\bi\s+(?:am\s+)?(?:an\s+)?ai\b",
        r"\bi\s+(?:am\s+)?(?:a\s+)?(?:chatbot|bot)\b",
        r"\b(?:backend|server|database|api)\b",
        r"\bsystem\s+(?:prompt|instruction)",
    ),
    unsafe_topic_patterns=(
        r"\b(?:hate|racis[tm]|discriminat)",
        r"\b(?:violen|harm\b|hurt)",
        r"\b(?:illegal|crime|criminal)",
        r"\b(?:inappropriate|offensive)",
    ),
    output_rewrites=(
        (r"\bmy\s+(?:instructions?|prompts?)\b", "my purpose"),
        (r"\bi\s+(?:am\s+)?(?:an\s+)?ai\b", "I'm here to help"),
        (r"\b(?:backend|server|database|api)\b", "system"),
    ),
    sensitive_output_patterns=(
        r"system\s*prompt",
        r"instructions?\s*are",
        r"my\s*(?:system\s*)?instructions?",
        r"I\s*am\s*programmed\s*to",
        r"I\s*was\s*told\s*to",
        r"my\s*role\s*is",
        r"I\s*am\s*a\s*chatbot",
        r"I\s*am\s*an\s*AI",
        r"as\s*an\s*AI",
        r"I\s*cannot\s*execute\s*code",
        r"I\s*don't\s*have\s*access\s*to",
        r"I\s*am\s*designed\s*to",
        r"my\s*purpose\s*is",
        r"I\s*am\s*here\s*to",
        r"according\s*to\s*my\s*instructions?",
        r"based\s*on\s*my\s*programming",
    ),
)


def _compile(patterns) -> list[re.Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


class SecurityScreen:
    """Detects and sanitizes adversarial or off-topic text."""

    def __init__(self, config: GuardrailConfig = DEFAULT_GUARDRAILS):
        self.config = config
        self._injection = _compile(config.injection_patterns)
        self._suspicious = _compile(config.suspicious_patterns)
        self._leakage = _compile(config.leakage_patterns)
        self._unsafe_topics = _compile(config.unsafe_topic_patterns)
        self._rewrites = [(re.compile(p, re.IGNORECASE), r) for p, r in config.output_rewrites]
        self._sensitive = _compile(config.sensitive_output_patterns)
        self._keywords = frozenset(config.business_keywords)

    def validate_input(self, text: Optional[str], context: Optional[dict] = None) -> SecurityVerdict:
        """
        Screen user input.

        Args:
            text: Raw user text
            context: Caller context (business/session ids), used for logging only

        Returns:
            SecurityVerdict; unsafe iff at least one flag was raised
        """
        if not text or not isinstance(text, str):
            return SecurityVerdict(is_safe=True, sanitized_text=text)

        flags: list[SecurityFlag] = []
        warnings: list[SecurityWarning] = []

        injection = _first_match(self._injection, text)
        if injection:
            pattern, match = injection
            flags.append(SecurityFlag(
                kind="prompt_injection",
                severity=Severity.HIGH,
                matched_pattern=pattern,
                match=match,
                message="Potential prompt injection attempt detected",
            ))

        suspicious = _first_match(self._suspicious, text)
        if suspicious:
            pattern, match = suspicious
            flags.append(SecurityFlag(
                kind="suspicious_pattern",
                severity=Severity.MEDIUM,
                matched_pattern=pattern,
                match=match,
                message="Suspicious pattern detected",
            ))

        relevance = self.check_relevance(text)
        if relevance.score < LOW_RELEVANCE_THRESHOLD:
            warnings.append(SecurityWarning(
                kind="low_relevance",
                score=relevance.score,
                message="Input may not be relevant to business context",
            ))

        sanitized = self.sanitize_input(text) if flags else text
        is_safe = not flags

        logger.info(
            f"Input validation: length={len(text)} safe={is_safe} flags={len(flags)} "
            f"warnings={len(warnings)} relevance={relevance.score:.2f}"
        )

        return SecurityVerdict(
            is_safe=is_safe,
            flags=flags,
            warnings=warnings,
            sanitized_text=sanitized,
            metadata={
                "original_length": len(text),
                "sanitized_length": len(sanitized),
                "context_relevance": relevance.score,
                "context": context or {},
            },
        )

    def check_relevance(self, text: Optional[str]) -> RelevanceScore:
        """Share of tokens that belong to the business vocabulary."""
        if not text or not text.strip():
            return RelevanceScore(score=0.0, relevant_words=[], total_words=0)

        words = text.lower().split()
        relevant = []
        for word in words:
            clean = re.sub(r"[^\w]", "", word)
            if self._is_business_word(clean):
                relevant.append(clean)

        score = len(relevant) / len(words)
        if len(relevant) >= 2:
            score = min(1.0, score + 0.2)

        return RelevanceScore(score=score, relevant_words=relevant, total_words=len(words))

    def _is_business_word(self, word: str) -> bool:
        if not word:
            return False
        if word in self._keywords:
            return True
        if len(word) < 3:
            return False
        return any(
            len(keyword) >= 3 and (keyword in word or word in keyword)
            for keyword in self._keywords
        )

    def sanitize_input(self, text: str) -> str:
        """Replace every injection/suspicious span with a placeholder."""
        sanitized = text
        for pattern in self._injection + self._suspicious:
            sanitized = pattern.sub(FILTERED_TOKEN, sanitized)
        return re.sub(r"\s+", " ", sanitized).strip()

    def validate_output(self, text: Optional[str]) -> OutputVerdict:
        """Screen a generated reply; flagged replies are rewritten, not dropped."""
        if not text or not isinstance(text, str):
            return OutputVerdict(is_safe=True, sanitized_response=text)

        flags: list[SecurityFlag] = []
        warnings: list[SecurityWarning] = []

        leak = _first_match(self._leakage, text)
        if leak:
            flags.append(SecurityFlag(
                kind="system_info_leak",
                severity=Severity.HIGH,
                matched_pattern=leak[0],
                match=leak[1],
                message="Response may contain system information",
            ))

        unsafe = _first_match(self._unsafe_topics, text)
        if unsafe:
            flags.append(SecurityFlag(
                kind="inappropriate_content",
                severity=Severity.MEDIUM,
                matched_pattern=unsafe[0],
                match=unsafe[1],
                message="Response may contain inappropriate content",
            ))

        relevance = self.check_relevance(text)
        if relevance.score < LOW_RELEVANCE_THRESHOLD:
            warnings.append(SecurityWarning(
                kind="off_topic",
                score=relevance.score,
                message="Response may be off-topic",
            ))

        is_safe = not flags
        return OutputVerdict(
            is_safe=is_safe,
            flags=flags,
            warnings=warnings,
            sanitized_response=text if is_safe else self.sanitize_response(text),
        )

    def sanitize_response(self, text: str) -> str:
        sanitized = text
        for pattern, replacement in self._rewrites:
            sanitized = pattern.sub(replacement, sanitized)
        return sanitized

    def filter_output(self, text: Optional[str]) -> str:
        """Strip self-referential phrasing from a raw completion."""
        if not text or not isinstance(text, str):
            return ""

        filtered = text
        hits = 0
        for pattern in self._sensitive:
            filtered, count = pattern.subn(FILTERED_TOKEN, filtered)
            hits += 1 if count else 0

        if hits:
            logger.warning(
                f"Filtered {hits} sensitive pattern(s) from output "
                f"({len(text)} -> {len(filtered)} chars)"
            )

        if not filtered.strip() or filtered.strip() == FILTERED_TOKEN:
            return GENERIC_HELP_REPLY
        return filtered

    def log_security_event(self, event: dict) -> None:
        """Log a security event with truncated excerpts."""
        excerpt_in = (event.get("input") or "")[:100]
        excerpt_out = (event.get("response") or "")[:100]
        flag_kinds = [
            f.kind if isinstance(f, SecurityFlag) else f.get("kind")
            for f in event.get("flags", [])
        ]
        logger.warning(
            f"Security event {event.get('type')} severity={event.get('severity')} "
            f"session={event.get('session_id')} business={event.get('business_id')} "
            f"flags={flag_kinds} input={excerpt_in!r} response={excerpt_out!r}"
        )


def _first_match(patterns: list[re.Pattern], text: str) -> Optional[tuple[str, str]]:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return pattern.pattern, match.group(0)
    return None
