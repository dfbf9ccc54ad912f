"""Shared models for services."""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SourceKind(str, Enum):
    """Kind of business-authored content a candidate came from."""
    TEMPLATE = "template"
    SECTION = "section"
    FAQ = "faq"


class RetrievalPolicy(str, Enum):
    """How candidates are selected for grounding."""
    FILTERED = "filtered"  # lexical similarity, thresholded and ranked
    ALL = "all"  # every active unit, stamped with a maximal score


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ContextCandidate(BaseModel):
    """One retrievable unit of business content, scored against a query."""
    id: int
    source_kind: SourceKind
    section_key: Optional[str] = None
    display_name: str
    content: str = Field(min_length=1)
    similarity_score: float = Field(ge=0.0, le=1.0)
    adjusted_score: float = 0.0  # similarity plus diversity bonus, ranking only
    source_metadata: dict = Field(default_factory=dict)

    @property
    def character_count(self) -> int:
        count = self.source_metadata.get("character_count")
        return count if count is not None else len(self.content)


class SearchResult(BaseModel):
    """Ranked candidates with search bookkeeping."""
    results: list[ContextCandidate]
    metadata: dict


class SecurityFlag(BaseModel):
    """A blocking finding raised by the security screen."""
    kind: str  # prompt_injection, suspicious_pattern, system_info_leak, ...
    severity: Severity
    matched_pattern: Optional[str] = None
    match: Optional[str] = None
    message: str


class SecurityWarning(BaseModel):
    """A non-blocking finding; never makes a verdict unsafe."""
    kind: str  # low_relevance, off_topic
    severity: Severity = Severity.LOW
    score: Optional[float] = None
    message: str


class SecurityVerdict(BaseModel):
    """Outcome of screening user input."""
    is_safe: bool
    flags: list[SecurityFlag] = Field(default_factory=list)
    warnings: list[SecurityWarning] = Field(default_factory=list)
    sanitized_text: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class OutputVerdict(BaseModel):
    """Outcome of screening a generated reply."""
    is_safe: bool
    flags: list[SecurityFlag] = Field(default_factory=list)
    warnings: list[SecurityWarning] = Field(default_factory=list)
    sanitized_response: Optional[str] = None


class RelevanceScore(BaseModel):
    """Topical relevance of text to the business vocabulary."""
    score: float
    relevant_words: list[str]
    total_words: int


class ConfidenceWeights(BaseModel):
    """Weights of the confidence components. Must sum to 1."""
    model_config = ConfigDict(frozen=True)

    relevance: float = 0.4
    completeness: float = 0.3
    source_quality: float = 0.2
    semantic_match: float = 0.1

    @model_validator(mode="after")
    def _check_sum(self):
        total = self.relevance + self.completeness + self.source_quality + self.semantic_match
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"confidence weights must sum to 1, got {total:.4f}")
        return self


class ConfidenceBreakdown(BaseModel):
    relevance: float
    completeness: float
    source_quality: float
    semantic_match: float


class ConfidenceResult(BaseModel):
    """Aggregated confidence with its components."""
    score: float
    is_confident: bool
    threshold: float
    breakdown: ConfidenceBreakdown
    weights: ConfidenceWeights
    context_sources_count: int = 0
    recommendations: list[str] = Field(default_factory=list)


class BusinessConfig(BaseModel):
    """Per-business overrides for confidence scoring."""
    model_config = ConfigDict(frozen=True)

    confidence_threshold: Optional[float] = None
    weights: Optional[ConfidenceWeights] = None


class BusinessInfo(BaseModel):
    """Business facts used in grounding context."""
    id: Optional[int] = None
    company_name: Optional[str] = None
    business_type: Optional[str] = None


class SourceUsed(BaseModel):
    """Compact reference to a candidate used in a reply."""
    id: int
    source_kind: SourceKind
    display_name: str
    similarity_score: float


class GeneratedResponse(BaseModel):
    """Reply produced by the response generator."""
    response: str
    confidence_score: float
    is_confident: bool
    response_time_ms: int
    sources_used: list[SourceUsed] = Field(default_factory=list)
    metadata: dict = Field(default_factory=dict)  # method, language, lengths


class QuestionStatus(str, Enum):
    UNANSWERED = "unanswered"
    RESOLVED = "resolved"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


class QuestionPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class UnansweredQuestion(BaseModel):
    """Deduplicated record of a question answered with low confidence."""
    id: Optional[int] = None
    business_id: int
    question_text: str
    normalized_text: str
    content_hash: str
    frequency: int = Field(default=1, ge=1)
    first_asked_at: datetime
    last_asked_at: datetime
    confidence_scores: list[float] = Field(default_factory=list)
    average_confidence: float = 0.0
    source_sessions: list[int] = Field(default_factory=list)
    status: QuestionStatus = QuestionStatus.UNANSWERED
    priority: QuestionPriority = QuestionPriority.MEDIUM
    language_code: str = "en"
    context_sources_searched: list[dict] = Field(default_factory=list)
    conversation_context: dict = Field(default_factory=dict)


class FrequentQuestion(BaseModel):
    question_text: str
    frequency: int


class UnansweredQuestionStats(BaseModel):
    """Aggregate counts over a business's tracked questions."""
    total: int = 0
    by_status: dict[str, int] = Field(
        default_factory=lambda: {s.value: 0 for s in QuestionStatus}
    )
    by_priority: dict[str, int] = Field(
        default_factory=lambda: {p.value: 0 for p in QuestionPriority}
    )
    by_language: dict[str, int] = Field(default_factory=dict)
    most_frequent: list[FrequentQuestion] = Field(default_factory=list)


class MessageType(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TestSession(BaseModel):
    """Chat testing session with running counters."""
    __test__ = False  # not a pytest class

    id: int
    business_id: int
    session_name: Optional[str] = None
    scenario_type: str = "manual"
    status: str = "active"
    message_count: int = 0
    answered_count: int = 0
    unanswered_count: int = 0
    total_response_time: int = 0
    average_response_time: Optional[int] = None
    average_confidence: Optional[float] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    metadata: dict = Field(default_factory=dict)


class TestMessage(BaseModel):
    """One persisted turn of a testing session."""
    __test__ = False

    id: int
    session_id: int
    business_id: int
    message_type: MessageType
    content: str
    confidence_score: Optional[float] = None
    is_answered: bool = False
    context_sources: list[dict] = Field(default_factory=list)
    response_time: Optional[int] = None
    sequence_number: int
    security_flags: dict = Field(default_factory=dict)
    created_at: datetime


class SessionStats(BaseModel):
    session: TestSession
    messages: list[TestMessage]


class SecurityValidation(BaseModel):
    input_safe: bool
    response_safe: bool
    input_flags: list[SecurityFlag] = Field(default_factory=list)
    response_flags: list[SecurityFlag] = Field(default_factory=list)


class ProcessResult(BaseModel):
    """Result of processing one inbound message. Failures set success=False."""
    success: bool
    response: Optional[str] = None
    confidence_score: Optional[float] = None
    is_answered: Optional[bool] = None
    response_time_ms: int = 0
    context_sources: Optional[list[ContextCandidate]] = None
    security_validation: Optional[SecurityValidation] = None
    security_flags: Optional[list[SecurityFlag]] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
