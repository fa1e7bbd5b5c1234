"""Pydantic models for intent routing."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from scribe.core.errors import ValidationError


class Intent(str, Enum):
    """Closed set of capabilities a user utterance can be routed to."""

    ASK = "ask"
    WEB_SEARCH = "web_search"
    RAG_QUERY = "rag_query"
    EDIT_REQUEST = "edit_request"
    EDITOR_WRITE = "editor_write"
    OTHER = "other"

    @classmethod
    def parse(cls, value: "str | Intent") -> "Intent":
        """Parse a label, raising ValidationError for anything outside the set."""
        if isinstance(value, Intent):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as e:
            raise ValidationError(f"Unknown intent label: {value!r}", {"label": value}) from e

    @property
    def default_output(self) -> str:
        """Output shape the handling capability produces."""
        return {
            self.ASK: "answer",
            self.WEB_SEARCH: "links",
            self.RAG_QUERY: "answer",
            self.EDIT_REQUEST: "diff",
            self.EDITOR_WRITE: "answer",
            self.OTHER: "answer",
        }[self]


class Method(str, Enum):
    """Which signal of the fusion cascade produced a classification."""

    EMBEDDING = "embedding"
    CLASSIFIER = "classifier"
    META = "meta"
    FALLBACK = "fallback"


class RouterContext(BaseModel):
    """Request-shaping features. Passed through, never persisted by the router."""

    has_attached_docs: bool = False
    doc_ids: list[str] = Field(default_factory=list)
    is_selection_present: bool = False
    selection_length: int = Field(default=0, ge=0)
    recent_tools: list[str] = Field(default_factory=list)
    conversation_length: int = Field(default=0, ge=0)
    user_id: str | None = None
    document_id: str | None = None


class IntentSlots(BaseModel):
    """Parameters the handling capability needs beyond the intent itself."""

    topic: str | None = None
    needs_recency: bool = False
    target_docs: list[str] = Field(default_factory=list)
    edit_target: Literal["selection", "file", "section"] | None = None
    outputs: Literal["answer", "links", "summary", "diff", "patch"] = "answer"


class RouterClassification(BaseModel):
    """Authoritative routing decision for one request."""

    intent: Intent
    confidence: float = Field(..., ge=0.0, le=1.0)
    slots: IntentSlots = Field(default_factory=IntentSlots)
    method: Method
    reasoning: str | None = None
    signals: dict[str, float] = Field(
        default_factory=dict, description="Confidence reported by each signal consulted"
    )
    processing_time_ms: float = 0.0


class IntentExample(BaseModel):
    """Labelled utterance held by the embedding matcher."""

    text: str
    embedding: list[float]
    intent: Intent
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    source: Literal["seed", "feedback", "import"] = "seed"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class FeedbackRecord(BaseModel):
    """Correction of a routing decision, from a user or an evaluator."""

    query: str = Field(..., min_length=1)
    correct_intent: Intent
    predicted_intent: Intent
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    context: RouterContext | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_correction(self) -> bool:
        return self.correct_intent != self.predicted_intent


class RouterMetrics(BaseModel):
    """Read-only snapshot of router counters."""

    total_requests: int = 0
    average_confidence: float = 0.0
    average_latency_ms: float = 0.0
    method_counts: dict[str, int] = Field(default_factory=dict)
    intent_distribution: dict[str, int] = Field(default_factory=dict)
    feedback_count: int = 0
    correction_count: int = 0


# =========================
# Signal results
# =========================


@dataclass
class Neighbor:
    text: str
    intent: Intent
    similarity: float
    confidence: float


@dataclass
class MatchResult:
    """Nearest-neighbour vote of the embedding matcher."""

    intent: Intent
    confidence: float
    agreement: float = 0.0
    neighbors: list[Neighbor] = field(default_factory=list)

    @property
    def best_similarity(self) -> float:
        return self.neighbors[0].similarity if self.neighbors else 0.0


@dataclass
class ClassifierResult:
    intent: Intent
    confidence: float
    probabilities: dict[str, float] = field(default_factory=dict)


@dataclass
class MetaResult:
    """Meta-classifier outcome. available=False means timeout or upstream failure."""

    available: bool
    intent: Intent | None = None
    confidence: float = 0.0
    reasoning: str | None = None
    needs_recency: bool | None = None
    topic: str | None = None
    error: str | None = None

    @classmethod
    def unavailable(cls, error: str) -> "MetaResult":
        return cls(available=False, error=error)
