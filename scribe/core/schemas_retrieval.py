"""Schemas for document retrieval: search scope, options and results."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

SearchStrategy = Literal["semantic", "hybrid", "adaptive"]
SearchStage = Literal["semantic", "hybrid", "expanded"]


class SearchScope(BaseModel):
    """Already-authorized scope of a search. Every index query is filtered by it."""

    user_id: str
    document_id: str | None = None

    @field_validator("user_id")
    @classmethod
    def _user_id_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("user_id must not be empty")
        return value

    def as_filter(self) -> dict[str, str]:
        """Metadata filter applied by the vector index and the chunk store."""
        flt = {"user_id": self.user_id}
        if self.document_id:
            flt["document_id"] = self.document_id
        return flt


class SearchOptions(BaseModel):
    """Per-call search options. None means "use the configured default"."""

    limit: int | None = Field(default=None, ge=1, le=100)
    threshold: float | None = Field(default=None, ge=-1.0, le=1.0)
    strategy: SearchStrategy = "adaptive"
    use_query_expansion: bool = True
    use_query_rewriting: bool = False


class SearchResult(BaseModel):
    """One ranked passage. Ephemeral, never persisted."""

    chunk_id: str
    document_id: str
    document_title: str
    content: str
    similarity: float = Field(ge=-1.0, le=1.0)
    chunk_index: int
    updated_at: datetime | None = None
    semantic_score: float | None = None
    lexical_score: float | None = None
    stage: SearchStage = "semantic"
