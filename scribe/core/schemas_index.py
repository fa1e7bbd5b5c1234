"""Schemas for incremental document indexing: documents, chunks, index state."""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

from scribe.core.errors import PartialIndexError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =========================
# Document Schemas
# =========================


class DocumentRecord(BaseModel):
    """Read-only view of a document supplied by the document store."""

    document_id: str
    user_id: str
    title: str = "Untitled"
    content: str = ""
    updated_at: datetime = Field(default_factory=utc_now)


# =========================
# Chunk Schemas
# =========================


class Chunk(BaseModel):
    """A bounded slice of a document, the unit of embedding and retrieval.

    Unique on (document_id, chunk_index). A chunk whose embedding failed keeps
    content_hash=None so the next diff reports it as modified.
    """

    document_id: str
    chunk_index: int = Field(ge=0)
    content: str
    start_offset: int = Field(ge=0)
    end_offset: int = Field(ge=0)
    content_hash: str | None = None
    embedding: list[float] | None = None
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def chunk_id(self) -> str:
        return chunk_id_for(self.document_id, self.chunk_index)


def chunk_id_for(document_id: str, chunk_index: int) -> str:
    """Vector index id of a chunk."""
    return f"{document_id}:{chunk_index}"


# =========================
# Index State Schemas
# =========================


IndexStatus = Literal["indexed", "partial", "empty", "deleted", "pending"]


class DocumentIndexState(BaseModel):
    """Per-document indexing state, mutated only by the vectorization pipeline.

    is_vectorized implies every chunk of the current version has an embedding.
    """

    document_id: str
    user_id: str
    document_title: str = "Untitled"
    version: int = 0
    chunk_count: int = 0
    last_indexed_hash: str | None = None
    is_vectorized: bool = False
    status: IndexStatus = "pending"
    failed_chunks: list[int] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utc_now)


class VectorizationResult(BaseModel):
    """Outcome of one vectorize() call."""

    document_id: str
    chunks_added: int = 0
    chunks_updated: int = 0
    chunks_deleted: int = 0
    chunks_failed: int = 0
    failed_chunks: list[int] = Field(default_factory=list)
    skipped: bool = Field(
        default=False, description="True when nothing changed and no embedding was requested"
    )
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.chunks_failed == 0

    def raise_for_partial(self) -> None:
        """Raise PartialIndexError if any chunk failed to embed."""
        if self.failed_chunks:
            raise PartialIndexError(self.document_id, list(self.failed_chunks))


class IndexStats(BaseModel):
    """Aggregate indexing statistics for one user."""

    total_documents: int = 0
    vectorized_documents: int = 0
    partial_documents: int = 0
    total_chunks: int = 0
