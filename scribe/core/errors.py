"""Error taxonomy shared by the router, the pipeline and retrieval."""

from typing import Any


class ScribeError(Exception):
    """Base class for all Scribe errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransientUpstreamError(ScribeError):
    """Embedding, LLM or vector index call timed out or was rate limited. Retryable."""


class ValidationError(ScribeError):
    """Caller bug: empty query, missing scope, unknown intent label. Never retried."""


class PartialIndexError(ScribeError):
    """Some chunks of a document failed to embed.

    Recorded on DocumentIndexState by the pipeline; only raised on request via
    VectorizationResult.raise_for_partial().
    """

    def __init__(self, document_id: str, failed_chunks: list[int]):
        super().__init__(
            f"{len(failed_chunks)} chunk(s) of document {document_id} failed to embed",
            {"document_id": document_id, "failed_chunks": failed_chunks},
        )
        self.document_id = document_id
        self.failed_chunks = failed_chunks


class ConfigurationError(ScribeError):
    """Model not trained, index not initialized, or inconsistent settings."""
