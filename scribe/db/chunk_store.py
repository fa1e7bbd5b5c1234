"""Chunk table and per-document index state.

Written only by the vectorization pipeline. The retrieval engine reads it for the
lexical stage through list_chunks(), which applies the user scope itself.
"""

import threading
from typing import Protocol

from scribe.core.logging import get_logger
from scribe.core.schemas_index import Chunk, DocumentIndexState

logger = get_logger(__name__)


class ChunkStore(Protocol):
    def get_chunks(self, document_id: str) -> list[Chunk]: ...

    def put_chunks(self, chunks: list[Chunk]) -> None: ...

    def delete_chunks(self, document_id: str, chunk_indices: list[int]) -> int: ...

    def delete_document(self, document_id: str) -> int: ...

    def get_state(self, document_id: str) -> DocumentIndexState | None: ...

    def put_state(self, state: DocumentIndexState) -> None: ...

    def list_states(self, user_id: str) -> list[DocumentIndexState]: ...

    def list_chunks(
        self, user_id: str, document_id: str | None = None
    ) -> list[tuple[Chunk, DocumentIndexState]]: ...


class InMemoryChunkStore:
    """Process-local chunk table guarded by a single lock."""

    def __init__(self):
        self._lock = threading.RLock()
        self._chunks: dict[str, dict[int, Chunk]] = {}
        self._states: dict[str, DocumentIndexState] = {}

    def get_chunks(self, document_id: str) -> list[Chunk]:
        with self._lock:
            chunks = self._chunks.get(document_id, {})
            return [chunks[index].model_copy() for index in sorted(chunks)]

    def put_chunks(self, chunks: list[Chunk]) -> None:
        with self._lock:
            for chunk in chunks:
                self._chunks.setdefault(chunk.document_id, {})[chunk.chunk_index] = chunk.model_copy()

    def delete_chunks(self, document_id: str, chunk_indices: list[int]) -> int:
        with self._lock:
            chunks = self._chunks.get(document_id, {})
            deleted = 0
            for index in chunk_indices:
                if chunks.pop(index, None) is not None:
                    deleted += 1
            return deleted

    def delete_document(self, document_id: str) -> int:
        with self._lock:
            removed = self._chunks.pop(document_id, {})
            return len(removed)

    def get_state(self, document_id: str) -> DocumentIndexState | None:
        with self._lock:
            state = self._states.get(document_id)
            return state.model_copy(deep=True) if state else None

    def put_state(self, state: DocumentIndexState) -> None:
        with self._lock:
            self._states[state.document_id] = state.model_copy(deep=True)

    def list_states(self, user_id: str) -> list[DocumentIndexState]:
        with self._lock:
            return [
                state.model_copy(deep=True)
                for state in self._states.values()
                if state.user_id == user_id
            ]

    def list_chunks(
        self, user_id: str, document_id: str | None = None
    ) -> list[tuple[Chunk, DocumentIndexState]]:
        """Chunks with an embedding that belong to user_id (and document_id if given)."""
        with self._lock:
            rows = []
            for doc_id, chunks in self._chunks.items():
                state = self._states.get(doc_id)
                if state is None or state.user_id != user_id or state.status == "deleted":
                    continue
                if document_id and doc_id != document_id:
                    continue
                for index in sorted(chunks):
                    chunk = chunks[index]
                    if chunk.embedding is not None:
                        rows.append((chunk.model_copy(), state.model_copy()))
            return rows
