"""Incremental document vectorization.

Chunks a document, asks the change tracker which chunks moved, and only embeds
those. Jobs for the same document are serialized behind a per-document lock;
a request for content that is already being indexed joins the running job.
"""

import asyncio
import logging
import time
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from scribe.core.change_tracking import ChangeSet, ChangeTracker, ChunkChange, content_hash
from scribe.core.chunking import Chunker, build_chunker
from scribe.core.config import Settings, get_settings
from scribe.core.embeddings import EmbeddingClient
from scribe.core.errors import ValidationError
from scribe.core.logging import get_logger, log_with_context
from scribe.core.metrics import PerformanceTracker, track_performance
from scribe.core.retry import build_async_retrying, with_timeout
from scribe.core.schemas_index import (
    Chunk,
    DocumentIndexState,
    DocumentRecord,
    IndexStats,
    VectorizationResult,
    chunk_id_for,
    utc_now,
)
from scribe.core.vector_index import VectorIndex, VectorRecord
from scribe.db.chunk_store import ChunkStore
from scribe.db.documents import DocumentStore

logger = get_logger(__name__)

R = TypeVar("R")


@dataclass
class _InflightJob:
    content_key: str
    force: bool
    task: "asyncio.Task[VectorizationResult]"


class VectorizationPipeline:
    """Keeps the vector index in sync with document content, one document at a time."""

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        vector_index: VectorIndex,
        chunk_store: ChunkStore,
        document_store: DocumentStore,
        chunker: Chunker | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.embedding_client = embedding_client
        self.vector_index = vector_index
        self.chunk_store = chunk_store
        self.document_store = document_store
        self.tracker = ChangeTracker(chunker or build_chunker(self.settings), chunk_store)
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()
        self._inflight: dict[str, _InflightJob] = {}

    # =========================================================================
    # Public operations
    # =========================================================================

    async def vectorize(
        self, document_id: str, content: str | None = None, *, force: bool = False
    ) -> VectorizationResult:
        """
        Bring the index for one document up to date with its content.

        Args:
            document_id: Document to index
            content: New content; defaults to the document store's current content
            force: Re-embed every chunk regardless of change status

        Returns:
            VectorizationResult with per-category chunk counts

        Raises:
            ValidationError: If the document id is blank or unknown
            TransientUpstreamError: If the vector index stays unreachable after retries
        """
        if not document_id or not document_id.strip():
            raise ValidationError("document_id must not be empty")

        document = await self.document_store.get_document(document_id)
        if document is None:
            raise ValidationError(f"Document {document_id} not found", {"document_id": document_id})
        if content is None:
            content = document.content

        content_key = content_hash(content)
        job = self._inflight.get(document_id)
        if (
            job is not None
            and not job.task.done()
            and job.content_key == content_key
            and (job.force or not force)
        ):
            logger.info(
                f"Joining in-flight vectorization for {document_id}",
                extra={"document_id": document_id},
            )
            return await asyncio.shield(job.task)

        task = asyncio.create_task(self._run_serialized(document, content, force))
        job = _InflightJob(content_key=content_key, force=force, task=task)
        self._inflight[document_id] = job
        task.add_done_callback(lambda _t: self._clear_inflight(document_id, job))
        return await asyncio.shield(task)

    async def vectorize_many(
        self,
        document_ids: list[str],
        *,
        force: bool = False,
        concurrency: int | None = None,
    ) -> dict[str, VectorizationResult]:
        """
        Vectorize several documents in parallel, bounded by concurrency.

        Documents that fail entirely are logged and left out of the returned map.
        """
        semaphore = asyncio.Semaphore(concurrency or self.settings.VECTORIZE_CONCURRENCY)

        async def _one(document_id: str) -> VectorizationResult:
            async with semaphore:
                return await self.vectorize(document_id, force=force)

        outcomes = await asyncio.gather(
            *(_one(document_id) for document_id in document_ids), return_exceptions=True
        )

        results: dict[str, VectorizationResult] = {}
        for document_id, outcome in zip(document_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Vectorization failed for {document_id}: {outcome}")
                continue
            results[document_id] = outcome
        return results

    async def remove_document(self, document_id: str) -> int:
        """
        Delete every chunk of a document from the index and the chunk table.

        Returns:
            Number of chunks removed
        """
        async with self._document_lock(document_id):
            chunks = self.chunk_store.get_chunks(document_id)
            await self._index_call(
                "delete", lambda: self.vector_index.delete([c.chunk_id for c in chunks])
            )
            removed = self.chunk_store.delete_document(document_id)

            state = self.chunk_store.get_state(document_id)
            if state is not None:
                self.chunk_store.put_state(
                    state.model_copy(
                        update={
                            "version": state.version + 1,
                            "chunk_count": 0,
                            "is_vectorized": False,
                            "status": "deleted",
                            "failed_chunks": [],
                            "updated_at": utc_now(),
                        }
                    )
                )

        logger.info(f"Removed {removed} chunks of document {document_id}")
        return removed

    def get_index_state(self, document_id: str) -> DocumentIndexState | None:
        return self.chunk_store.get_state(document_id)

    def needs_revectorization(self, document_id: str, content: str) -> bool:
        """True if content differs from what was last indexed or indexing is incomplete."""
        state = self.chunk_store.get_state(document_id)
        if state is None or state.status == "deleted":
            return True
        return state.last_indexed_hash != content_hash(content) or (
            state.status == "partial"
        )

    def get_index_stats(self, user_id: str) -> IndexStats:
        states = [s for s in self.chunk_store.list_states(user_id) if s.status != "deleted"]
        return IndexStats(
            total_documents=len(states),
            vectorized_documents=sum(1 for s in states if s.is_vectorized),
            partial_documents=sum(1 for s in states if s.status == "partial"),
            total_chunks=sum(s.chunk_count for s in states),
        )

    # =========================================================================
    # Job execution
    # =========================================================================

    def _clear_inflight(self, document_id: str, job: _InflightJob) -> None:
        if self._inflight.get(document_id) is job:
            del self._inflight[document_id]

    @asynccontextmanager
    async def _document_lock(self, document_id: str) -> AsyncIterator[None]:
        """Hold the per-document lock; the entry is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(document_id, asyncio.Lock())
        self._lock_users[document_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[document_id] -= 1
            if self._lock_users[document_id] <= 0:
                del self._lock_users[document_id]
                del self._locks[document_id]

    async def _run_serialized(
        self, document: DocumentRecord, content: str, force: bool
    ) -> VectorizationResult:
        async with self._document_lock(document.document_id):
            return await self._vectorize_locked(document, content, force)

    async def _vectorize_locked(
        self, document: DocumentRecord, content: str, force: bool
    ) -> VectorizationResult:
        start = time.perf_counter()
        document_id = document.document_id

        with track_performance("Vectorize document", document_id) as perf:
            previous_state = self.chunk_store.get_state(document_id)
            version = previous_state.version if previous_state else 0
            changes = self.tracker.diff(document_id, content)
            removed = [entry.chunk_index for entry in changes.removed]

            if changes.is_empty:
                await self._delete_vectors(document_id, removed, perf)
                self.chunk_store.delete_chunks(document_id, removed)
                self.chunk_store.put_state(
                    self._state(document, changes, version + 1, failed=[], status="empty")
                )
                return VectorizationResult(
                    document_id=document_id,
                    chunks_deleted=len(removed),
                    duration_ms=_elapsed_ms(start),
                )

            to_embed = changes.current if force else changes.added + changes.modified
            title_changed = (
                previous_state is not None and previous_state.document_title != document.title
            )

            if not to_embed and not removed and previous_state is not None:
                self._refresh_unchanged(document, changes)
                if title_changed:
                    await self._reupsert_metadata(document, changes.unchanged, perf)
                self.chunk_store.put_state(
                    self._state(document, changes, version, failed=[], status="indexed")
                )
                log_with_context(
                    logger, logging.DEBUG, "Document unchanged, skipping", document_id=document_id
                )
                return VectorizationResult(
                    document_id=document_id, skipped=True, duration_ms=_elapsed_ms(start)
                )

            vectors, failed = await self._embed_chunks(document_id, to_embed, perf)

            embedded = [entry for entry in to_embed if entry.chunk_index in vectors]
            records = [
                VectorRecord(
                    id=chunk_id_for(document_id, entry.chunk_index),
                    vector=vectors[entry.chunk_index],
                    metadata=self._metadata(document, entry.chunk_index, entry.content),
                )
                for entry in embedded
            ]
            if records:
                await self._index_call("upsert", lambda: self.vector_index.upsert(records))
                perf.record_index_call()

            if title_changed and not force:
                await self._reupsert_metadata(document, changes.unchanged, perf)

            stale = [entry.chunk_index for entry in failed if entry.status != "added"]
            await self._delete_vectors(document_id, removed + stale, perf)

            now = utc_now()
            self.chunk_store.put_chunks(
                [
                    self._chunk(document_id, entry, vectors[entry.chunk_index], now)
                    for entry in embedded
                ]
                + [self._chunk(document_id, entry, None, now) for entry in failed]
            )
            self._refresh_unchanged(document, changes)
            self.chunk_store.delete_chunks(document_id, removed)

            failed_indices = sorted(entry.chunk_index for entry in failed)
            self.chunk_store.put_state(
                self._state(
                    document,
                    changes,
                    version + 1,
                    failed=failed_indices,
                    status="partial" if failed_indices else "indexed",
                )
            )

        result = VectorizationResult(
            document_id=document_id,
            chunks_added=sum(1 for e in embedded if e.status == "added"),
            chunks_updated=sum(1 for e in embedded if e.status != "added"),
            chunks_deleted=len(removed),
            chunks_failed=len(failed_indices),
            failed_chunks=failed_indices,
            duration_ms=_elapsed_ms(start),
        )

        if failed_indices:
            logger.warning(
                f"Partially indexed {document_id}: chunks {failed_indices} failed",
                extra={"document_id": document_id, "failed_chunks": failed_indices},
            )
        else:
            logger.info(
                f"Vectorized {document_id}: +{result.chunks_added} ~{result.chunks_updated} "
                f"-{result.chunks_deleted}",
                extra={"document_id": document_id, "version": version + 1},
            )

        return result

    async def _embed_chunks(
        self, document_id: str, entries: list[ChunkChange], perf: PerformanceTracker
    ) -> tuple[dict[int, list[float]], list[ChunkChange]]:
        """
        Embed chunks in bounded batches.

        A batch that fails is retried one chunk at a time, so a single bad chunk
        only fails itself.

        Returns:
            (chunk_index -> vector, failed chunk entries)
        """
        vectors: dict[int, list[float]] = {}
        failed: list[ChunkChange] = []
        batch_size = max(1, self.settings.EMBED_BATCH_SIZE)

        for batch_number, offset in enumerate(range(0, len(entries), batch_size)):
            if batch_number:
                await asyncio.sleep(self.settings.EMBED_BATCH_DELAY_SECONDS)

            batch = entries[offset : offset + batch_size]
            texts = [entry.content for entry in batch]
            try:
                batch_vectors = await self._with_retry(
                    "embed batch", lambda: self.embedding_client.embed_many(texts)
                )
                perf.record_embedding_call(len(texts))
                if len(batch_vectors) != len(batch):
                    raise ValueError(
                        f"Expected {len(batch)} embeddings, got {len(batch_vectors)}"
                    )
                for entry, vector in zip(batch, batch_vectors):
                    vectors[entry.chunk_index] = vector
                continue
            except Exception as e:
                logger.warning(
                    f"Embedding batch {batch_number} of {document_id} failed, "
                    f"isolating chunks: {e}"
                )

            for entry in batch:
                try:
                    single = await self._with_retry(
                        "embed chunk",
                        lambda text=entry.content: self.embedding_client.embed_many([text]),
                    )
                    perf.record_embedding_call(1)
                    vectors[entry.chunk_index] = single[0]
                except Exception as e:
                    logger.error(
                        f"Chunk {entry.chunk_index} of {document_id} failed to embed: {e}",
                        extra={"document_id": document_id, "chunk_index": entry.chunk_index},
                    )
                    failed.append(entry)

        return vectors, failed

    async def _reupsert_metadata(
        self, document: DocumentRecord, entries: list[ChunkChange], perf: PerformanceTracker
    ) -> None:
        """Rewrite vector metadata of unchanged chunks from stored embeddings."""
        stored = {c.chunk_index: c for c in self.chunk_store.get_chunks(document.document_id)}
        records = [
            VectorRecord(
                id=chunk_id_for(document.document_id, entry.chunk_index),
                vector=stored[entry.chunk_index].embedding,
                metadata=self._metadata(document, entry.chunk_index, entry.content),
            )
            for entry in entries
            if entry.chunk_index in stored and stored[entry.chunk_index].embedding is not None
        ]
        if records:
            await self._index_call("upsert", lambda: self.vector_index.upsert(records))
            perf.record_index_call()

    async def _delete_vectors(
        self, document_id: str, chunk_indices: list[int], perf: PerformanceTracker
    ) -> None:
        if not chunk_indices:
            return
        ids = [chunk_id_for(document_id, index) for index in chunk_indices]
        await self._index_call("delete", lambda: self.vector_index.delete(ids))
        perf.record_index_call()

    def _refresh_unchanged(self, document: DocumentRecord, changes: ChangeSet) -> None:
        """Update offsets of unchanged chunks that moved within the document."""
        stored = {c.chunk_index: c for c in self.chunk_store.get_chunks(document.document_id)}
        moved = []
        for entry in changes.unchanged:
            chunk = stored.get(entry.chunk_index)
            if chunk and (chunk.start_offset, chunk.end_offset) != (
                entry.start_offset,
                entry.end_offset,
            ):
                moved.append(
                    chunk.model_copy(
                        update={"start_offset": entry.start_offset, "end_offset": entry.end_offset}
                    )
                )
        if moved:
            self.chunk_store.put_chunks(moved)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _with_retry(self, label: str, call: Callable[[], Awaitable[R]]) -> R:
        retrying = build_async_retrying(
            self.settings.EMBED_MAX_ATTEMPTS,
            self.settings.EMBED_BACKOFF_INITIAL_SECONDS,
            self.settings.EMBED_BACKOFF_MAX_SECONDS,
            label,
        )
        return await retrying(
            lambda: with_timeout(call(), self.settings.EMBEDDING_TIMEOUT_SECONDS, label)
        )

    async def _index_call(self, label: str, call: Callable[[], Awaitable[R]]) -> R:
        retrying = build_async_retrying(
            self.settings.EMBED_MAX_ATTEMPTS,
            self.settings.EMBED_BACKOFF_INITIAL_SECONDS,
            self.settings.EMBED_BACKOFF_MAX_SECONDS,
            f"vector index {label}",
        )
        return await retrying(
            lambda: with_timeout(
                call(), self.settings.VECTOR_INDEX_TIMEOUT_SECONDS, f"vector index {label}"
            )
        )

    @staticmethod
    def _metadata(document: DocumentRecord, chunk_index: int, content: str) -> dict[str, Any]:
        return {
            "user_id": document.user_id,
            "document_id": document.document_id,
            "document_title": document.title,
            "chunk_index": chunk_index,
            "content": content,
            "updated_at": document.updated_at.isoformat(),
        }

    @staticmethod
    def _chunk(
        document_id: str, entry: ChunkChange, vector: list[float] | None, now
    ) -> Chunk:
        return Chunk(
            document_id=document_id,
            chunk_index=entry.chunk_index,
            content=entry.content,
            start_offset=entry.start_offset or 0,
            end_offset=entry.end_offset or 0,
            content_hash=entry.fingerprint if vector is not None else None,
            embedding=vector,
            updated_at=now,
        )

    @staticmethod
    def _state(
        document: DocumentRecord,
        changes: ChangeSet,
        version: int,
        failed: list[int],
        status: str,
    ) -> DocumentIndexState:
        chunk_count = len(changes.current)
        return DocumentIndexState(
            document_id=document.document_id,
            user_id=document.user_id,
            document_title=document.title,
            version=version,
            chunk_count=chunk_count,
            last_indexed_hash=changes.content_hash,
            is_vectorized=chunk_count > 0 and not failed,
            status=status,
            failed_chunks=failed,
        )


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 1)
