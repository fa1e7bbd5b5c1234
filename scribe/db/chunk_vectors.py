"""pgvector-backed VectorIndex on Supabase.

Expects a `document_chunk_vectors` table (id text primary key, user_id, document_id,
chunk_index, document_title, content, updated_at, embedding vector) and a
`match_document_chunks(query_embedding, match_count, match_threshold,
filter_user_id, filter_document_id)` function returning rows with a
`similarity` column, ordered by similarity descending.
"""

import asyncio
from typing import Any, Callable, TypeVar

from scribe.core.errors import TransientUpstreamError, ValidationError
from scribe.core.logging import get_logger
from scribe.core.vector_index import VectorMatch, VectorRecord
from scribe.db.supabase_client import get_supabase

logger = get_logger(__name__)

R = TypeVar("R")

_METADATA_COLUMNS = ("user_id", "document_id", "chunk_index", "document_title", "content", "updated_at")


class SupabaseVectorIndex:
    """VectorIndex over a Supabase table and match RPC."""

    def __init__(
        self,
        table: str = "document_chunk_vectors",
        match_function: str = "match_document_chunks",
        timeout: float = 10.0,
    ):
        self.table = table
        self.match_function = match_function
        self.timeout = timeout

    async def _run(self, operation: str, fn: Callable[[], R]) -> R:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransientUpstreamError(
                f"Vector index {operation} timed out after {self.timeout}s"
            ) from e

    async def upsert(self, records: list[VectorRecord]) -> None:
        if not records:
            return

        rows = []
        for record in records:
            row: dict[str, Any] = {"id": record.id, "embedding": record.vector}
            for column in _METADATA_COLUMNS:
                if column in record.metadata:
                    row[column] = record.metadata[column]
            rows.append(row)

        def _upsert():
            return get_supabase().table(self.table).upsert(rows, on_conflict="id").execute()

        await self._run("upsert", _upsert)
        logger.debug(f"Upserted {len(rows)} chunk vectors")

    async def query(
        self,
        vector: list[float],
        *,
        top_k: int,
        filter: dict[str, Any],
        threshold: float | None = None,
    ) -> list[VectorMatch]:
        user_id = filter.get("user_id")
        if not user_id:
            raise ValidationError("Vector queries must be scoped to a user_id")

        params = {
            "query_embedding": vector,
            "match_count": top_k,
            "match_threshold": threshold if threshold is not None else -1.0,
            "filter_user_id": user_id,
            "filter_document_id": filter.get("document_id"),
        }

        def _match():
            return get_supabase().rpc(self.match_function, params).execute()

        response = await self._run("query", _match)
        if not response.data:
            return []

        return [
            VectorMatch(
                id=str(row["id"]),
                score=float(row["similarity"]),
                metadata={column: row.get(column) for column in _METADATA_COLUMNS},
            )
            for row in response.data
        ]

    async def delete(self, ids: list[str]) -> None:
        if not ids:
            return

        def _delete():
            return get_supabase().table(self.table).delete().in_("id", ids).execute()

        await self._run("delete", _delete)

    async def stats(self, filter: dict[str, Any] | None = None) -> dict[str, int]:
        def _count():
            query = get_supabase().table(self.table).select("id", count="exact")
            for key, value in (filter or {}).items():
                query = query.eq(key, value)
            return query.limit(1).execute()

        response = await self._run("stats", _count)
        return {"count": response.count or 0}
