"""Read-only document access.

Document CRUD and permissions live elsewhere; Scribe only reads
(document_id, user_id, title, content, updated_at).
"""

import asyncio
import threading
from datetime import datetime
from typing import Protocol

from scribe.core.logging import get_logger
from scribe.core.schemas_index import DocumentRecord, utc_now
from scribe.db.supabase_client import get_supabase

logger = get_logger(__name__)


class DocumentStore(Protocol):
    async def get_document(self, document_id: str) -> DocumentRecord | None: ...


class InMemoryDocumentStore:
    """Document store backed by a dict, used in development and tests."""

    def __init__(self, documents: list[DocumentRecord] | None = None):
        self._lock = threading.Lock()
        self._documents: dict[str, DocumentRecord] = {}
        for document in documents or []:
            self.save(document)

    def save(self, document: DocumentRecord) -> None:
        with self._lock:
            self._documents[document.document_id] = document

    def update_content(self, document_id: str, content: str) -> DocumentRecord:
        with self._lock:
            updated = self._documents[document_id].model_copy(
                update={"content": content, "updated_at": utc_now()}
            )
            self._documents[document_id] = updated
            return updated

    def delete(self, document_id: str) -> None:
        with self._lock:
            self._documents.pop(document_id, None)

    async def get_document(self, document_id: str) -> DocumentRecord | None:
        with self._lock:
            return self._documents.get(document_id)


class SupabaseDocumentStore:
    """Reads documents from the `documents` table, skipping soft-deleted rows."""

    def __init__(self, table: str = "documents"):
        self.table = table

    def _fetch(self, document_id: str) -> DocumentRecord | None:
        supabase = get_supabase()
        try:
            response = (
                supabase.table(self.table)
                .select("id, user_id, title, content, updated_at")
                .eq("id", document_id)
                .is_("deleted_at", "null")
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error(f"Failed to fetch document {document_id}: {e}")
            raise

        if not response.data:
            return None

        row = response.data[0]
        return DocumentRecord(
            document_id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row.get("title") or "Untitled",
            content=row.get("content") or "",
            updated_at=row.get("updated_at") or datetime.now().astimezone(),
        )

    async def get_document(self, document_id: str) -> DocumentRecord | None:
        return await asyncio.to_thread(self._fetch, document_id)
