"""Chunk-level change tracking for incremental re-indexing.

Re-chunks new document content with the pipeline's chunking policy and compares
per-chunk fingerprints against the last indexed chunk set, so only chunks whose
content actually moved need new embeddings.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Literal

from scribe.core.chunking import Chunker
from scribe.core.logging import get_logger
from scribe.db.chunk_store import ChunkStore

logger = get_logger(__name__)

ChangeStatus = Literal["added", "modified", "removed", "unchanged"]


def fingerprint(text: str) -> str:
    """Fast 64-bit content fingerprint of a chunk."""
    return hashlib.blake2b(text.encode("utf-8"), digest_size=8).hexdigest()


def content_hash(text: str) -> str:
    """Hash of a whole document's content, stored as last_indexed_hash."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class ChunkChange:
    """One chunk slot in a diff. Offsets are None for removed chunks."""

    chunk_index: int
    status: ChangeStatus
    fingerprint: str | None
    content: str = ""
    start_offset: int | None = None
    end_offset: int | None = None


@dataclass
class ChangeSet:
    """Result of diffing new content against the indexed chunk set."""

    document_id: str
    content_hash: str
    entries: list[ChunkChange] = field(default_factory=list)

    def _with_status(self, status: ChangeStatus) -> list[ChunkChange]:
        return [entry for entry in self.entries if entry.status == status]

    @property
    def added(self) -> list[ChunkChange]:
        return self._with_status("added")

    @property
    def modified(self) -> list[ChunkChange]:
        return self._with_status("modified")

    @property
    def removed(self) -> list[ChunkChange]:
        return self._with_status("removed")

    @property
    def unchanged(self) -> list[ChunkChange]:
        return self._with_status("unchanged")

    @property
    def current(self) -> list[ChunkChange]:
        """Chunks of the new content, in index order."""
        return [entry for entry in self.entries if entry.status != "removed"]

    @property
    def is_empty(self) -> bool:
        """True when the new content produced no chunks."""
        return not self.current

    @property
    def has_changes(self) -> bool:
        return any(entry.status != "unchanged" for entry in self.entries)


class ChangeTracker:
    """Computes ChangeSets against the chunk store's last known fingerprints."""

    def __init__(self, chunker: Chunker, chunk_store: ChunkStore):
        self.chunker = chunker
        self.chunk_store = chunk_store

    def diff(self, document_id: str, new_content: str) -> ChangeSet:
        """
        Diff new content against the currently indexed chunks of a document.

        A chunk is unchanged only if its index and fingerprint match and, when the
        stored content is available, the stored text is identical. A fingerprint
        match with different text is reported as modified.

        Args:
            document_id: Document being re-indexed
            new_content: Full new text of the document

        Returns:
            ChangeSet covering every new chunk plus removed indices
        """
        previous = {chunk.chunk_index: chunk for chunk in self.chunk_store.get_chunks(document_id)}
        new_chunks = self.chunker.split(new_content)

        change_set = ChangeSet(document_id=document_id, content_hash=content_hash(new_content))

        for raw in new_chunks:
            index = raw["chunk_index"]
            text = raw["content"]
            chunk_fp = fingerprint(text)
            old = previous.get(index)

            if old is None:
                status: ChangeStatus = "added"
            elif old.content_hash == chunk_fp and old.content == text:
                status = "unchanged"
            else:
                if old.content_hash == chunk_fp:
                    logger.warning(
                        f"Fingerprint collision on {document_id}:{index}, treating as modified"
                    )
                status = "modified"

            change_set.entries.append(
                ChunkChange(
                    chunk_index=index,
                    status=status,
                    fingerprint=chunk_fp,
                    content=text,
                    start_offset=raw["start_char"],
                    end_offset=raw["end_char"],
                )
            )

        new_indices = {raw["chunk_index"] for raw in new_chunks}
        for index in sorted(set(previous) - new_indices):
            change_set.entries.append(
                ChunkChange(
                    chunk_index=index,
                    status="removed",
                    fingerprint=previous[index].content_hash,
                    content=previous[index].content,
                )
            )

        logger.debug(
            f"Diffed {document_id}: {len(change_set.added)} added, "
            f"{len(change_set.modified)} modified, {len(change_set.removed)} removed, "
            f"{len(change_set.unchanged)} unchanged"
        )

        return change_set
