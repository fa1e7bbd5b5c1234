"""Vector index contract and an in-process numpy implementation.

Filters are applied before scoring, so a query never sees vectors outside its
scope.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

import numpy as np

from scribe.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class VectorRecord:
    id: str
    vector: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorMatch:
    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


class VectorIndex(Protocol):
    async def upsert(self, records: list[VectorRecord]) -> None: ...

    async def query(
        self,
        vector: list[float],
        *,
        top_k: int,
        filter: dict[str, Any],
        threshold: float | None = None,
    ) -> list[VectorMatch]: ...

    async def delete(self, ids: list[str]) -> None: ...

    async def stats(self, filter: dict[str, Any] | None = None) -> dict[str, int]: ...


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity of two vectors, 0.0 when either has zero norm."""
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    return float(np.dot(a, b) / norm)


def _matches(metadata: dict[str, Any], flt: dict[str, Any] | None) -> bool:
    if not flt:
        return True
    return all(metadata.get(key) == value for key, value in flt.items())


class InMemoryVectorIndex:
    """Brute-force cosine index. Vectors are stored unit-normalized."""

    def __init__(self):
        self._lock = threading.Lock()
        self._vectors: dict[str, np.ndarray] = {}
        self._metadata: dict[str, dict[str, Any]] = {}
        self.query_count = 0

    async def upsert(self, records: list[VectorRecord]) -> None:
        with self._lock:
            for record in records:
                vector = np.asarray(record.vector, dtype=np.float32)
                norm = np.linalg.norm(vector)
                self._vectors[record.id] = vector / norm if norm > 0 else vector
                self._metadata[record.id] = dict(record.metadata)

    async def query(
        self,
        vector: list[float],
        *,
        top_k: int,
        filter: dict[str, Any],
        threshold: float | None = None,
    ) -> list[VectorMatch]:
        with self._lock:
            self.query_count += 1
            ids = [rid for rid, meta in self._metadata.items() if _matches(meta, filter)]
            if not ids or top_k <= 0:
                return []
            matrix = np.vstack([self._vectors[rid] for rid in ids])
            metadata = [dict(self._metadata[rid]) for rid in ids]

        query_vector = np.asarray(vector, dtype=np.float32)
        norm = np.linalg.norm(query_vector)
        if norm == 0:
            return []

        scores = matrix @ (query_vector / norm)
        order = np.argsort(-scores, kind="stable")

        matches = []
        for position in order:
            score = float(np.clip(scores[position], -1.0, 1.0))
            if threshold is not None and score < threshold:
                break
            matches.append(VectorMatch(id=ids[position], score=score, metadata=metadata[position]))
            if len(matches) >= top_k:
                break

        return matches

    async def delete(self, ids: list[str]) -> None:
        with self._lock:
            for rid in ids:
                self._vectors.pop(rid, None)
                self._metadata.pop(rid, None)

    async def stats(self, filter: dict[str, Any] | None = None) -> dict[str, int]:
        with self._lock:
            count = sum(1 for meta in self._metadata.values() if _matches(meta, filter))
        return {"count": count}
