"""Timing and cost counters for indexing and retrieval work."""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

from scribe.core.logging import get_logger, log_with_context

logger = get_logger(__name__)

_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warning": logging.WARNING}


@contextmanager
def timer(operation_name: str, document_id: Optional[str] = None, log_level: str = "info"):
    """
    Log how long the wrapped block took.

    Usage:
        with timer("Search (adaptive)", scope.document_id, log_level="debug"):
            results = await self._adaptive(...)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = round((time.perf_counter() - start) * 1000, 1)
        context = {"operation": operation_name, "duration_ms": elapsed_ms}
        if document_id:
            context["document_id"] = document_id
        log_with_context(
            logger,
            _LEVELS.get(log_level, logging.INFO),
            f"{operation_name} took {elapsed_ms}ms",
            **context,
        )


@dataclass
class PerformanceTracker:
    """Upstream calls made by one vectorization run."""

    operation: str
    document_id: Optional[str] = None
    embedding_calls: int = 0
    texts_embedded: int = 0
    index_calls: int = 0
    _started: float = field(default_factory=time.perf_counter, repr=False)

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._started) * 1000

    def record_embedding_call(self, texts: int = 1) -> None:
        self.embedding_calls += 1
        self.texts_embedded += texts

    def record_index_call(self) -> None:
        self.index_calls += 1

    def summary(self) -> dict:
        summary = {
            "operation": self.operation,
            "duration_ms": round(self.elapsed_ms, 1),
            "embedding_calls": self.embedding_calls,
            "texts_embedded": self.texts_embedded,
            "index_calls": self.index_calls,
        }
        if self.document_id:
            summary["document_id"] = self.document_id
        return summary


@contextmanager
def track_performance(operation: str, document_id: Optional[str] = None) -> Iterator[PerformanceTracker]:
    """
    Count upstream calls inside the block and log them once it exits.

    Usage:
        with track_performance("Vectorize document", document_id) as perf:
            vectors = await client.embed_many(texts)
            perf.record_embedding_call(len(texts))
    """
    tracker = PerformanceTracker(operation, document_id)
    try:
        yield tracker
    finally:
        summary = tracker.summary()
        log_with_context(
            logger,
            logging.INFO,
            f"{operation}: {summary['duration_ms']}ms "
            f"(embed calls: {tracker.embedding_calls}, texts: {tracker.texts_embedded}, "
            f"index calls: {tracker.index_calls})",
            **summary,
        )
