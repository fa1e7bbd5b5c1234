"""Background vectorization queue.

Document edits enqueue a job and return immediately. Pending jobs for the same
document are coalesced so only the latest content is indexed; workers feed the
pipeline, which serializes per document.
"""

import asyncio
import time
from typing import Any
from uuid import uuid4

from scribe.core.config import get_settings
from scribe.core.logging import get_logger
from scribe.core.vectorization import VectorizationPipeline

logger = get_logger(__name__)


class VectorizationQueue:
    """Worker pool that drains pending vectorization jobs."""

    def __init__(self, pipeline: VectorizationPipeline, workers: int | None = None):
        """Initialize the queue.

        Args:
            pipeline: Pipeline that performs the indexing
            workers: Number of concurrent workers (defaults to VECTORIZE_CONCURRENCY)
        """
        self.pipeline = pipeline
        self.workers = workers or get_settings().VECTORIZE_CONCURRENCY
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._pending: dict[str, tuple[str | None, bool]] = {}
        self._tasks: list[asyncio.Task] = []
        self._idle: set[int] = set()
        self._running = False
        self._processed_count = 0
        self._partial_count = 0
        self._error_count = 0
        self._coalesced_count = 0
        self._start_time: float | None = None

    @property
    def stats(self) -> dict[str, Any]:
        """Get queue statistics."""
        uptime = time.time() - self._start_time if self._start_time else 0
        return {
            "running": self._running,
            "pending": len(self._pending),
            "processed_count": self._processed_count,
            "partial_count": self._partial_count,
            "error_count": self._error_count,
            "coalesced_count": self._coalesced_count,
            "uptime_seconds": round(uptime, 1),
        }

    def enqueue(self, document_id: str, content: str | None = None, force: bool = False) -> None:
        """Schedule a document for vectorization without waiting for it."""
        if document_id in self._pending:
            _, pending_force = self._pending[document_id]
            self._pending[document_id] = (content, force or pending_force)
            self._coalesced_count += 1
            return

        self._pending[document_id] = (content, force)
        self._queue.put_nowait(document_id)

    def start(self) -> None:
        """Start worker tasks on the running event loop."""
        if self._running:
            return
        self._running = True
        self._start_time = time.time()
        self._tasks = [
            asyncio.create_task(self._worker(n), name=f"vectorize-worker-{n}")
            for n in range(self.workers)
        ]
        logger.info(f"Started vectorization queue with {self.workers} workers")

    async def join(self) -> None:
        """Wait until every enqueued job has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        """Stop workers after their current job.

        Idle workers are cancelled; busy ones finish the document they hold.
        Jobs still waiting in the queue stay pending.
        """
        logger.info("Stopping vectorization queue...")
        self._running = False
        for number, task in enumerate(self._tasks):
            if number in self._idle:
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._idle.clear()

    async def process_one(self, document_id: str) -> dict[str, Any]:
        """Vectorize the latest pending content of one document.

        Returns:
            Processing result dict
        """
        content, force = self._pending.pop(document_id, (None, False))
        run_id = str(uuid4())

        try:
            result = await self.pipeline.vectorize(document_id, content, force=force)
        except Exception as e:
            self._error_count += 1
            logger.exception(
                f"Vectorization of {document_id} failed: {e}",
                extra={"document_id": document_id, "run_id": run_id},
            )
            return {"success": False, "document_id": document_id, "error": str(e)}

        self._processed_count += 1
        if not result.success:
            self._partial_count += 1

        return {"success": result.success, "document_id": document_id, **result.model_dump()}

    async def _worker(self, number: int) -> None:
        while self._running:
            self._idle.add(number)
            try:
                document_id = await self._queue.get()
            finally:
                self._idle.discard(number)
            try:
                await self.process_one(document_id)
            finally:
                self._queue.task_done()
