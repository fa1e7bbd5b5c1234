"""Tests for the incremental vectorization pipeline."""

import asyncio

import pytest

from scribe.core.change_tracking import content_hash
from scribe.core.errors import PartialIndexError, ValidationError
from scribe.core.vectorization import VectorizationPipeline
from tests.conftest import Q3_REPORT
from tests.fakes.embeddings import FakeEmbeddingClient

TEN_PARAGRAPHS = "\n\n".join(
    f"Paragraph {i} discusses topic number {i} in some detail." for i in range(10)
)


@pytest.mark.asyncio
async def test_first_vectorization_adds_every_chunk(pipeline, q3_report, vector_index):
    """A new document has all its chunks embedded and indexed."""
    result = await pipeline.vectorize("doc-q3")

    assert result.chunks_added == 3
    assert result.chunks_updated == result.chunks_deleted == result.chunks_failed == 0
    assert result.success

    state = pipeline.get_index_state("doc-q3")
    assert state.status == "indexed"
    assert state.is_vectorized
    assert state.chunk_count == 3
    assert state.version == 1
    assert state.last_indexed_hash == content_hash(Q3_REPORT)
    assert (await vector_index.stats({"document_id": "doc-q3"}))["count"] == 3


@pytest.mark.asyncio
async def test_vectorize_is_idempotent(pipeline, q3_report, embedding_client):
    """Re-vectorizing identical content embeds nothing and changes nothing."""
    await pipeline.vectorize("doc-q3")
    calls_before = embedding_client.calls

    result = await pipeline.vectorize("doc-q3")

    assert embedding_client.calls == calls_before
    assert result.skipped
    assert result.chunks_added == result.chunks_updated == result.chunks_deleted == 0
    assert pipeline.get_index_state("doc-q3").version == 1


@pytest.mark.asyncio
async def test_single_edit_only_reembeds_that_chunk(pipeline, make_document, embedding_client):
    """Editing one paragraph of a ten-chunk document re-embeds one chunk."""
    make_document("doc-10", TEN_PARAGRAPHS)
    first = await pipeline.vectorize("doc-10")
    assert first.chunks_added == 10
    embedded_before = embedding_client.texts_embedded

    edited = TEN_PARAGRAPHS.replace("topic number 4", "a completely different subject")
    result = await pipeline.vectorize("doc-10", edited)

    assert result.chunks_updated == 1
    assert result.chunks_added == 0
    assert embedding_client.texts_embedded - embedded_before == 1
    assert pipeline.get_index_state("doc-10").version == 2


@pytest.mark.asyncio
async def test_force_reembeds_everything(pipeline, q3_report, embedding_client):
    """force=True re-embeds unchanged chunks."""
    await pipeline.vectorize("doc-q3")
    embedded_before = embedding_client.texts_embedded

    result = await pipeline.vectorize("doc-q3", force=True)

    assert result.chunks_updated == 3
    assert embedding_client.texts_embedded - embedded_before == 3


@pytest.mark.asyncio
async def test_shrinking_document_deletes_vectors(pipeline, make_document, vector_index):
    """Chunks that no longer exist are removed from the index."""
    make_document("doc-10", TEN_PARAGRAPHS)
    await pipeline.vectorize("doc-10")

    shorter = "\n\n".join(TEN_PARAGRAPHS.split("\n\n")[:4])
    result = await pipeline.vectorize("doc-10", shorter)

    assert result.chunks_deleted == 6
    assert (await vector_index.stats({"document_id": "doc-10"}))["count"] == 4
    assert pipeline.get_index_state("doc-10").chunk_count == 4


@pytest.mark.asyncio
async def test_empty_content_clears_index(pipeline, q3_report, vector_index):
    """Blank content leaves zero chunks and an empty state."""
    await pipeline.vectorize("doc-q3")

    result = await pipeline.vectorize("doc-q3", "   ")

    assert result.chunks_deleted == 3
    state = pipeline.get_index_state("doc-q3")
    assert state.status == "empty"
    assert not state.is_vectorized
    assert (await vector_index.stats({"document_id": "doc-q3"}))["count"] == 0


@pytest.mark.asyncio
async def test_chunk_failure_is_isolated(
    vector_index, chunk_store, document_store, settings, make_document
):
    """One chunk failing to embed does not fail the others."""
    client = FakeEmbeddingClient(fail_tokens={"poison"})
    pipeline = VectorizationPipeline(
        client, vector_index, chunk_store, document_store, settings=settings
    )
    content = (
        "First paragraph is perfectly fine.\n\n"
        "Second paragraph contains poison and fails.\n\n"
        "Third paragraph is also fine."
    )
    make_document("doc-p", content)

    result = await pipeline.vectorize("doc-p")

    assert result.chunks_added == 2
    assert result.chunks_failed == 1
    assert result.failed_chunks == [1]
    assert not result.success
    with pytest.raises(PartialIndexError) as exc_info:
        result.raise_for_partial()
    assert exc_info.value.failed_chunks == [1]

    state = pipeline.get_index_state("doc-p")
    assert state.status == "partial"
    assert not state.is_vectorized
    assert state.failed_chunks == [1]
    assert pipeline.needs_revectorization("doc-p", content)

    # Once the upstream recovers, only the failed chunk is retried
    client.fail_tokens = set()
    retry = await pipeline.vectorize("doc-p")

    assert retry.chunks_updated == 1
    assert retry.chunks_added == 0
    assert pipeline.get_index_state("doc-p").status == "indexed"
    assert (await vector_index.stats({"document_id": "doc-p"}))["count"] == 3


@pytest.mark.asyncio
async def test_transient_batch_failure_is_retried(
    vector_index, chunk_store, document_store, settings, q3_report
):
    """A batch that fails once succeeds on retry without chunk failures."""
    client = FakeEmbeddingClient()
    client.fail_next = 1
    pipeline = VectorizationPipeline(
        client, vector_index, chunk_store, document_store, settings=settings
    )

    result = await pipeline.vectorize("doc-q3")

    assert result.success
    assert result.chunks_added == 3
    assert client.calls == 2


@pytest.mark.asyncio
async def test_chunks_are_embedded_in_batches(pipeline, make_document, embedding_client, settings):
    """Ten chunks with a batch size of four take three embedding calls."""
    make_document("doc-10", TEN_PARAGRAPHS)

    await pipeline.vectorize("doc-10")

    assert settings.EMBED_BATCH_SIZE == 4
    assert embedding_client.calls == 3


@pytest.mark.asyncio
async def test_concurrent_identical_requests_join(
    vector_index, chunk_store, document_store, settings, q3_report
):
    """Two simultaneous requests for the same content run one job."""
    client = FakeEmbeddingClient(delay=0.05)
    pipeline = VectorizationPipeline(
        client, vector_index, chunk_store, document_store, settings=settings
    )

    first, second = await asyncio.gather(
        pipeline.vectorize("doc-q3"), pipeline.vectorize("doc-q3")
    )

    assert client.calls == 1
    assert first == second
    assert pipeline.get_index_state("doc-q3").version == 1


@pytest.mark.asyncio
async def test_different_content_queues_behind_running_job(
    vector_index, chunk_store, document_store, settings, q3_report
):
    """A request with new content waits for the running job, then applies."""
    client = FakeEmbeddingClient(delay=0.05)
    pipeline = VectorizationPipeline(
        client, vector_index, chunk_store, document_store, settings=settings
    )
    edited = Q3_REPORT + "\n\nOutlook: we expect the fourth quarter to be flat."

    first, second = await asyncio.gather(
        pipeline.vectorize("doc-q3"), pipeline.vectorize("doc-q3", edited)
    )

    assert first.chunks_added == 3
    assert second.chunks_added == 1
    state = pipeline.get_index_state("doc-q3")
    assert state.version == 2
    assert state.last_indexed_hash == content_hash(edited)


@pytest.mark.asyncio
async def test_title_change_updates_metadata_without_embedding(
    pipeline, q3_report, document_store, vector_index, embedding_client
):
    """Renaming a document rewrites vector metadata from stored embeddings."""
    await pipeline.vectorize("doc-q3")
    calls_before = embedding_client.calls
    document_store.save(q3_report.model_copy(update={"title": "Q3 Board Report"}))

    result = await pipeline.vectorize("doc-q3")

    assert result.skipped
    assert embedding_client.calls == calls_before
    matches = await vector_index.query(
        embedding_client.vector("Q3 results"), top_k=3, filter={"document_id": "doc-q3"}
    )
    assert {m.metadata["document_title"] for m in matches} == {"Q3 Board Report"}
    assert pipeline.get_index_state("doc-q3").document_title == "Q3 Board Report"


@pytest.mark.asyncio
async def test_remove_document(pipeline, q3_report, vector_index, chunk_store):
    """Removing a document drops its vectors and chunks and marks it deleted."""
    await pipeline.vectorize("doc-q3")

    removed = await pipeline.remove_document("doc-q3")

    assert removed == 3
    assert chunk_store.get_chunks("doc-q3") == []
    assert (await vector_index.stats({"document_id": "doc-q3"}))["count"] == 0
    state = pipeline.get_index_state("doc-q3")
    assert state.status == "deleted"
    assert pipeline.needs_revectorization("doc-q3", Q3_REPORT)


@pytest.mark.asyncio
async def test_document_locks_are_released_when_idle(
    vector_index, chunk_store, document_store, settings, q3_report, make_document
):
    """Per-document locks live only while a job holds or awaits them."""
    client = FakeEmbeddingClient(delay=0.05)
    pipeline = VectorizationPipeline(
        client, vector_index, chunk_store, document_store, settings=settings
    )
    make_document("doc-notes", "Standup notes: the release slipped by one week.")
    edited = Q3_REPORT + "\n\nOutlook: we expect the fourth quarter to be flat."

    running = asyncio.gather(
        pipeline.vectorize("doc-q3"),
        pipeline.vectorize("doc-q3", edited),
        pipeline.vectorize("doc-notes"),
    )
    await asyncio.sleep(0.01)
    assert set(pipeline._locks) == {"doc-q3", "doc-notes"}
    await running

    assert pipeline._locks == {}
    assert not pipeline._lock_users

    await pipeline.remove_document("doc-q3")
    await pipeline.remove_document("doc-notes")

    assert pipeline._locks == {}
    assert not pipeline._lock_users


@pytest.mark.asyncio
async def test_invalid_document_ids(pipeline):
    """Blank and unknown document ids are caller errors."""
    with pytest.raises(ValidationError):
        await pipeline.vectorize("  ")
    with pytest.raises(ValidationError, match="not found"):
        await pipeline.vectorize("missing")


@pytest.mark.asyncio
async def test_vectorize_many_and_index_stats(pipeline, q3_report, make_document):
    """Several documents index in parallel; unknown ids are skipped."""
    make_document("doc-10", TEN_PARAGRAPHS)
    make_document("doc-b", "A note that belongs to someone else entirely.", user_id="user-b")

    results = await pipeline.vectorize_many(["doc-q3", "doc-10", "doc-b", "missing"])

    assert set(results) == {"doc-q3", "doc-10", "doc-b"}
    stats = pipeline.get_index_stats("user-a")
    assert stats.total_documents == 2
    assert stats.vectorized_documents == 2
    assert stats.total_chunks == 13


@pytest.mark.asyncio
async def test_needs_revectorization(pipeline, q3_report):
    """Only new or changed content needs indexing."""
    assert pipeline.needs_revectorization("doc-q3", Q3_REPORT)

    await pipeline.vectorize("doc-q3")

    assert not pipeline.needs_revectorization("doc-q3", Q3_REPORT)
    assert pipeline.needs_revectorization("doc-q3", Q3_REPORT + " More.")
