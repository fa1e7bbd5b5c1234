"""Tests for adaptive, scoped retrieval."""

import math
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from scribe.core.errors import TransientUpstreamError, ValidationError
from scribe.core.retrieval import (
    CancellationToken,
    RetrievalEngine,
    expand_query,
    extract_terms,
    lexical_overlap,
    rank_results,
    rewrite_query,
)
from scribe.core.schemas_retrieval import SearchOptions, SearchResult, SearchScope
from scribe.core.vectorization import VectorizationPipeline
from tests.fakes.embeddings import FakeEmbeddingClient
from tests.fakes.llm import FakeLLMService

USER_A = SearchScope(user_id="user-a")


def _result(document_id: str, chunk_index: int, similarity: float, **kwargs) -> SearchResult:
    return SearchResult(
        chunk_id=f"{document_id}:{chunk_index}",
        document_id=document_id,
        document_title=kwargs.pop("title", "Doc"),
        content=kwargs.pop("content", "text"),
        similarity=similarity,
        chunk_index=chunk_index,
        **kwargs,
    )


# =========================
# Scoring helpers
# =========================


def test_extract_terms_drops_stopwords_and_duplicates():
    """Query terms exclude stopwords, short tokens and repeats."""
    assert extract_terms("What were the Q3 results? Q3 results!") == ["q3", "results"]


def test_lexical_overlap_with_phrase_bonus():
    """Full coverage plus an in-order phrase reaches the maximum score."""
    terms = ["q3", "results"]
    assert lexical_overlap(terms, "Q3 results were strong") == 1.0
    assert lexical_overlap(terms, "results for Q3", phrase_bonus=0.0) == 1.0
    assert lexical_overlap(terms, "revenue grew", phrase_bonus=0.3) == 0.0
    assert lexical_overlap(terms, "our results") == 0.5


def test_rank_results_dedupes_and_breaks_ties_by_recency():
    """Duplicates keep their best score; ties go to the most recently updated chunk."""
    now = datetime.now(timezone.utc)
    older = _result("doc-1", 0, 0.8, updated_at=now - timedelta(days=1))
    newer = _result("doc-2", 0, 0.8, updated_at=now)
    duplicate = _result("doc-1", 0, 0.6)

    ranked = rank_results([older, duplicate, newer])

    assert [r.document_id for r in ranked] == ["doc-2", "doc-1"]
    assert ranked[1].similarity == 0.8


@pytest.mark.asyncio
async def test_rewrite_query_rejects_drift():
    """Rewrites far longer or shorter than the query are discarded."""
    query = "budget for the marketing launch"
    assert await rewrite_query(FakeLLMService(["marketing launch budget allocation"]), query) == (
        "marketing launch budget allocation"
    )
    assert await rewrite_query(FakeLLMService(["budget"]), query) is None
    assert await rewrite_query(FakeLLMService([query * 3]), query) is None


@pytest.mark.asyncio
async def test_expand_query_parses_numbered_lines():
    """Alternatives are read from a numbered list and capped."""
    llm = FakeLLMService(["Here you go:\n1. third quarter revenue\n2) Q3 earnings\n3. q3 profit\n4. extra"])

    variants = await expand_query(llm, "What were Q3 results?", max_variants=3)

    assert variants == ["third quarter revenue", "Q3 earnings", "q3 profit"]


# =========================
# Engine
# =========================


@pytest.mark.asyncio
async def test_q3_report_end_to_end(pipeline, engine, q3_report):
    """The Q3 chunk is the top match, and deleting the document removes it."""
    await pipeline.vectorize("doc-q3")

    results = await engine.search(
        "What were Q3 results?", USER_A, SearchOptions(strategy="adaptive", threshold=0.3)
    )

    assert results
    assert results[0].chunk_index == 2
    assert "Q3 results" in results[0].content
    assert results[0].document_title == "Q3 Report"

    await pipeline.remove_document("doc-q3")
    after = await engine.search(
        "What were Q3 results?", USER_A, SearchOptions(strategy="adaptive", threshold=0.3)
    )

    assert all(r.document_id != "doc-q3" for r in after)


@pytest.mark.asyncio
async def test_exact_text_query_returns_that_chunk_lazily(pipeline, engine, q3_report, llm_service):
    """Querying with a chunk's exact text finds it in Stage A without escalating."""
    await pipeline.vectorize("doc-q3")
    exact = "Hiring plan: we added twelve engineers and two designers across both offices."

    results = await engine.search(exact, USER_A)

    assert results[0].content == exact
    assert results[0].similarity == pytest.approx(1.0, abs=1e-5)
    assert results[0].stage == "semantic"
    assert engine.stage_counts["semantic"] == 1
    assert engine.stage_counts["hybrid"] == 0
    assert engine.stage_counts["expanded"] == 0
    assert llm_service.calls == 0


@pytest.mark.asyncio
async def test_weak_semantic_match_escalates_to_hybrid(pipeline, engine, q3_report):
    """A Stage A score below the quality bar triggers the hybrid stage."""
    await pipeline.vectorize("doc-q3")

    results = await engine.search("What were Q3 results?", USER_A)

    assert engine.stage_counts["hybrid"] == 1
    assert results[0].stage == "hybrid"
    assert results[0].lexical_score == 1.0


class _FixedEmbeddings(FakeEmbeddingClient):
    """Embeds known texts to hand-picked 3-d unit vectors."""

    def __init__(self, vectors: dict[str, list[float]]):
        super().__init__(dim=3)
        self.vectors = vectors

    def vector(self, text: str) -> list[float]:
        return self.vectors.get(text) or super().vector(text)


@pytest.mark.asyncio
async def test_hybrid_stage_ranks_by_blended_score(
    vector_index, chunk_store, document_store, settings, make_document
):
    """After escalation, order and similarity come from 0.7*semantic + 0.3*lexical."""
    no_terms = "Quarterly revenue summary for the northern region."
    one_term = "Notes on the gamma rollout plan for next quarter."
    weak = "Office relocation checklist and moving schedule."
    client = _FixedEmbeddings(
        {
            "gamma delta": [1.0, 0.0, 0.0],
            no_terms: [0.48, math.sqrt(1 - 0.48**2), 0.0],
            one_term: [0.32, 0.0, math.sqrt(1 - 0.32**2)],
            weak: [0.31, -math.sqrt(1 - 0.31**2), 0.0],
        }
    )
    make_document("dx", no_terms)
    make_document("dy", one_term)
    make_document("dz", weak)
    pipeline = VectorizationPipeline(
        client, vector_index, chunk_store, document_store, settings=settings
    )
    await pipeline.vectorize_many(["dx", "dy", "dz"])
    engine = RetrievalEngine(client, vector_index, chunk_store, settings=settings)

    results = await engine.search(
        "gamma delta",
        USER_A,
        SearchOptions(strategy="adaptive", use_query_expansion=False, use_query_rewriting=False),
    )

    assert engine.stage_counts["semantic"] == 1
    assert engine.stage_counts["hybrid"] == 1
    assert [r.document_id for r in results] == ["dy", "dx", "dz"]
    assert all(r.stage == "hybrid" for r in results)
    assert results[0].similarity == pytest.approx(0.7 * 0.32 + 0.3 * 0.5, abs=1e-3)
    assert results[1].similarity == pytest.approx(0.7 * 0.48, abs=1e-3)
    assert results[1].semantic_score == pytest.approx(0.48, abs=1e-3)
    assert results[1].lexical_score == 0.0
    # Stage A hit below the relaxed threshold stays, at its blended score
    assert results[2].similarity == pytest.approx(0.7 * 0.31, abs=1e-3)


@pytest.mark.asyncio
async def test_expansion_stage_uses_llm_variants(
    pipeline, embedding_client, vector_index, chunk_store, settings, q3_report
):
    """When A and B miss, LLM variants are searched in Stage C."""
    await pipeline.vectorize("doc-q3")
    llm = FakeLLMService(["1. engineers designers hiring offices"])
    engine = RetrievalEngine(
        embedding_client, vector_index, chunk_store, llm_service=llm, settings=settings
    )

    results = await engine.search("staffing growth", USER_A)

    assert engine.stage_counts["expanded"] == 1
    assert llm.calls == 1
    assert results and results[0].stage == "expanded"
    assert results[0].chunk_index == 1


@pytest.mark.asyncio
async def test_expansion_disabled_stops_after_hybrid(pipeline, engine, q3_report, llm_service):
    """Without expansion or rewriting, Stage C never runs."""
    await pipeline.vectorize("doc-q3")

    await engine.search(
        "staffing growth",
        USER_A,
        SearchOptions(use_query_expansion=False, use_query_rewriting=False),
    )

    assert engine.stage_counts["expanded"] == 0
    assert llm_service.calls == 0


@pytest.mark.asyncio
async def test_slow_expansion_degrades_to_no_variants(
    pipeline, embedding_client, vector_index, chunk_store, settings, q3_report
):
    """A variant generator that exceeds its timeout yields Stage B results."""
    await pipeline.vectorize("doc-q3")
    llm = FakeLLMService(["1. hiring"], delay=2.0)
    engine = RetrievalEngine(
        embedding_client, vector_index, chunk_store, llm_service=llm, settings=settings
    )

    results = await engine.search("staffing growth", USER_A)

    assert results == []
    assert engine.stage_counts["expanded"] == 1


@pytest.mark.asyncio
async def test_scope_isolation(pipeline, engine, make_document):
    """A user never sees another user's chunks, even for identical text."""
    text = "The launch checklist covers pricing, messaging and partner enablement."
    make_document("doc-a", text, user_id="user-a", title="Mine")
    make_document("doc-b", text, user_id="user-b", title="Theirs")
    await pipeline.vectorize("doc-a")
    await pipeline.vectorize("doc-b")

    for strategy in ("semantic", "hybrid", "adaptive"):
        results = await engine.search(text, USER_A, SearchOptions(strategy=strategy))
        assert results
        assert {r.document_id for r in results} == {"doc-a"}

    results = await engine.search(text, SearchScope(user_id="user-b"))
    assert {r.document_id for r in results} == {"doc-b"}


@pytest.mark.asyncio
async def test_document_scope_narrows_results(pipeline, engine, q3_report, make_document):
    """A document_id in the scope restricts results to that document."""
    make_document("doc-other", "Q3 results for the other team were mixed this quarter.")
    await pipeline.vectorize("doc-q3")
    await pipeline.vectorize("doc-other")

    results = await engine.search(
        "Q3 results", SearchScope(user_id="user-a", document_id="doc-other")
    )

    assert results
    assert {r.document_id for r in results} == {"doc-other"}


@pytest.mark.asyncio
async def test_cancellation_returns_best_so_far(pipeline, engine, q3_report):
    """A cancelled search stops before the next stage."""
    await pipeline.vectorize("doc-q3")
    token = CancellationToken()
    token.cancel()

    results = await engine.search("What were Q3 results?", USER_A, cancel=token)

    assert results == []
    assert engine.stage_counts["semantic"] == 0


@pytest.mark.asyncio
async def test_invalid_queries_are_rejected(engine):
    """Blank queries and missing scopes are caller errors."""
    with pytest.raises(ValidationError):
        await engine.search("   ", USER_A)
    with pytest.raises(ValidationError):
        await engine.search("anything", None)


@pytest.mark.asyncio
async def test_embedding_outage_surfaces_as_transient(vector_index, chunk_store, settings):
    """An unavailable embedding service is reported, not swallowed."""
    client = AsyncMock()
    client.embed.side_effect = TransientUpstreamError("down")
    engine = RetrievalEngine(client, vector_index, chunk_store, settings=settings)

    with pytest.raises(TransientUpstreamError):
        await engine.search("anything", USER_A)


@pytest.mark.asyncio
async def test_no_documents_returns_empty(engine):
    """An empty index is a normal empty result."""
    assert await engine.search("What were Q3 results?", USER_A) == []


@pytest.mark.asyncio
async def test_get_context_groups_by_title(pipeline, engine, q3_report):
    """Context is grouped under the document title and never shows ids."""
    await pipeline.vectorize("doc-q3")

    context = await engine.get_context("What were Q3 results?", USER_A)

    assert context.startswith("**Q3 Report**")
    assert "Q3 results" in context
    assert "doc-q3" not in context
    assert len(context) <= engine.settings.CONTEXT_CHAR_BUDGET
