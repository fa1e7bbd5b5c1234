"""Adaptive document retrieval.

Three stages, each run only if the previous one missed the quality bar:
  Stage A: semantic search against the vector index.
  Stage B: hybrid search, semantic candidates plus lexical keyword matches,
           re-ranked by a weighted blend of both scores.
  Stage C: query rewriting/expansion via an LLM, semantic search per variant.

Every index and chunk-store read is filtered by the caller's user scope.
"""

import asyncio
import re
from collections import Counter
from datetime import datetime
from typing import Any, Collection

import numpy as np

from scribe.core.config import Settings, get_settings
from scribe.core.embeddings import EmbeddingClient
from scribe.core.errors import TransientUpstreamError, ValidationError
from scribe.core.llm import LLMService
from scribe.core.logging import get_logger
from scribe.core.metrics import timer
from scribe.core.retrieval_format import format_search_context
from scribe.core.retry import with_timeout
from scribe.core.schemas_retrieval import SearchOptions, SearchResult, SearchScope, SearchStage
from scribe.core.vector_index import VectorIndex, VectorMatch, cosine_similarity
from scribe.db.chunk_store import ChunkStore

logger = get_logger(__name__)

_TOKEN = re.compile(r"[a-z0-9]+")
_NUMBERED_LINE = re.compile(r"^\s*\d+[.)]\s*(.+?)\s*$")

STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "can", "did", "do", "does",
        "for", "from", "had", "has", "have", "how", "in", "is", "it", "its", "me", "my",
        "of", "on", "or", "our", "say", "says", "tell", "that", "the", "their", "there",
        "this", "to", "was", "we", "were", "what", "when", "where", "which", "who",
        "why", "will", "with", "you", "your",
    }
)


class CancellationToken:
    """Cooperative cancellation checked between retrieval stages."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


# =============================================================================
# Lexical scoring
# =============================================================================


def extract_terms(text: str) -> list[str]:
    """Distinct lowercase query terms of 2+ characters, stopwords removed, in order."""
    terms: list[str] = []
    for token in _TOKEN.findall(text.lower()):
        if len(token) >= 2 and token not in STOPWORDS and token not in terms:
            terms.append(token)
    return terms


def lexical_overlap(terms: list[str], content: str, phrase_bonus: float = 0.3) -> float:
    """Share of query terms present in content, plus a bonus if they appear as a phrase."""
    if not terms:
        return 0.0

    tokens = _TOKEN.findall(content.lower())
    token_set = set(tokens)
    score = sum(1 for term in terms if term in token_set) / len(terms)

    if len(terms) > 1 and " ".join(terms) in " ".join(tokens):
        score += phrase_bonus

    return min(score, 1.0)


def rank_results(results: list[SearchResult]) -> list[SearchResult]:
    """Deduplicate by (document_id, chunk_index) keeping the best score, then sort.

    Ties on similarity go to the more recently updated chunk.
    """
    best: dict[tuple[str, int], SearchResult] = {}
    for result in results:
        key = (result.document_id, result.chunk_index)
        current = best.get(key)
        if current is None or result.similarity > current.similarity:
            best[key] = result

    def _sort_key(result: SearchResult) -> tuple[float, float]:
        updated = result.updated_at.timestamp() if result.updated_at else 0.0
        return (-result.similarity, -updated)

    return sorted(best.values(), key=_sort_key)


# =============================================================================
# Query rewriting
# =============================================================================


REWRITE_SYSTEM = (
    "You rewrite search queries over a user's own documents. Make the query more "
    "specific and keyword-rich without changing its meaning. Reply with the rewritten "
    "query only."
)

EXPANSION_SYSTEM = (
    "You generate alternative phrasings of a search query over a user's own documents. "
    "Each alternative should use different wording or target a different aspect of the "
    "same question. Reply with a numbered list, one query per line."
)


async def rewrite_query(llm: LLMService, query: str) -> str | None:
    """Rewrite a query for retrieval.

    Rewrites longer than 2x or shorter than 0.7x the original are rejected as
    drift, as are rewrites identical to the input.
    """
    raw = await llm.complete(query, system=REWRITE_SYSTEM, temperature=0.2, max_tokens=120)
    rewritten = raw.strip().strip('"').strip()

    if not rewritten or rewritten.lower() == query.lower():
        return None
    if len(rewritten) > 2 * len(query) or len(rewritten) < 0.7 * len(query):
        logger.debug(f"Rejected query rewrite with length {len(rewritten)} vs {len(query)}")
        return None
    return rewritten


async def expand_query(llm: LLMService, query: str, max_variants: int = 3) -> list[str]:
    """Generate up to max_variants alternative phrasings of a query."""
    prompt = f"Query: {query}\n\nGive up to {max_variants} alternative search queries."
    raw = await llm.complete(prompt, system=EXPANSION_SYSTEM, temperature=0.4, max_tokens=200)

    variants: list[str] = []
    for line in raw.splitlines():
        match = _NUMBERED_LINE.match(line)
        if not match:
            continue
        variant = match.group(1).strip().strip('"').strip()
        if variant and variant.lower() != query.lower() and variant not in variants:
            variants.append(variant)

    return variants[:max_variants]


# =============================================================================
# Retrieval engine
# =============================================================================


class RetrievalEngine:
    """Scoped, staged search over the vector index and chunk table."""

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        vector_index: VectorIndex,
        chunk_store: ChunkStore,
        llm_service: LLMService | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.embedding_client = embedding_client
        self.vector_index = vector_index
        self.chunk_store = chunk_store
        self.llm_service = llm_service
        self.stage_counts: Counter[str] = Counter()

    async def search(
        self,
        query: str,
        scope: SearchScope,
        options: SearchOptions | None = None,
        cancel: CancellationToken | None = None,
    ) -> list[SearchResult]:
        """
        Search the user's documents.

        Args:
            query: Natural-language query
            scope: Authorized user scope, optionally narrowed to one document
            options: Limit, threshold, strategy and Stage C switches
            cancel: Token checked before each escalation stage

        Returns:
            Ranked results, possibly empty. An empty list means "no match".

        Raises:
            ValidationError: If the query is blank or the scope is missing
            TransientUpstreamError: If the query embedding or index call fails
        """
        query = (query or "").strip()
        if not query:
            raise ValidationError("query must not be empty")
        if scope is None or not scope.user_id:
            raise ValidationError("search requires a user scope")

        options = options or SearchOptions()
        limit = options.limit or self.settings.RETRIEVAL_DEFAULT_LIMIT
        threshold = (
            options.threshold if options.threshold is not None else self.settings.RETRIEVAL_THRESHOLD
        )

        with timer(f"Search ({options.strategy})", scope.document_id, log_level="debug"):
            if options.strategy == "adaptive":
                results = await self._adaptive(query, scope, options, limit, threshold, cancel)
            else:
                search_query = query
                if options.use_query_rewriting:
                    search_query = await self._rewrite_for_search(query) or query
                vector = await self._embed(search_query)
                if options.strategy == "semantic":
                    results = await self._semantic_stage(vector, scope, threshold, limit)
                else:
                    results = await self._hybrid_stage(search_query, vector, scope, threshold, limit)

        ranked = rank_results(results)[:limit]
        logger.info(
            f"Search returned {len(ranked)} results",
            extra={"strategy": options.strategy, "user_id": scope.user_id},
        )
        return ranked

    async def get_context(
        self,
        query: str,
        scope: SearchScope,
        document_id: str | None = None,
        max_results: int = 5,
        cancel: CancellationToken | None = None,
        style: str = "grouped",
    ) -> str:
        """
        Search and format the top results as a citation-ready context block.

        Returns:
            Context text within CONTEXT_CHAR_BUDGET, or "" when nothing matched
        """
        if document_id:
            scope = scope.model_copy(update={"document_id": document_id})

        results = await self.search(query, scope, SearchOptions(limit=max_results), cancel)
        return format_search_context(results, self.settings.CONTEXT_CHAR_BUDGET, style)

    # =========================================================================
    # Adaptive escalation
    # =========================================================================

    async def _adaptive(
        self,
        query: str,
        scope: SearchScope,
        options: SearchOptions,
        limit: int,
        threshold: float,
        cancel: CancellationToken | None,
    ) -> list[SearchResult]:
        relax = self.settings.RETRIEVAL_STAGE_RELAXATION
        candidates = limit * 2
        best: list[SearchResult] = []

        if _is_cancelled(cancel):
            return best

        vector = await self._embed(query)
        best = rank_results(await self._semantic_stage(vector, scope, threshold, candidates))
        if self._clears_bar(best):
            return best

        if _is_cancelled(cancel):
            return best
        logger.debug("Stage A below quality bar, escalating to hybrid search")
        # Stage B re-scores Stage A's hits, so its blended scores replace theirs
        hybrid = await self._hybrid_stage(
            query,
            vector,
            scope,
            threshold - relax,
            candidates,
            retain={result.chunk_id for result in best},
        )
        best = rank_results(hybrid)
        if self._clears_bar(best):
            return best

        if _is_cancelled(cancel):
            return best
        if not (options.use_query_expansion or options.use_query_rewriting):
            return best
        logger.debug("Stage B below quality bar, escalating to query expansion")
        expanded = await self._expansion_stage(
            query, scope, options, threshold - 2 * relax, candidates
        )
        return rank_results(best + expanded)

    def _clears_bar(self, ranked: list[SearchResult]) -> bool:
        return bool(ranked) and ranked[0].similarity >= self.settings.RETRIEVAL_QUALITY_BAR

    # =========================================================================
    # Stages
    # =========================================================================

    async def _semantic_stage(
        self, vector: list[float], scope: SearchScope, threshold: float, top_k: int
    ) -> list[SearchResult]:
        self.stage_counts["semantic"] += 1
        matches = await self._query_index(vector, scope, threshold, top_k)
        return [self._from_match(match, "semantic") for match in matches]

    async def _hybrid_stage(
        self,
        query: str,
        vector: list[float],
        scope: SearchScope,
        threshold: float,
        top_k: int,
        retain: Collection[str] = (),
    ) -> list[SearchResult]:
        """Blend semantic and lexical scores; chunk ids in retain survive the threshold."""
        self.stage_counts["hybrid"] += 1
        terms = extract_terms(query)
        candidates: dict[str, tuple[SearchResult, float]] = {}

        for match in await self._query_index(vector, scope, None, max(top_k, 20)):
            candidates[match.id] = (self._from_match(match, "hybrid"), match.score)

        if terms:
            query_vector = np.asarray(vector, dtype=np.float32)
            rows = self.chunk_store.list_chunks(scope.user_id, scope.document_id)
            for chunk, state in rows:
                if chunk.chunk_id in candidates:
                    continue
                if lexical_overlap(terms, chunk.content) <= 0:
                    continue
                semantic = cosine_similarity(query_vector, np.asarray(chunk.embedding, dtype=np.float32))
                candidates[chunk.chunk_id] = (
                    SearchResult(
                        chunk_id=chunk.chunk_id,
                        document_id=chunk.document_id,
                        document_title=state.document_title,
                        content=chunk.content,
                        similarity=_clip(semantic),
                        chunk_index=chunk.chunk_index,
                        updated_at=chunk.updated_at,
                        stage="hybrid",
                    ),
                    semantic,
                )

        semantic_weight = self.settings.HYBRID_SEMANTIC_WEIGHT
        lexical_weight = self.settings.HYBRID_LEXICAL_WEIGHT
        results = []
        for result, semantic in candidates.values():
            lexical = lexical_overlap(terms, result.content, self.settings.HYBRID_PHRASE_BONUS)
            combined = semantic_weight * semantic + lexical_weight * lexical
            if combined < threshold and result.chunk_id not in retain:
                continue
            results.append(
                result.model_copy(
                    update={
                        "similarity": _clip(combined),
                        "semantic_score": semantic,
                        "lexical_score": lexical,
                        "stage": "hybrid",
                    }
                )
            )
        return results

    async def _expansion_stage(
        self,
        query: str,
        scope: SearchScope,
        options: SearchOptions,
        threshold: float,
        top_k: int,
    ) -> list[SearchResult]:
        self.stage_counts["expanded"] += 1
        variants = await self._generate_variants(query, options)
        if not variants:
            return []

        async def _search_variant(variant: str) -> list[SearchResult]:
            try:
                vector = await self._embed(variant)
            except TransientUpstreamError as e:
                logger.warning(f"Skipping query variant, embedding failed: {e}")
                return []
            matches = await self._query_index(vector, scope, threshold, top_k)
            return [self._from_match(match, "expanded") for match in matches]

        batches = await asyncio.gather(*(_search_variant(v) for v in variants))
        return [result for batch in batches for result in batch]

    async def _generate_variants(self, query: str, options: SearchOptions) -> list[str]:
        """Paraphrases for Stage C, bounded by QUERY_EXPANSION_TIMEOUT_SECONDS."""
        if self.llm_service is None:
            return []

        async def _produce() -> list[str]:
            variants: list[str] = []
            if options.use_query_rewriting:
                rewritten = await rewrite_query(self.llm_service, query)
                if rewritten:
                    variants.append(rewritten)
            if options.use_query_expansion:
                for variant in await expand_query(
                    self.llm_service, query, self.settings.QUERY_EXPANSION_MAX_VARIANTS
                ):
                    if variant not in variants:
                        variants.append(variant)
            return variants[: self.settings.QUERY_EXPANSION_MAX_VARIANTS]

        try:
            return await asyncio.wait_for(
                _produce(), timeout=self.settings.QUERY_EXPANSION_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.warning("Query expansion timed out, continuing without variants")
            return []
        except Exception as e:
            logger.warning(f"Query expansion failed, continuing without variants: {e}")
            return []

    async def _rewrite_for_search(self, query: str) -> str | None:
        if self.llm_service is None:
            return None
        try:
            return await asyncio.wait_for(
                rewrite_query(self.llm_service, query),
                timeout=self.settings.QUERY_EXPANSION_TIMEOUT_SECONDS,
            )
        except Exception as e:
            logger.warning(f"Query rewriting failed, using original query: {e}")
            return None

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _embed(self, text: str) -> list[float]:
        return await with_timeout(
            self.embedding_client.embed(text),
            self.settings.EMBEDDING_TIMEOUT_SECONDS,
            "query embedding",
        )

    async def _query_index(
        self, vector: list[float], scope: SearchScope, threshold: float | None, top_k: int
    ) -> list[VectorMatch]:
        return await with_timeout(
            self.vector_index.query(
                vector, top_k=top_k, filter=scope.as_filter(), threshold=threshold
            ),
            self.settings.VECTOR_INDEX_TIMEOUT_SECONDS,
            "vector index query",
        )

    @staticmethod
    def _from_match(match: VectorMatch, stage: SearchStage) -> SearchResult:
        metadata = match.metadata
        return SearchResult(
            chunk_id=match.id,
            document_id=str(metadata["document_id"]),
            document_title=metadata.get("document_title") or "Untitled",
            content=metadata.get("content") or "",
            similarity=_clip(match.score),
            chunk_index=int(metadata["chunk_index"]),
            updated_at=_parse_timestamp(metadata.get("updated_at")),
            semantic_score=match.score,
            stage=stage,
        )


def _is_cancelled(cancel: CancellationToken | None) -> bool:
    if cancel is not None and cancel.cancelled:
        logger.info("Search cancelled before next stage")
        return True
    return False


def _clip(score: float) -> float:
    return float(min(1.0, max(-1.0, score)))


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
