"""Service wiring for the retrieval and routing subsystem."""

from dataclasses import dataclass

from scribe.context.intent_matcher import EmbeddingMatcher
from scribe.context.learned_classifier import LearnedClassifier
from scribe.context.meta_classifier import LLMMetaClassifier
from scribe.context.router import HybridRouter
from scribe.core.config import Settings, get_settings
from scribe.core.embeddings import EmbeddingClient, OpenAIEmbeddingClient
from scribe.core.llm import LLMService, build_llm_service
from scribe.core.logging import get_logger
from scribe.core.retrieval import RetrievalEngine
from scribe.core.vector_index import InMemoryVectorIndex, VectorIndex
from scribe.core.vectorization import VectorizationPipeline
from scribe.core.vectorization_queue import VectorizationQueue
from scribe.db.chunk_store import ChunkStore, InMemoryChunkStore
from scribe.db.documents import DocumentStore, InMemoryDocumentStore, SupabaseDocumentStore

logger = get_logger(__name__)


@dataclass
class Services:
    """Long-lived components shared by every request."""

    settings: Settings
    embedding_client: EmbeddingClient
    vector_index: VectorIndex
    chunk_store: ChunkStore
    document_store: DocumentStore
    pipeline: VectorizationPipeline
    queue: VectorizationQueue
    retrieval: RetrievalEngine
    router: HybridRouter

    async def startup(self) -> None:
        await self.router.initialize()
        self.queue.start()

    async def shutdown(self) -> None:
        await self.queue.stop()
        await self.router.drain_feedback()


def build_services(
    settings: Settings | None = None,
    *,
    embedding_client: EmbeddingClient | None = None,
    vector_index: VectorIndex | None = None,
    chunk_store: ChunkStore | None = None,
    document_store: DocumentStore | None = None,
    meta_llm: LLMService | None = None,
    expansion_llm: LLMService | None = None,
) -> Services:
    """
    Build the service graph from settings.

    Any component can be injected; the rest are created from configuration.

    Raises:
        ConfigurationError: On incoherent thresholds, a missing backend
            credential, or an unreadable classifier artefact
    """
    settings = settings or get_settings()
    settings.validate_thresholds()

    embedding_client = embedding_client or OpenAIEmbeddingClient(settings)
    chunk_store = chunk_store or InMemoryChunkStore()

    if vector_index is None:
        if settings.VECTOR_INDEX_BACKEND == "supabase":
            from scribe.db.chunk_vectors import SupabaseVectorIndex

            vector_index = SupabaseVectorIndex(timeout=settings.VECTOR_INDEX_TIMEOUT_SECONDS)
        else:
            vector_index = InMemoryVectorIndex()

    if document_store is None:
        if settings.VECTOR_INDEX_BACKEND == "supabase":
            document_store = SupabaseDocumentStore()
        else:
            document_store = InMemoryDocumentStore()

    meta_llm = meta_llm or build_llm_service(settings, settings.META_CLASSIFIER_MODEL)
    expansion_llm = expansion_llm or build_llm_service(settings, settings.QUERY_EXPANSION_MODEL)

    pipeline = VectorizationPipeline(
        embedding_client, vector_index, chunk_store, document_store, settings=settings
    )
    retrieval = RetrievalEngine(
        embedding_client, vector_index, chunk_store, llm_service=expansion_llm, settings=settings
    )

    matcher = EmbeddingMatcher(
        capacity=settings.EXAMPLE_STORE_CAPACITY,
        k=settings.ROUTER_NEIGHBOR_K,
        window=settings.ROUTER_NEIGHBOR_WINDOW,
        agreement_min=settings.ROUTER_AGREEMENT_MIN,
    )
    classifier = LearnedClassifier(embedding_client)
    if settings.CLASSIFIER_MODEL_PATH:
        classifier.load(settings.CLASSIFIER_MODEL_PATH)

    meta_classifier = LLMMetaClassifier(
        meta_llm,
        matcher=matcher,
        timeout=settings.META_CLASSIFIER_TIMEOUT_SECONDS,
        max_attempts=settings.META_CLASSIFIER_MAX_ATTEMPTS,
        max_examples=settings.META_CLASSIFIER_MAX_EXAMPLES,
    )
    router = HybridRouter(embedding_client, matcher, classifier, meta_classifier, settings=settings)

    logger.info(
        f"Built services (index={type(vector_index).__name__}, "
        f"llm_provider={settings.LLM_PROVIDER}, classifier_trained={classifier.is_trained()})"
    )
    return Services(
        settings=settings,
        embedding_client=embedding_client,
        vector_index=vector_index,
        chunk_store=chunk_store,
        document_store=document_store,
        pipeline=pipeline,
        queue=VectorizationQueue(pipeline, workers=settings.VECTORIZE_CONCURRENCY),
        retrieval=retrieval,
        router=router,
    )
