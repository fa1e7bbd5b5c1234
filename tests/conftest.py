"""Pytest configuration and fixtures."""

import os

import pytest

from scribe.core.config import Settings
from scribe.core.retrieval import RetrievalEngine
from scribe.core.schemas_index import DocumentRecord
from scribe.core.vector_index import InMemoryVectorIndex
from scribe.core.vectorization import VectorizationPipeline
from scribe.db.chunk_store import InMemoryChunkStore
from scribe.db.documents import InMemoryDocumentStore
from tests.fakes.embeddings import FakeEmbeddingClient
from tests.fakes.llm import FakeLLMService


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["SUPABASE_URL"] = "https://test.supabase.co"
    os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-key"
    os.environ["OPENAI_API_KEY"] = "test-openai-key"
    os.environ["SCRIBE_ENV"] = "test"


@pytest.fixture
def settings():
    """Settings with no backoff or batch delay, and short upstream timeouts."""
    return Settings(
        OPENAI_API_KEY="test-openai-key",
        SCRIBE_ENV="test",
        CHUNK_MIN_CHARS=20,
        EMBED_BATCH_SIZE=4,
        EMBED_BATCH_DELAY_SECONDS=0.0,
        EMBED_MAX_ATTEMPTS=2,
        EMBED_BACKOFF_INITIAL_SECONDS=0.0,
        EMBED_BACKOFF_MAX_SECONDS=0.0,
        EMBEDDING_TIMEOUT_SECONDS=2.0,
        VECTOR_INDEX_TIMEOUT_SECONDS=2.0,
        QUERY_EXPANSION_TIMEOUT_SECONDS=0.5,
        META_CLASSIFIER_TIMEOUT_SECONDS=0.5,
        ROUTER_LOAD_SEED_EXAMPLES=True,
    )


@pytest.fixture
def embedding_client():
    return FakeEmbeddingClient()


@pytest.fixture
def vector_index():
    return InMemoryVectorIndex()


@pytest.fixture
def chunk_store():
    return InMemoryChunkStore()


@pytest.fixture
def document_store():
    return InMemoryDocumentStore()


@pytest.fixture
def llm_service():
    return FakeLLMService()


@pytest.fixture
def pipeline(embedding_client, vector_index, chunk_store, document_store, settings):
    return VectorizationPipeline(
        embedding_client, vector_index, chunk_store, document_store, settings=settings
    )


@pytest.fixture
def engine(embedding_client, vector_index, chunk_store, llm_service, settings):
    return RetrievalEngine(
        embedding_client, vector_index, chunk_store, llm_service=llm_service, settings=settings
    )


# =========================
# Sample documents
# =========================

Q3_REPORT = (
    "Quarterly overview for the leadership team covering the third quarter.\n\n"
    "Hiring plan: we added twelve engineers and two designers across both offices.\n\n"
    "Q3 results: revenue grew 18 percent and operating margin improved to 22 percent."
)


@pytest.fixture
def q3_report(document_store):
    """Three-paragraph report owned by user-a."""
    document = DocumentRecord(
        document_id="doc-q3", user_id="user-a", title="Q3 Report", content=Q3_REPORT
    )
    document_store.save(document)
    return document


@pytest.fixture
def make_document(document_store):
    """Factory saving a document to the in-memory store."""

    def _make(document_id: str, content: str, user_id: str = "user-a", title: str = "Notes"):
        document = DocumentRecord(
            document_id=document_id, user_id=user_id, title=title, content=content
        )
        document_store.save(document)
        return document

    return _make
