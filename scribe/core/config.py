"""Configuration management for the Scribe retrieval and routing service."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from scribe.core.errors import ConfigurationError

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    # Environment variables should be set directly
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # OpenAI configuration (required)
    OPENAI_API_KEY: str = Field(..., description="OpenAI API key")

    # Optional providers
    ANTHROPIC_API_KEY: str | None = Field(default=None, description="Anthropic API key")
    SUPABASE_URL: str | None = Field(default=None, description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str | None = Field(
        default=None, description="Supabase service role key"
    )

    # Environment
    SCRIBE_ENV: str = Field(default="dev", description="Environment: dev, test, prod")

    # Embedding configuration
    EMBEDDING_MODEL: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model"
    )
    EMBEDDING_DIM: int = Field(default=1536, description="Embedding vector dimension")
    EMBEDDING_TIMEOUT_SECONDS: float = Field(
        default=20.0, description="Timeout for a single embedding request"
    )
    EMBEDDING_CACHE_SIZE: int = Field(
        default=512, description="Number of query embeddings kept in the LRU cache"
    )

    # LLM configuration
    LLM_PROVIDER: str = Field(default="openai", description="Completion backend: openai, anthropic")
    META_CLASSIFIER_MODEL: str = Field(
        default="gpt-4o-mini", description="Model used by the meta-classifier"
    )
    QUERY_EXPANSION_MODEL: str = Field(
        default="gpt-4o-mini", description="Model used for query rewriting and expansion"
    )
    ANTHROPIC_MODEL: str = Field(
        default="claude-haiku-4-5-20251001", description="Model used when LLM_PROVIDER=anthropic"
    )

    # Chunking
    CHUNK_STRATEGY: str = Field(default="paragraph", description="Chunking policy: paragraph, fixed")
    CHUNK_MAX_CHARS: int = Field(default=1000, description="Maximum characters per chunk")
    CHUNK_MIN_CHARS: int = Field(
        default=40, description="Paragraphs shorter than this merge into the next one"
    )
    CHUNK_OVERLAP: int = Field(default=150, description="Overlap when splitting long text")

    # Vectorization pipeline
    VECTOR_INDEX_BACKEND: str = Field(default="memory", description="Vector index: memory, supabase")
    VECTOR_INDEX_TIMEOUT_SECONDS: float = Field(
        default=10.0, description="Timeout for a vector index call"
    )
    EMBED_BATCH_SIZE: int = Field(default=16, description="Chunks embedded per batch")
    EMBED_BATCH_DELAY_SECONDS: float = Field(
        default=0.1, description="Pause between embedding batches"
    )
    EMBED_MAX_ATTEMPTS: int = Field(default=4, description="Attempts per embedding call")
    EMBED_BACKOFF_INITIAL_SECONDS: float = Field(
        default=0.5, description="First retry delay for embedding calls"
    )
    EMBED_BACKOFF_MAX_SECONDS: float = Field(
        default=8.0, description="Upper bound on embedding retry delay"
    )
    VECTORIZE_CONCURRENCY: int = Field(
        default=3, description="Documents vectorized in parallel by batch and queue workers"
    )

    # Retrieval
    RETRIEVAL_DEFAULT_LIMIT: int = Field(default=5, description="Default number of results")
    RETRIEVAL_THRESHOLD: float = Field(default=0.3, description="Stage A similarity threshold")
    RETRIEVAL_STAGE_RELAXATION: float = Field(
        default=0.05, description="Threshold reduction applied at each escalation stage"
    )
    RETRIEVAL_QUALITY_BAR: float = Field(
        default=0.5, description="Top score that stops adaptive escalation"
    )
    HYBRID_SEMANTIC_WEIGHT: float = Field(default=0.7, description="Hybrid semantic weight")
    HYBRID_LEXICAL_WEIGHT: float = Field(default=0.3, description="Hybrid lexical weight")
    HYBRID_PHRASE_BONUS: float = Field(
        default=0.3, description="Lexical bonus when the whole query phrase appears"
    )
    QUERY_EXPANSION_MAX_VARIANTS: int = Field(
        default=3, description="Maximum paraphrases generated in Stage C"
    )
    QUERY_EXPANSION_TIMEOUT_SECONDS: float = Field(
        default=4.0, description="Time budget for Stage C query rewriting"
    )
    CONTEXT_CHAR_BUDGET: int = Field(default=4000, description="Max characters of assembled context")

    # Intent router
    ROUTER_EMBEDDING_BAR: float = Field(
        default=0.85, description="Matcher confidence accepted without further signals"
    )
    ROUTER_NEIGHBOR_K: int = Field(default=5, description="Neighbours consulted by the matcher")
    ROUTER_NEIGHBOR_WINDOW: float = Field(
        default=0.15, description="Neighbours further than this below the best match do not vote"
    )
    ROUTER_AGREEMENT_MIN: float = Field(
        default=0.6, description="Vote share the best intent needs for neighbours to agree"
    )
    ROUTER_CLASSIFIER_BAR: float = Field(
        default=0.7, description="Learned classifier confidence accepted by the router"
    )
    META_CLASSIFIER_TIMEOUT_SECONDS: float = Field(
        default=3.0, description="Overall time budget of the meta-classifier"
    )
    META_CLASSIFIER_MAX_ATTEMPTS: int = Field(
        default=2, description="Attempts on transient meta-classifier failures"
    )
    META_CLASSIFIER_MAX_EXAMPLES: int = Field(
        default=5, description="Few-shot examples included in the meta prompt"
    )
    EXAMPLE_STORE_CAPACITY: int = Field(
        default=2000, description="Maximum labelled examples held by the matcher"
    )
    CLASSIFIER_MODEL_PATH: str | None = Field(
        default=None, description="joblib artefact loaded into the learned classifier"
    )
    ROUTER_LOAD_SEED_EXAMPLES: bool = Field(
        default=True, description="Bootstrap the matcher with built-in examples"
    )

    def validate_thresholds(self) -> None:
        """Fail fast on settings that would make routing or retrieval incoherent."""
        bars = {
            "ROUTER_EMBEDDING_BAR": self.ROUTER_EMBEDDING_BAR,
            "ROUTER_AGREEMENT_MIN": self.ROUTER_AGREEMENT_MIN,
            "ROUTER_CLASSIFIER_BAR": self.ROUTER_CLASSIFIER_BAR,
            "RETRIEVAL_QUALITY_BAR": self.RETRIEVAL_QUALITY_BAR,
            "HYBRID_SEMANTIC_WEIGHT": self.HYBRID_SEMANTIC_WEIGHT,
            "HYBRID_LEXICAL_WEIGHT": self.HYBRID_LEXICAL_WEIGHT,
        }
        for name, value in bars.items():
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be within [0, 1], got {value}")

        weight_sum = self.HYBRID_SEMANTIC_WEIGHT + self.HYBRID_LEXICAL_WEIGHT
        if abs(weight_sum - 1.0) > 1e-6:
            raise ConfigurationError(f"Hybrid weights must sum to 1, got {weight_sum:.3f}")

        if self.CHUNK_OVERLAP >= self.CHUNK_MAX_CHARS:
            raise ConfigurationError(
                f"CHUNK_OVERLAP ({self.CHUNK_OVERLAP}) must be smaller than "
                f"CHUNK_MAX_CHARS ({self.CHUNK_MAX_CHARS})"
            )

        if self.CHUNK_STRATEGY not in ("paragraph", "fixed"):
            raise ConfigurationError(f"Unknown CHUNK_STRATEGY: {self.CHUNK_STRATEGY}")

        if self.LLM_PROVIDER not in ("openai", "anthropic"):
            raise ConfigurationError(f"Unknown LLM_PROVIDER: {self.LLM_PROVIDER}")

        if self.VECTOR_INDEX_BACKEND not in ("memory", "supabase"):
            raise ConfigurationError(f"Unknown VECTOR_INDEX_BACKEND: {self.VECTOR_INDEX_BACKEND}")


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings instance loaded from environment
    """
    return Settings()
