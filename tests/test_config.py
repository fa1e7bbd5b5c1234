"""Tests for settings validation."""

import pytest

from scribe.core.config import Settings
from scribe.core.errors import ConfigurationError


def _settings(**overrides) -> Settings:
    return Settings(OPENAI_API_KEY="test-openai-key", **overrides)


def test_defaults_are_coherent():
    settings = _settings()

    settings.validate_thresholds()

    assert settings.RETRIEVAL_THRESHOLD == 0.3
    assert settings.RETRIEVAL_QUALITY_BAR == 0.5
    assert settings.ROUTER_EMBEDDING_BAR == 0.85
    assert settings.ROUTER_CLASSIFIER_BAR == 0.7


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"ROUTER_EMBEDDING_BAR": 1.5}, "ROUTER_EMBEDDING_BAR"),
        ({"RETRIEVAL_QUALITY_BAR": -0.1}, "RETRIEVAL_QUALITY_BAR"),
        ({"HYBRID_SEMANTIC_WEIGHT": 0.8}, "sum to 1"),
        ({"CHUNK_OVERLAP": 1000}, "CHUNK_OVERLAP"),
        ({"CHUNK_STRATEGY": "sentence"}, "CHUNK_STRATEGY"),
        ({"LLM_PROVIDER": "cohere"}, "LLM_PROVIDER"),
        ({"VECTOR_INDEX_BACKEND": "pinecone"}, "VECTOR_INDEX_BACKEND"),
    ],
)
def test_incoherent_settings_are_rejected(overrides, message):
    with pytest.raises(ConfigurationError, match=message):
        _settings(**overrides).validate_thresholds()


def test_environment_overrides(monkeypatch):
    """Settings are read from the environment."""
    monkeypatch.setenv("RETRIEVAL_THRESHOLD", "0.42")
    monkeypatch.setenv("LLM_PROVIDER", "anthropic")

    settings = _settings()

    assert settings.RETRIEVAL_THRESHOLD == 0.42
    assert settings.LLM_PROVIDER == "anthropic"
