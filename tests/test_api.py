"""Tests for the HTTP surface."""

import json

import pytest
from fastapi.testclient import TestClient

from scribe.main import create_app
from scribe.services import build_services
from tests.fakes.llm import FakeLLMService


@pytest.fixture
def client(settings, embedding_client, document_store, q3_report):
    """TestClient with the lifespan running over in-memory services."""
    services = build_services(
        settings,
        embedding_client=embedding_client,
        document_store=document_store,
        meta_llm=FakeLLMService([json.dumps({"intent": "ask", "confidence": 0.7})]),
        expansion_llm=FakeLLMService(),
    )
    with TestClient(create_app(services)) as test_client:
        yield test_client


def _vectorize(client, document_id="doc-q3", **body):
    return client.post(f"/v1/documents/{document_id}/vectorize", json=body or None)


def test_classify_exact_example(client):
    """A stored seed example is routed by the embedding matcher."""
    response = client.post("/v1/router/classify", json={"query": "What is machine learning?"})

    assert response.status_code == 200
    data = response.json()
    assert data["intent"] == "ask"
    assert data["method"] == "embedding"
    assert data["slots"]["outputs"] == "answer"


def test_classify_blank_query_is_422(client):
    response = client.post("/v1/router/classify", json={"query": "  "})

    assert response.status_code == 422
    assert "query" in response.json()["detail"]


def test_feedback_is_accepted(client):
    """Feedback returns 202 and shows up in the metrics."""
    response = client.post(
        "/v1/router/feedback",
        json={"query": "Is the stadium open?", "correct_intent": "web_search", "predicted_intent": "ask"},
    )

    assert response.status_code == 202
    assert response.json() == {"status": "accepted", "is_correction": True}

    metrics = client.get("/v1/router/metrics").json()
    assert metrics["feedback_count"] == 1
    assert metrics["correction_count"] == 1


def test_feedback_unknown_label_is_422(client):
    response = client.post(
        "/v1/router/feedback",
        json={"query": "hello", "correct_intent": "translate", "predicted_intent": "ask"},
    )

    assert response.status_code == 422
    assert response.json()["label"] == "translate"


def test_status_reports_router_and_queue(client):
    data = client.get("/v1/router/status").json()

    assert data["initialized"] is True
    assert data["example_store"]["size"] > 0
    assert data["meta_classifier"]["configured"] is True
    assert data["vectorization_queue"]["running"] is True


def test_vectorize_and_inspect_state(client):
    """Synchronous indexing returns the result and records the state."""
    response = _vectorize(client)

    assert response.status_code == 200
    assert response.json()["chunks_added"] == 3

    state = client.get("/v1/documents/doc-q3/index-state").json()
    assert state["is_vectorized"] is True
    assert state["chunk_count"] == 3
    assert state["status"] == "indexed"

    again = _vectorize(client).json()
    assert again["skipped"] is True


def test_vectorize_unknown_document_is_404(client):
    assert _vectorize(client, "missing").status_code == 404


def test_index_state_of_unindexed_document_is_404(client):
    assert client.get("/v1/documents/doc-q3/index-state").status_code == 404


def test_background_vectorize_is_queued(client):
    response = _vectorize(client, background=True)

    assert response.status_code == 202
    data = response.json()
    assert data["status"] == "queued"
    assert data["document_id"] == "doc-q3"


def test_remove_document_index(client):
    _vectorize(client)

    response = client.delete("/v1/documents/doc-q3/index")

    assert response.status_code == 200
    assert response.json() == {"document_id": "doc-q3", "chunks_removed": 3}


def test_search_finds_indexed_paragraph(client):
    """The Q3 results paragraph is retrievable by its own wording."""
    _vectorize(client)

    response = client.post(
        "/v1/search",
        json={"query": "Q3 results revenue grew", "user_id": "user-a"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["count"] >= 1
    assert data["results"][0]["document_id"] == "doc-q3"
    assert "Q3 results" in data["results"][0]["content"]


def test_search_is_scoped_to_user(client):
    _vectorize(client)

    response = client.post(
        "/v1/search", json={"query": "Q3 results revenue grew", "user_id": "user-b"}
    )

    assert response.status_code == 200
    assert response.json()["count"] == 0


@pytest.mark.parametrize(
    "body",
    [
        {"query": "   ", "user_id": "user-a"},
        {"query": "revenue", "user_id": " "},
    ],
)
def test_search_rejects_blank_query_or_user(client, body):
    assert client.post("/v1/search", json=body).status_code == 422


def test_search_context_block(client):
    _vectorize(client)

    response = client.post(
        "/v1/search/context",
        json={"query": "Q3 results revenue grew", "user_id": "user-a", "max_results": 1},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["has_results"] is True
    assert data["context"].startswith("**Q3 Report**")
