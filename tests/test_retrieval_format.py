"""Tests for context block formatting."""

from scribe.core.retrieval_format import format_search_context
from scribe.core.schemas_retrieval import SearchResult


def _result(document_id: str, title: str, chunk_index: int, content: str, similarity: float):
    return SearchResult(
        chunk_id=f"{document_id}:{chunk_index}",
        document_id=document_id,
        document_title=title,
        content=content,
        similarity=similarity,
        chunk_index=chunk_index,
    )


def test_empty_results_format_to_empty_string():
    """No results means no context block."""
    assert format_search_context([]) == ""


def test_grouped_by_title_in_rank_then_chunk_order():
    """Documents appear in rank order; chunks inside a document in index order."""
    results = [
        _result("doc-b", "Budget", 3, "Budget chunk three.", 0.9),
        _result("doc-a", "Roadmap", 0, "Roadmap chunk zero.", 0.8),
        _result("doc-b", "Budget", 1, "Budget chunk one.", 0.7),
    ]

    context = format_search_context(results)

    assert context == (
        "**Budget**\nBudget chunk one.\nBudget chunk three."
        "\n\n---\n\n"
        "**Roadmap**\nRoadmap chunk zero."
    )


def test_output_never_exceeds_budget():
    """Lower-ranked material is dropped or truncated to fit the budget."""
    results = [
        _result("doc-a", "Long", 0, "a" * 500, 0.9),
        _result("doc-b", "Other", 0, "b" * 300, 0.8),
    ]

    context = format_search_context(results, char_budget=400)

    assert len(context) <= 400
    assert context.startswith("**Long**")
    assert context.endswith("…")
    assert "**Other**" not in context


def test_compact_style_numbers_lines():
    """Compact style is one numbered, title-tagged line per chunk."""
    results = [
        _result("doc-a", "Roadmap", 0, "First.", 0.9),
        _result("doc-b", "Budget", 2, "Second.", 0.8),
    ]

    context = format_search_context(results, style="compact")

    assert context == "1. [Roadmap] First.\n2. [Budget] Second."
