"""Format search results into citation-ready context blocks.

Two styles:
  - grouped: chunks grouped per document under a bold title header, in rank order
    of each document's best chunk and chunk order within a document.
  - compact: one numbered line per chunk, tagged with its document title.

Documents are always referenced by title, never by internal id. Output never
exceeds the character budget; the lowest-ranked material is dropped first.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from scribe.core.schemas_retrieval import SearchResult

GROUP_SEPARATOR = "\n\n---\n\n"
MIN_TRUNCATED_CHARS = 80


def format_search_context(
    results: list[SearchResult],
    char_budget: int = 4000,
    style: str = "grouped",
) -> str:
    """Format ranked results for injection into a prompt.

    Args:
        results: Ranked search results (best first)
        char_budget: Maximum characters of the returned block
        style: "grouped" | "compact"

    Returns:
        Formatted context, or "" when there are no results
    """
    if not results or char_budget <= 0:
        return ""

    if style == "compact":
        return _format_compact(results, char_budget)
    return _format_grouped(results, char_budget)


def _format_grouped(results: list[SearchResult], char_budget: int) -> str:
    groups: dict[str, list[SearchResult]] = {}
    for result in results:
        groups.setdefault(result.document_id, []).append(result)

    output = ""
    exhausted = False
    for document_results in groups.values():
        title = document_results[0].document_title or "Untitled"
        header = f"**{title}**"
        prefix = GROUP_SEPARATOR if output else ""

        block = ""
        for result in sorted(document_results, key=lambda r: r.chunk_index):
            piece = ("\n" if block else "") + result.content.strip()
            candidate = output + prefix + header + "\n" + block + piece
            if len(candidate) <= char_budget:
                block += piece
                continue

            room = char_budget - len(output + prefix + header + "\n" + block) - 1
            if room >= MIN_TRUNCATED_CHARS:
                block += piece[:room].rstrip() + "…"
            exhausted = True
            break

        if block:
            output += prefix + header + "\n" + block
        if exhausted or not block:
            break

    return output[:char_budget]


def _format_compact(results: list[SearchResult], char_budget: int) -> str:
    lines: list[str] = []
    chars_used = 0
    for i, result in enumerate(results):
        line = f"{i + 1}. [{result.document_title}] {result.content.strip()}"
        extra = len(line) + (1 if lines else 0)
        if chars_used + extra > char_budget:
            break
        lines.append(line)
        chars_used += extra
    return "\n".join(lines)
