"""Text chunking policies for document indexing.

Both policies are deterministic: the same text and settings always produce the
same chunk boundaries, which is what makes fingerprint diffs meaningful.
"""

import re
from typing import Any, Protocol

from scribe.core.config import Settings

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


class Chunker(Protocol):
    """Splits text into chunk dicts with chunk_index, content, start_char, end_char."""

    def split(self, text: str) -> list[dict[str, Any]]: ...


def chunk_text(
    text: str,
    max_chars: int = 1200,
    overlap: int = 120,
    metadata: dict[str, Any] | None = None,
) -> list[dict[str, Any]]:
    """
    Split text into overlapping fixed-size chunks.

    Args:
        text: Text to chunk
        max_chars: Maximum characters per chunk
        overlap: Number of characters to overlap between chunks
        metadata: Optional metadata to include in each chunk

    Returns:
        List of chunk dicts with:
            - chunk_index: int (0-based)
            - content: str
            - start_char: int
            - end_char: int
            - metadata: dict

    Raises:
        ValueError: If max_chars <= overlap
    """
    if max_chars <= overlap:
        raise ValueError(f"max_chars ({max_chars}) must be greater than overlap ({overlap})")

    if not text:
        return []

    spans = _window_spans(text, 0, len(text), max_chars, overlap)
    return _to_chunks(text, spans, metadata)


class FixedWindowChunker:
    """Sliding window of max_chars with overlap, ignoring document structure."""

    def __init__(self, max_chars: int = 1200, overlap: int = 120):
        if max_chars <= overlap:
            raise ValueError(f"max_chars ({max_chars}) must be greater than overlap ({overlap})")
        self.max_chars = max_chars
        self.overlap = overlap

    def split(self, text: str) -> list[dict[str, Any]]:
        if not text.strip():
            return []
        return chunk_text(text, self.max_chars, self.overlap)


class ParagraphChunker:
    """One chunk per paragraph.

    Paragraphs shorter than min_chars (headings, one-liners) are merged into
    the paragraph that follows them. Paragraphs longer than max_chars are cut
    into overlapping windows. An edit to one paragraph therefore only moves
    the boundaries of that paragraph's own chunks.
    """

    def __init__(self, max_chars: int = 1000, min_chars: int = 40, overlap: int = 150):
        if max_chars <= overlap:
            raise ValueError(f"max_chars ({max_chars}) must be greater than overlap ({overlap})")
        self.max_chars = max_chars
        self.min_chars = min_chars
        self.overlap = overlap

    def split(self, text: str) -> list[dict[str, Any]]:
        if not text.strip():
            return []

        paragraphs = _paragraph_spans(text)
        merged: list[tuple[int, int]] = []
        pending_start: int | None = None

        for position, (start, end) in enumerate(paragraphs):
            if pending_start is not None:
                start = pending_start
                pending_start = None
            is_last = position == len(paragraphs) - 1
            if end - start < self.min_chars and not is_last:
                pending_start = start
                continue
            merged.append((start, end))

        spans: list[tuple[int, int]] = []
        for start, end in merged:
            if end - start <= self.max_chars:
                spans.append((start, end))
            else:
                spans.extend(_window_spans(text, start, end, self.max_chars, self.overlap))

        return _to_chunks(text, spans)


def build_chunker(settings: Settings) -> Chunker:
    """Create the chunking policy selected by CHUNK_STRATEGY."""
    if settings.CHUNK_STRATEGY == "fixed":
        return FixedWindowChunker(settings.CHUNK_MAX_CHARS, settings.CHUNK_OVERLAP)
    return ParagraphChunker(settings.CHUNK_MAX_CHARS, settings.CHUNK_MIN_CHARS, settings.CHUNK_OVERLAP)


def _paragraph_spans(text: str) -> list[tuple[int, int]]:
    """Offsets of non-blank paragraphs, trimmed of surrounding whitespace."""
    spans: list[tuple[int, int]] = []
    start = 0
    for match in _PARAGRAPH_BREAK.finditer(text):
        _append_trimmed(spans, text, start, match.start())
        start = match.end()
    _append_trimmed(spans, text, start, len(text))
    return spans


def _append_trimmed(spans: list[tuple[int, int]], text: str, start: int, end: int) -> None:
    segment = text[start:end]
    if not segment.strip():
        return
    left = len(segment) - len(segment.lstrip())
    right = len(segment.rstrip())
    spans.append((start + left, start + right))


def _window_spans(
    text: str, start: int, end: int, max_chars: int, overlap: int
) -> list[tuple[int, int]]:
    """Overlapping windows over text[start:end], cut at whitespace where possible."""
    spans: list[tuple[int, int]] = []
    position = start

    while position < end:
        cut = min(position + max_chars, end)
        if cut < end:
            # Prefer a whitespace boundary in the second half of the window
            boundary = text.rfind(" ", position + max_chars // 2, cut)
            if boundary > position:
                cut = boundary
        spans.append((position, cut))

        if cut >= end:
            break
        position = max(cut - overlap, position + 1)

    return spans


def _to_chunks(
    text: str, spans: list[tuple[int, int]], metadata: dict[str, Any] | None = None
) -> list[dict[str, Any]]:
    return [
        {
            "chunk_index": index,
            "content": text[start:end],
            "start_char": start,
            "end_char": end,
            "metadata": metadata or {},
        }
        for index, (start, end) in enumerate(spans)
    ]
