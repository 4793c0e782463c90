"""Outbound text chunking for the backend's per-message size limit."""

from __future__ import annotations

from typing import List

DEFAULT_CHUNK_LIMIT = 4000
CONTINUATION_MARKER = " …"
_BREAK_SEPARATORS = ("\n\n", "\n", ". ")


def chunk_text(text: str, limit: int = DEFAULT_CHUNK_LIMIT) -> List[str]:
    """Split `text` greedily into pieces of at most `limit` characters.

    Each cut prefers, in order, a paragraph break, a line break, then a
    sentence end, searching backward from the limit. A candidate only counts
    when it lies in the second half of the window; otherwise the text is cut
    hard at the limit. Whitespace left at the edges of the remainder is
    dropped.
    """

    limit = max(1, int(limit))
    if len(text) <= limit:
        return [text]

    chunks: List[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= limit:
            chunks.append(remaining)
            break
        cut = _find_break(remaining, limit)
        chunks.append(remaining[:cut])
        remaining = remaining[cut:].strip()
    return chunks


def _find_break(text: str, limit: int) -> int:
    floor = limit * 0.5
    for separator in _BREAK_SEPARATORS:
        # The separator's first character closes the chunk, so it must fit.
        index = text.rfind(separator, 0, limit - 1 + len(separator))
        if index >= floor:
            return index + 1
    return limit
