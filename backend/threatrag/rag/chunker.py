"""Recursive character chunking for reference documents.

Two strategies share one algorithm:

* **generic** — plain text, split on paragraph → line → word → character
  boundaries (default 4000 chars, 800 overlap);
* **structured** — markdown, split on header boundaries first, then code
  fences and horizontal rules, then the generic separators (default 8000
  chars, 1000 overlap), so a section that fits in one chunk stays whole.

The algorithm: pick the first separator that occurs in the text, split on
it (keeping the separator at the start of the following piece), greedily
merge pieces up to ``chunk_size`` with ``chunk_overlap`` characters of
carry-over, and recurse with the remaining separators into any piece that
is still too large.  Splitting is deterministic.
"""
import logging
from typing import List, Optional, Sequence

from threatrag.config import ChunkingSettings

logger = logging.getLogger(__name__)

GENERIC_SEPARATORS = ["\n\n", "\n", " ", ""]

MARKDOWN_SEPARATORS = [
    # Headers, outermost first
    "\n# ",
    "\n## ",
    "\n### ",
    "\n#### ",
    "\n##### ",
    "\n###### ",
    # End of a code block
    "```\n\n",
    # Horizontal rules
    "\n\n***\n\n",
    "\n\n---\n\n",
    "\n\n___\n\n",
    *GENERIC_SEPARATORS,
]

MARKDOWN_EXTENSIONS = (".md", ".markdown")
MARKDOWN_CONTENT_TYPES = ("text/markdown", "text/x-markdown")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def detect_structured(name: str, content_type: Optional[str] = None) -> bool:
    """Return True when the document should use the markdown strategy.

    An explicit *content_type* wins; without one the file extension of
    *name* decides.
    """
    if content_type:
        return content_type.split(";")[0].strip().lower() in MARKDOWN_CONTENT_TYPES
    return name.lower().endswith(MARKDOWN_EXTENSIONS)


def split_text(
    text: str,
    chunk_size: int,
    chunk_overlap: int,
    separators: Sequence[str] = GENERIC_SEPARATORS,
) -> List[str]:
    """Split *text* into overlapping chunks of at most *chunk_size* characters.

    Pieces that cannot be split further (no separators left) may exceed
    *chunk_size*; with the trailing ``""`` separator that never happens.

    Returns:
        Ordered, whitespace-stripped, non-empty chunks.  Empty or
        whitespace-only input yields an empty list.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if chunk_overlap < 0 or chunk_overlap >= chunk_size:
        raise ValueError("chunk_overlap must be >= 0 and smaller than chunk_size")
    if not text.strip():
        return []
    return _split_recursive(text, list(separators), chunk_size, chunk_overlap)


class ChunkingEngine:
    """Chooses a chunking strategy and splits document content.

    Args:
        settings: Chunk sizes/overlaps for both strategies.
    """

    def __init__(self, settings: Optional[ChunkingSettings] = None) -> None:
        self._settings = settings or ChunkingSettings()

    def split(self, content: str, is_structured: bool) -> List[str]:
        s = self._settings
        if is_structured:
            chunks = split_text(
                content, s.structured_chunk_size, s.structured_chunk_overlap, MARKDOWN_SEPARATORS
            )
        else:
            chunks = split_text(
                content, s.generic_chunk_size, s.generic_chunk_overlap, GENERIC_SEPARATORS
            )
        logger.debug(
            "[Chunker] %d chars -> %d chunks (strategy=%s)",
            len(content), len(chunks), "markdown" if is_structured else "generic",
        )
        return chunks


# ---------------------------------------------------------------------------
# Recursive splitting
# ---------------------------------------------------------------------------

def _split_keeping_separator(text: str, separator: str) -> List[str]:
    if separator == "":
        return list(text)
    parts = text.split(separator)
    pieces = [parts[0]] + [separator + part for part in parts[1:]]
    return [p for p in pieces if p]


def _split_recursive(
    text: str,
    separators: List[str],
    chunk_size: int,
    chunk_overlap: int,
) -> List[str]:
    # First separator present in the text; "" always matches
    separator = separators[-1]
    remaining: List[str] = []
    for i, candidate in enumerate(separators):
        if candidate == "":
            separator = candidate
            break
        if candidate in text:
            separator = candidate
            remaining = separators[i + 1:]
            break

    chunks: List[str] = []
    small: List[str] = []
    for piece in _split_keeping_separator(text, separator):
        if len(piece) < chunk_size:
            small.append(piece)
            continue
        if small:
            chunks.extend(_merge(small, chunk_size, chunk_overlap))
            small = []
        if remaining:
            chunks.extend(_split_recursive(piece, remaining, chunk_size, chunk_overlap))
        else:
            stripped = piece.strip()
            if stripped:
                chunks.append(stripped)
    if small:
        chunks.extend(_merge(small, chunk_size, chunk_overlap))
    return chunks


def _merge(pieces: List[str], chunk_size: int, chunk_overlap: int) -> List[str]:
    """Greedily join *pieces* into chunks, carrying over up to *chunk_overlap* chars."""
    merged: List[str] = []
    window: List[str] = []
    total = 0

    for piece in pieces:
        length = len(piece)
        if total + length > chunk_size and window:
            joined = "".join(window).strip()
            if joined:
                merged.append(joined)
            # Drop pieces from the front until the carry-over fits
            while total > chunk_overlap or (total + length > chunk_size and total > 0):
                total -= len(window[0])
                window = window[1:]
        window.append(piece)
        total += length

    joined = "".join(window).strip()
    if joined:
        merged.append(joined)
    return merged
