"""
Docs RAG - Markdown Chunker
----------------------------
Documentation pages are split into fixed-size character windows with a
configurable overlap.  Each window is labelled with the level-2 heading
(`## ...`) that precedes its start, and every chunk of a page carries the
page's level-1 heading as its title.

    |<------ chunk_size ------>|
                    |<------ chunk_size ------>|
    |<---- step --->|<overlap>|

step = max(chunk_size - overlap, 1).  The last window is clipped at the end
of the page (never padded) and iteration stops once a window reaches the end,
so the union of all windows covers the page with no gap.

Headings inside fenced code blocks are ignored: Kotlin docs are full of
shell samples whose `# comment` lines would otherwise become titles.
"""
from __future__ import annotations

import re
from bisect import bisect_right
from typing import Optional

from loguru import logger

from docs_rag.chunking.schemas import ChunkMetadata, DocumentChunk, chunk_id_for
from docs_rag.errors import ConfigError

# ── Constants ─────────────────────────────────────────────────────────────────

CHUNK_SIZE = 1000         # characters per window
CHUNK_OVERLAP = 200       # characters shared by consecutive windows
DEFAULT_TITLE = "Kotlin Docs"

_TITLE_RE = re.compile(r"^#[ \t]+(\S.*)$")
_SECTION_RE = re.compile(r"^##[ \t]+(\S.*)$")
_FENCE_RE = re.compile(r"^[ \t]{0,3}(```|~~~)")


def _heading_lines(text: str, pattern: re.Pattern[str]) -> list[tuple[int, str]]:
    """(line offset, heading text) for every line matching pattern outside code fences."""
    headings: list[tuple[int, str]] = []
    offset = 0
    fence: Optional[str] = None
    for line in text.splitlines(keepends=True):
        stripped = line.rstrip("\r\n")
        fence_match = _FENCE_RE.match(stripped)
        if fence_match:
            marker = fence_match.group(1)
            if fence is None:
                fence = marker
            elif fence == marker:
                fence = None
        elif fence is None:
            m = pattern.match(stripped)
            if m:
                headings.append((offset, m.group(1).strip()))
        offset += len(line)
    return headings


def extract_title(text: str, default: str = DEFAULT_TITLE) -> str:
    """First level-1 heading of the page, or the fallback title."""
    headings = _heading_lines(text, _TITLE_RE)
    return headings[0][1] if headings else default


def extract_sections(text: str) -> list[tuple[int, str]]:
    """(start offset, label) for every level-2 heading, ascending by offset."""
    return _heading_lines(text, _SECTION_RE)


def section_for(position: int, sections: list[tuple[int, str]]) -> Optional[str]:
    """Label of the last section starting at or before position."""
    i = bisect_right([start for start, _ in sections], position)
    return sections[i - 1][1] if i else None


def split_into_chunks(
    text: str,
    chunk_size: int,
    overlap: int,
    sections: list[tuple[int, str]],
) -> list[tuple[Optional[str], str]]:
    """
    Slide a chunk_size window across text.

    Returns:
        Ordered list of (section label or None, chunk text).
    """
    if chunk_size <= 0:
        raise ConfigError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0:
        raise ConfigError(f"overlap must not be negative, got {overlap}")

    step = max(chunk_size - overlap, 1)
    chunks: list[tuple[Optional[str], str]] = []
    start = 0
    while start < len(text):
        end = min(start + chunk_size, len(text))
        chunks.append((section_for(start, sections), text[start:end]))
        if end == len(text):
            break
        start += step
    return chunks


# ── Main Chunker ──────────────────────────────────────────────────────────────

class MarkdownChunker:
    """
    Applies the configured window size to documentation pages.

    Usage:
        chunker = MarkdownChunker(chunk_size=1000, overlap=200)
        chunks = chunker.chunk_document("docs/coroutines.md", text, url)
    """

    def __init__(
        self,
        chunk_size: int = CHUNK_SIZE,
        overlap: int = CHUNK_OVERLAP,
        default_title: str = DEFAULT_TITLE,
    ) -> None:
        if chunk_size <= 0:
            raise ConfigError(f"chunk_size must be positive, got {chunk_size}")
        if overlap < 0:
            raise ConfigError(f"overlap must not be negative, got {overlap}")
        if overlap >= chunk_size:
            logger.warning(
                f"[Chunker] overlap={overlap} >= chunk_size={chunk_size}; "
                "windows will advance one character at a time"
            )
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.default_title = default_title

    def chunk_document(self, local_path: str, text: str, source_url: str) -> list[DocumentChunk]:
        """
        Chunk one page into DocumentChunks (embeddings left empty).

        Args:
            local_path: Page path relative to the docs root, e.g. "docs/flow.md".
            text:       Raw markdown of the page.
            source_url: Public URL cited for every chunk of the page.
        """
        title = extract_title(text, self.default_title)
        sections = extract_sections(text)
        windows = split_into_chunks(text, self.chunk_size, self.overlap, sections)

        chunks = [
            DocumentChunk(
                id=chunk_id_for(local_path, i),
                text=window,
                metadata=ChunkMetadata(
                    source_url=source_url,
                    local_path=local_path,
                    title=title,
                    chunk_index=i,
                    section=section,
                ),
            )
            for i, (section, window) in enumerate(windows)
        ]
        logger.debug(
            f"[Chunker] {local_path} | {len(text)} chars | "
            f"{len(sections)} sections -> {len(chunks)} chunk(s)"
        )
        return chunks
