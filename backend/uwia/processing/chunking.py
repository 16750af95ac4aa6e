"""
Page Chunker  —  Order-Preserving Page Packing
═══════════════════════════════════════════════

Turns an ordered sequence of (page_number, page_text) pairs into content
chunks no larger than a target size, each tagged with the page range it
covers.

Algorithm: greedy bin-packing by arrival
────────────────────────────────────────
  buffer ← ""
  for each page:
      if buffer and len(buffer) + len(page) > chunk_size:
          seal(buffer)                    ← pages [first .. last]
          buffer ← ""
      buffer += page
  seal(buffer)

  Pages are concatenated exactly (no separator is inserted), so joining all
  chunk contents in chunk_index order reproduces the joined page texts.
  A single page larger than chunk_size becomes its own oversize chunk; page
  text is never cut mid-page except by the massive-page pre-split below.

Massive-page pre-split
──────────────────────
  Scanned PDFs run through OCR sometimes collapse into ONE "page" holding the
  entire document (millions of characters). When extraction yields exactly
  one page longer than MASSIVE_PAGE_CHARS, that blob is cut into fixed
  MASSIVE_SPLIT_CHARS pieces — all tagged with the same page number — before
  packing, so storage receives reasonably sized units.

Zero pages
──────────
  fallback_chunk() wraps a whole-document text as the single synthetic
  chunk (index 0, pages 1–1) so a session never stalls on empty extraction.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants (overridable per PageChunker instance)
# ---------------------------------------------------------------------------

MASSIVE_PAGE_CHARS  = 1_000_000
MASSIVE_SPLIT_CHARS = 8192


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ChunkResult:
    """
    A single chunk ready for persistence.

    Fields map directly to the uwia.pdf_chunks columns.
    """
    chunk_id:     str          # deterministic: "<session_id>-<chunk_index>"
    chunk_index:  int          # 0-based ordering within the session
    content:      str
    content_hash: str          # sha256 hex of content
    byte_size:    int          # UTF-8 encoded length
    page_start:   int | None
    page_end:     int | None

    @property
    def char_count(self) -> int:
        return len(self.content)


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------

class PageChunker:
    """
    Stateless chunker; safe to share across sessions.

    Usage:
        chunker = PageChunker()
        chunks = chunker.build_chunks(pages, chunk_size=2 * 1024 * 1024, session_id=sid)
    """

    def __init__(
        self,
        massive_page_chars:  int = MASSIVE_PAGE_CHARS,
        massive_split_chars: int = MASSIVE_SPLIT_CHARS,
    ) -> None:
        if massive_split_chars <= 0:
            raise ValueError("massive_split_chars must be positive")
        self._massive_page_chars  = massive_page_chars
        self._massive_split_chars = massive_split_chars

    @classmethod
    def from_settings(cls, settings=None) -> "PageChunker":
        if settings is None:
            from uwia.core.config import settings
        return cls(settings.massive_page_chars, settings.massive_split_chars)

    def build_chunks(
        self,
        pages:      list[tuple[int, str]],
        chunk_size: int,
        session_id: str,
    ) -> list[ChunkResult]:
        """
        Pack pages into chunks of at most chunk_size characters.

        chunk_size <= 0 means "no chunking": every page lands in one chunk.
        Returns [] for an empty page list — callers use fallback_chunk().
        """
        if not pages:
            return []

        units = self.split_massive_pages(pages)
        limit = chunk_size if chunk_size > 0 else None

        chunks: list[ChunkResult] = []
        buffer: list[str] = []
        buffer_len = 0
        first_page: int | None = None
        last_page:  int | None = None

        for page_num, text in units:
            if buffer and limit is not None and buffer_len + len(text) > limit:
                chunks.append(self._seal(session_id, len(chunks), buffer, first_page, last_page))
                buffer, buffer_len, first_page = [], 0, None

            if first_page is None:
                first_page = page_num
            last_page = page_num
            buffer.append(text)
            buffer_len += len(text)

        if buffer:
            chunks.append(self._seal(session_id, len(chunks), buffer, first_page, last_page))

        logger.info(
            "Chunking | session=%s pages=%d units=%d chunks=%d chunk_size=%d",
            session_id, len(pages), len(units), len(chunks), chunk_size,
        )
        return chunks

    def split_massive_pages(self, pages: list[tuple[int, str]]) -> list[tuple[int, str]]:
        """Pre-split a lone oversized page into fixed-size pieces."""
        if len(pages) != 1:
            return list(pages)

        page_num, text = pages[0]
        if len(text) <= self._massive_page_chars:
            return list(pages)

        step = self._massive_split_chars
        pieces = [(page_num, text[i:i + step]) for i in range(0, len(text), step)]
        logger.warning(
            "Massive page detected | page=%d chars=%d pieces=%d",
            page_num, len(text), len(pieces),
        )
        return pieces

    @staticmethod
    def fallback_chunk(session_id: str, text: str) -> ChunkResult:
        """Single synthetic chunk used when no page text could be extracted."""
        return _make_chunk(session_id, 0, text, 1, 1)

    @staticmethod
    def _seal(
        session_id: str,
        index:      int,
        buffer:     list[str],
        first_page: int | None,
        last_page:  int | None,
    ) -> ChunkResult:
        return _make_chunk(session_id, index, "".join(buffer), first_page, last_page)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_chunk_id(session_id: str, chunk_index: int) -> str:
    """
    Deterministic chunk ID. Storing the same (session, index) twice yields the
    same primary key, so a retried batch cannot create duplicates.
    """
    return f"{session_id}-{chunk_index}"


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _make_chunk(
    session_id: str,
    index:      int,
    content:    str,
    page_start: int | None,
    page_end:   int | None,
) -> ChunkResult:
    encoded = content.encode("utf-8")
    return ChunkResult(
        chunk_id=make_chunk_id(session_id, index),
        chunk_index=index,
        content=content,
        content_hash=content_hash(content),
        byte_size=len(encoded),
        page_start=page_start,
        page_end=page_end,
    )
