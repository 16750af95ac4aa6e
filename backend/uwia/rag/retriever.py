"""
Keyword Retriever — boolean match, then BM25 ranking

  1. ChunkStorageService.find_chunks_by_keywords()
       every keyword must appear in the chunk (case-insensitive)
  2. ChunkBM25Index over the matching chunks only
       ranks by match density; ties keep chunk_index order
  3. top_k cut

BM25 is built over the candidate set rather than the whole session, so no
separate search index has to be maintained per session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from rank_bm25 import BM25Okapi

from uwia.models.sessions import Chunk
from uwia.rag.keywords import tokenize
from uwia.services.chunk_storage import ChunkStorageService

logger = logging.getLogger(__name__)


@dataclass
class RankedChunk:
    """One retrieved chunk with its BM25 score."""
    chunk:      Chunk
    bm25_score: float
    rank:       int        # 1-based

    @property
    def chunk_id(self) -> str:
        return self.chunk.id


class ChunkBM25Index:
    """
    In-memory BM25 index over a list of chunks.

    Stateless after construction and safe to use concurrently.
    """

    __slots__ = ("_corpus", "_bm25")

    def __init__(self, corpus: list[Chunk], bm25: BM25Okapi) -> None:
        self._corpus = corpus
        self._bm25   = bm25

    @classmethod
    def build(cls, corpus: list[Chunk]) -> "ChunkBM25Index":
        if not corpus:
            raise ValueError("ChunkBM25Index.build() requires a non-empty corpus")
        return cls(corpus, BM25Okapi([tokenize(c.content) for c in corpus]))

    def search(self, query_terms: list[str], top_k: int) -> list[RankedChunk]:
        tokens = [t for term in query_terms for t in tokenize(term)]
        scores = self._bm25.get_scores(tokens)

        ordered = sorted(
            range(len(self._corpus)),
            key=lambda i: (-scores[i], self._corpus[i].chunk_index),
        )[: max(top_k, 0)]

        return [
            RankedChunk(chunk=self._corpus[i], bm25_score=float(scores[i]), rank=rank)
            for rank, i in enumerate(ordered, start=1)
        ]

    def __len__(self) -> int:
        return len(self._corpus)


class KeywordRetriever:

    def __init__(self, store: ChunkStorageService) -> None:
        self._store = store

    async def retrieve(self, session_id: str, keywords: list[str], top_k: int) -> list[RankedChunk]:
        candidates = await self._store.find_chunks_by_keywords(session_id, keywords)
        if not candidates:
            return []

        ranked = ChunkBM25Index.build(candidates).search(keywords, top_k)
        logger.info(
            "Retrieval | session=%s candidates=%d returned=%d top=%s",
            session_id, len(candidates), len(ranked),
            [(r.chunk_id, round(r.bm25_score, 3)) for r in ranked],
        )
        return ranked
