"""
Query Pipeline — keyword retrieval + answer synthesis over a ready session

  Question
    │
    ▼
  Session gate            ← SessionNotFound / SessionNotReady
    │
    ▼
  KeywordExtractor        ← LLM keywords, tokenizer fallback
    │
    ▼
  KeywordRetriever        ← all-terms match → BM25 rank → top max_results
    │                        (no match → deterministic not-found answer)
    ▼
  ContextBuilder          ← chunks joined; over budget → keyword-dense windows
    │
    ▼
  Evaluator.evaluate_text ← answer + confidence (failure → fixed message, 0.0)

Retrieval is keyword overlap, not vector similarity; the synthesis step is
responsible for ignoring irrelevant context.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from uwia.core.exceptions import SessionNotFound, SessionNotReady
from uwia.llm.evaluator import EvaluationSuccess, Evaluator
from uwia.rag.context import ContextBuilder
from uwia.rag.keywords import KeywordExtractor
from uwia.rag.retriever import KeywordRetriever
from uwia.schemas.sessions import SessionStatus
from uwia.services.chunk_storage import ChunkStorageService

logger = logging.getLogger(__name__)

NOT_FOUND_ANSWER = "I could not find relevant information in the document to answer the question."
SYNTHESIS_FAILED_ANSWER = "I could not synthesize an answer from the document. Please try again later."


@dataclass
class QueryResult:
    answer:             str
    confidence:         float
    source_chunk_ids:   list[str] = field(default_factory=list)
    processing_time_ms: int = 0


class RagQueryService:
    """
    One instance per request or shared; holds no per-query state.
    """

    def __init__(
        self,
        store:     ChunkStorageService,
        evaluator: Evaluator | None = None,
        keywords:  KeywordExtractor | None = None,
        retriever: KeywordRetriever | None = None,
        context:   ContextBuilder | None = None,
    ) -> None:
        self._store     = store
        self._evaluator = evaluator or Evaluator()
        self._keywords  = keywords or KeywordExtractor()
        self._retriever = retriever or KeywordRetriever(store)
        self._context   = context or ContextBuilder.from_settings()

    async def query(self, session_id: str, question: str, max_results: int = 3) -> QueryResult:
        t0 = time.monotonic()

        session = await self._store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if session.status != SessionStatus.READY.value:
            raise SessionNotReady(session_id, session.status)

        keywords = await self._keywords.extract(question)
        ranked   = await self._retriever.retrieve(session_id, keywords, max_results)

        if not ranked:
            logger.info("Query no match | session=%s keywords=%s", session_id, keywords)
            return QueryResult(
                answer=NOT_FOUND_ANSWER,
                confidence=0.0,
                source_chunk_ids=[],
                processing_time_ms=_elapsed_ms(t0),
            )

        context = self._context.build([r.chunk.content for r in ranked], keywords)
        result  = await self._evaluator.evaluate_text(context, question)
        sources = [r.chunk_id for r in ranked]

        if isinstance(result, EvaluationSuccess):
            answer, confidence = result.answer, result.confidence
        else:
            logger.warning("Synthesis failed | session=%s reason=%s", session_id, result.reason)
            answer, confidence = SYNTHESIS_FAILED_ANSWER, 0.0

        elapsed = _elapsed_ms(t0)
        logger.info(
            "Query complete | session=%s sources=%d confidence=%.2f elapsed_ms=%d",
            session_id, len(sources), confidence, elapsed,
        )
        return QueryResult(
            answer=answer,
            confidence=confidence,
            source_chunk_ids=sources,
            processing_time_ms=elapsed,
        )


def _elapsed_ms(t0: float) -> int:
    return int((time.monotonic() - t0) * 1000)
