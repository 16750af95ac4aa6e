"""
Evaluation Store

Persists every consolidated-prompt result (answer or failure) to
uwia.claim_evaluations in one multi-row INSERT per evaluation request.
"""

from __future__ import annotations

import logging

from sqlalchemy import insert

from uwia.models.evaluations import ClaimEvaluation
from uwia.schemas.sessions import FieldAnswer
from uwia.services.chunk_storage import SessionFactory

logger = logging.getLogger(__name__)


class EvaluationStore:

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        if session_factory is None:
            from uwia.db.session import get_worker_db
            session_factory = get_worker_db
        self._session_factory = session_factory

    async def record(
        self,
        session_id:      str,
        document_name:   str,
        results:         list[FieldAnswer],
        claim_reference: str | None = None,
    ) -> int:
        """Insert one row per result; returns the number of rows written."""
        if not results:
            return 0

        rows = [
            {
                "session_id":         session_id,
                "claim_reference":    claim_reference,
                "document_name":      document_name,
                "pmc_field":          r.pmc_field,
                "question":           r.question,
                "answer":             r.answer,
                "confidence":         r.confidence,
                "expected_type":      r.expected_type,
                "used_vision":        r.used_vision,
                "processing_time_ms": r.processing_time_ms,
                "error_message":      r.error,
            }
            for r in results
        ]
        async with self._session_factory() as db:
            await db.execute(insert(ClaimEvaluation).values(rows))

        failed = sum(1 for r in results if r.error)
        logger.info(
            "Evaluations recorded | session=%s document=%s rows=%d failed=%d",
            session_id, document_name, len(rows), failed,
        )
        return len(rows)
