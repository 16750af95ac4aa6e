"""
Large-PDF Session Service

Orchestrates the upload → chunks → ready lifecycle:

  process_large_pdf()                     (API process)
    1. Select processing config from the byte size
    2. Stage the bytes under the new session id
    3. Create the session row (status=processing, total_chunks=0)
    4a. No chunking needed → extract now, store one chunk, mark ready
    4b. Otherwise → publish process_session_chunks(session_id) and return

  run_chunk_batches()                     (Celery worker)
    1. Claim the session lease (held by a live run → exit, store nothing)
    2. Load staged bytes, extract per-page text
    3. Plan chunks (zero pages → one synthetic chunk from the cascade)
    4. Set total_chunks once; a re-run resumes at the persisted
       processed_chunks under the same plan
    5. Per batch of max_parallelism: memory throttle → gather(store) →
       processed_chunks += len(batch) while the lease is still ours
    6. Mark ready; on any exception mark error and raise ChunkBatchFailure

Already-stored chunks are never rolled back; a session in error must be
re-submitted. A run that lost its lease stops without touching the session.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone

from uwia.core.exceptions import (
    ChunkBatchFailure,
    ExtractionFailed,
    SessionClaimLost,
    SessionNotFound,
    SessionNotReady,
    SessionWaitTimeout,
)
from uwia.models.sessions import ProcessingSession
from uwia.processing.chunking import ChunkResult, PageChunker
from uwia.processing.config_selector import (
    SizeThresholds,
    estimate_processing_time,
    select_config,
)
from uwia.processing.extractor import ExtractionCascade
from uwia.processing.memory import MemoryGovernor
from uwia.schemas.sessions import (
    ProcessLargePdfResponse,
    SessionStatus,
    SessionStatusResponse,
)
from uwia.services.chunk_storage import ChunkStorageService
from uwia.storage.staging import UploadStaging

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Status projection helpers
# ---------------------------------------------------------------------------

def compute_progress(processed: int, total: int) -> int:
    """Percent of planned chunks stored; 0 before the plan exists."""
    if total <= 0:
        return 0
    return min(100, round(processed / total * 100))


def estimate_remaining(
    processed:  int,
    total:      int,
    created_at: datetime,
    now:        datetime | None = None,
) -> str | None:
    """Extrapolate from the average time per stored chunk so far."""
    if total <= 0 or processed <= 0 or processed >= total:
        return None
    now = now or datetime.now(timezone.utc)
    elapsed = max((now - created_at).total_seconds(), 0.0)
    remaining = elapsed / processed * (total - processed)
    if remaining < 60:
        return f"~{max(int(remaining), 1)} seconds"
    return f"~{round(remaining / 60)} minutes"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class LargePdfProcessor:
    """
    Stateless service object. All collaborators are injected so the API,
    the worker and the tests can wire their own.
    """

    def __init__(
        self,
        store:      ChunkStorageService,
        staging:    UploadStaging,
        publisher:  "TaskPublisher",
        cascade:    ExtractionCascade | None = None,
        chunker:    PageChunker | None = None,
        governor:   MemoryGovernor | None = None,
        thresholds: SizeThresholds | None = None,
    ) -> None:
        self._store      = store
        self._staging    = staging
        self._publisher  = publisher
        self._cascade    = cascade or ExtractionCascade()
        self._chunker    = chunker or PageChunker.from_settings()
        self._governor   = governor or MemoryGovernor.from_settings()
        self._thresholds = thresholds or SizeThresholds.from_settings()

    # ------------------------------------------------------------------
    # Upload entry point
    # ------------------------------------------------------------------

    async def process_large_pdf(self, file_name: str, data: bytes) -> ProcessLargePdfResponse:
        session_id = str(uuid.uuid4())
        config     = select_config(len(data), self._thresholds)
        estimate   = estimate_processing_time(config)

        staged_at = await self._staging.save(session_id, data)
        await self._store.create_session(
            session_id,
            file_name,
            len(data),
            metadata={
                "size_class":      config.size_class,
                "chunk_size":      config.chunk_size,
                "max_parallelism": config.max_parallelism,
                "swap_hint":       config.enable_swap_hint,
                "staged_at":       staged_at,
                "estimated_time":  estimate,
            },
        )

        logger.info(
            "Upload accepted | session=%s file=%s size=%d class=%s chunk_size=%d",
            session_id, file_name, len(data), config.size_class, config.chunk_size,
        )

        if not config.requires_chunking:
            await self._process_inline(session_id, data)
            return ProcessLargePdfResponse(
                session_id=session_id,
                status=SessionStatus.READY,
                total_chunks=1,
                file_name=file_name,
                file_size=len(data),
                estimated_time=estimate,
            )

        try:
            await self._publisher.publish_chunk_task(session_id)
        except Exception as exc:
            # Session stays in processing; the stale-session scanner re-queues it
            logger.error("Failed to publish chunk task | session=%s error=%s", session_id, exc)

        return ProcessLargePdfResponse(
            session_id=session_id,
            status=SessionStatus.PROCESSING,
            total_chunks=0,
            file_name=file_name,
            file_size=len(data),
            estimated_time=estimate,
        )

    async def _process_inline(self, session_id: str, data: bytes) -> None:
        """Small documents: one chunk holding the whole cascade text."""
        try:
            result = await self._cascade.extract(data)
        except ExtractionFailed as exc:
            await self._store.mark_error(session_id, exc.message)
            raise

        chunk = self._chunker.fallback_chunk(session_id, result.text)
        if result.page_count > 1:
            chunk.page_end = result.page_count

        await self._store.set_total_chunks(session_id, 1)
        await self._store.store_chunk(session_id, chunk)
        await self._store.increment_processed(session_id, 1)
        await self._store.merge_metadata(session_id, {"extraction_strategy": result.strategy_used})
        await self._store.mark_ready(session_id)

    # ------------------------------------------------------------------
    # Worker body
    # ------------------------------------------------------------------

    async def run_chunk_batches(self, session_id: str) -> int:
        """
        Plan and store every chunk; returns the number of chunks this run stored.

        The run first claims the session lease. A second delivery of the same
        task exits while the first run's lease is live; after the lease lapses
        the next run resumes from the persisted processed_chunks. Chunks are
        stored before the counter moves, so processed_chunks never runs ahead
        of the rows in pdf_chunks.
        """
        session = await self._store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if session.status != SessionStatus.PROCESSING.value:
            logger.warning(
                "Skipping chunk run | session=%s status=%s", session_id, session.status,
            )
            return 0

        worker_id = uuid.uuid4().hex
        if await self._store.claim_session(session_id, worker_id) is None:
            logger.warning("Skipping chunk run | session=%s owned by another run", session_id)
            return 0

        t0 = time.monotonic()
        stored = 0
        try:
            data   = await self._staging.load(session_id)
            config = select_config(len(data), self._thresholds)
            chunks = await self._plan_chunks(session_id, data, config.chunk_size)

            if not await self._store.renew_lease(session_id, worker_id):
                raise SessionClaimLost(session_id, worker_id)
            done = await self._resume_point(session_id, len(chunks))

            parallelism = max(config.max_parallelism, 1)
            for start in range(done, len(chunks), parallelism):
                batch = chunks[start:start + parallelism]
                await self._governor.throttle(session_id)
                await asyncio.gather(*(self._store.store_chunk(session_id, c) for c in batch))
                processed = await self._store.increment_processed(
                    session_id, len(batch), worker_id=worker_id,
                )
                if processed is None:
                    raise SessionClaimLost(session_id, worker_id)
                stored += len(batch)
                logger.info(
                    "Batch stored | session=%s batch=%d-%d processed=%s total=%d",
                    session_id, start, start + len(batch) - 1, processed, len(chunks),
                )

            await self._store.mark_ready(session_id, worker_id=worker_id)
        except SessionClaimLost as exc:
            logger.warning("Chunk run abandoned | session=%s reason=%s", session_id, exc.message)
            return stored
        except Exception as exc:
            logger.exception("Chunk processing failed | session=%s", session_id)
            reason = getattr(exc, "message", None) or str(exc) or type(exc).__name__
            await self._store.mark_error(session_id, reason, worker_id=worker_id)
            raise ChunkBatchFailure(session_id, reason) from exc

        logger.info(
            "Chunk processing complete | session=%s chunks=%d stored=%d elapsed_ms=%.0f",
            session_id, len(chunks), stored, (time.monotonic() - t0) * 1000,
        )
        return stored

    async def _resume_point(self, session_id: str, planned: int) -> int:
        """Index of the first chunk still to store under the persisted plan."""
        if await self._store.set_total_chunks(session_id, planned):
            return 0

        session = await self.require_session(session_id)
        if session.total_chunks != planned:
            raise RuntimeError(
                f"chunk plan changed between runs (stored={session.total_chunks}, planned={planned})"
            )
        logger.info(
            "Resuming chunk run | session=%s processed=%d total=%d",
            session_id, session.processed_chunks, planned,
        )
        return session.processed_chunks

    async def _plan_chunks(self, session_id: str, data: bytes, chunk_size: int) -> list[ChunkResult]:
        pages = await self._cascade.extract_pages(data)
        if pages:
            return self._chunker.build_chunks(
                [(p.page_number, p.text) for p in pages], chunk_size, session_id,
            )

        logger.warning("No page text extracted | session=%s falling back to cascade", session_id)
        text = await self._cascade.extract_text(data)
        return [self._chunker.fallback_chunk(session_id, text)]

    # ------------------------------------------------------------------
    # Status / waiting / deletion
    # ------------------------------------------------------------------

    async def require_session(self, session_id: str) -> ProcessingSession:
        session = await self._store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def get_status(self, session_id: str) -> SessionStatusResponse:
        session = await self.require_session(session_id)

        remaining = None
        if session.status == SessionStatus.PROCESSING.value:
            remaining = estimate_remaining(
                session.processed_chunks, session.total_chunks, session.created_at,
            ) or (session.session_metadata or {}).get("estimated_time")

        return SessionStatusResponse(
            session_id=session.id,
            status=SessionStatus(session.status),
            progress=compute_progress(session.processed_chunks, session.total_chunks),
            chunks_processed=session.processed_chunks,
            total_chunks=session.total_chunks,
            estimated_time_remaining=remaining,
            error_message=session.error_message,
            created_at=session.created_at,
            expires_at=session.expires_at,
        )

    async def wait_for_chunks(
        self,
        session_id: str,
        timeout:    float | None = None,
        interval:   float | None = None,
    ) -> ProcessingSession:
        """
        Poll until the session is ready with chunks present.

        Raises ChunkBatchFailure if the session errors, SessionNotReady if it
        expires, and SessionWaitTimeout once `timeout` elapses.
        """
        if timeout is None or interval is None:
            from uwia.core.config import settings
            timeout  = settings.wait_timeout_seconds if timeout is None else timeout
            interval = settings.wait_poll_interval_seconds if interval is None else interval

        deadline = time.monotonic() + timeout
        while True:
            session = await self.require_session(session_id)

            if session.status == SessionStatus.ERROR.value:
                raise ChunkBatchFailure(session_id, session.error_message or "unknown error")
            if session.status == SessionStatus.EXPIRED.value:
                raise SessionNotReady(session_id, session.status)
            if session.status == SessionStatus.READY.value and session.processed_chunks > 0:
                return session

            if time.monotonic() >= deadline:
                logger.warning("Wait timed out | session=%s timeout_s=%.0f", session_id, timeout)
                raise SessionWaitTimeout(session_id, timeout)
            await asyncio.sleep(interval)

    async def delete(self, session_id: str) -> None:
        if not await self._store.delete_session(session_id):
            raise SessionNotFound(session_id)
        await self._staging.discard(session_id)

    # ------------------------------------------------------------------
    # Maintenance (Celery beat)
    # ------------------------------------------------------------------

    async def cleanup_expired(self) -> int:
        deleted = await self._store.cleanup_expired_sessions()
        for session_id in deleted:
            await self._staging.discard(session_id)
        return len(deleted)

    async def requeue_stale(self, older_than_minutes: int) -> list[str]:
        stale = await self._store.find_stale_sessions(older_than_minutes)
        for session_id in stale:
            await self._publisher.publish_chunk_task(session_id)
            logger.info("Re-queued stale session | session=%s", session_id)
        return stale


# ---------------------------------------------------------------------------
# Task publisher: thin abstraction over Celery apply_async()
# Injected into LargePdfProcessor so it can be mocked in tests.
# ---------------------------------------------------------------------------

class TaskPublisher:
    """
    Sends the chunk-processing task to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def publish_chunk_task(self, session_id: str) -> None:
        from uwia.workers.tasks import process_session_chunks

        loop = asyncio.get_event_loop()
        await loop.run_in_executor(
            None,
            lambda: process_session_chunks.apply_async(
                kwargs={"session_id": session_id},
                countdown=1,
            ),
        )
        logger.info("Chunk task published | session=%s", session_id)
