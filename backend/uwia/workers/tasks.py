"""
Celery Tasks — Large-PDF Session Pipeline

Task: process_session_chunks(session_id)
  1. Re-read the staged upload for the session
  2. Extract per-page text, plan chunks (size-adaptive)
  3. Store chunks in batches of max_parallelism, bumping processed_chunks
  4. Session → ready (or error with error_message)

Task: cleanup_expired_sessions
  Beat task — expires and deletes sessions past expires_at, discards their
  staged files.

Task: requeue_stale_sessions
  Beat task — re-queues sessions stuck in 'processing' with no chunks, e.g.
  when the broker was unavailable during the upload request.

A ChunkBatchFailure is terminal for the session (no resume), so it is
returned as a result rather than retried.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from uwia.core.exceptions import ChunkBatchFailure, SessionNotFound
from uwia.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


def build_processor():
    """Worker-side wiring: each store call opens its own worker DB session."""
    from uwia.services.chunk_storage import ChunkStorageService
    from uwia.services.large_pdf import LargePdfProcessor, TaskPublisher
    from uwia.storage.staging import get_upload_staging

    return LargePdfProcessor(
        store=ChunkStorageService(),
        staging=get_upload_staging(),
        publisher=TaskPublisher(),
    )


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="uwia.workers.tasks.process_session_chunks",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_session_chunks(self, *, session_id: str) -> dict[str, Any]:
    return run_async(_process_session_chunks_async(session_id))


async def _process_session_chunks_async(session_id: str, processor=None) -> dict[str, Any]:
    processor = processor or build_processor()
    logger.info("Processing | session=%s", session_id)

    try:
        stored = await processor.run_chunk_batches(session_id)
    except SessionNotFound:
        logger.error("Session not found | session=%s", session_id)
        return {"status": "not_found", "session_id": session_id}
    except ChunkBatchFailure as exc:
        return {"status": "error", "session_id": session_id, "reason": exc.reason}

    return {"status": "ready", "session_id": session_id, "chunks": stored}


# ---------------------------------------------------------------------------
# Maintenance: Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="uwia.workers.tasks.cleanup_expired_sessions",
    acks_late=True,
    soft_time_limit=300,
    time_limit=330,
)
def cleanup_expired_sessions() -> dict[str, int]:
    return run_async(_cleanup_expired_async())


async def _cleanup_expired_async(processor=None) -> dict[str, int]:
    processor = processor or build_processor()
    deleted = await processor.cleanup_expired()
    logger.info("Expired sessions removed | count=%d", deleted)
    return {"deleted": deleted}


@celery_app.task(
    name="uwia.workers.tasks.requeue_stale_sessions",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def requeue_stale_sessions() -> dict[str, int]:
    """Find sessions stuck in 'processing' with zero chunks and re-queue them."""
    return run_async(_requeue_stale_async())


async def _requeue_stale_async(processor=None, older_than_minutes: int | None = None) -> dict[str, int]:
    if older_than_minutes is None:
        from uwia.core.config import settings
        older_than_minutes = settings.stale_session_minutes

    processor = processor or build_processor()
    requeued = await processor.requeue_stale(older_than_minutes)
    return {"requeued": len(requeued)}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="uwia.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
