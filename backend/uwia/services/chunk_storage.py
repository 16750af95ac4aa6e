"""
Chunk Storage Service

Persistence for processing sessions and their chunks.

Concurrency contract:
  - Every status / counter change is ONE update() statement; nothing is
    computed from an in-memory copy that may be stale after an await.
  - processed_chunks is bumped with
        UPDATE … SET processed_chunks = processed_chunks + :n
    so concurrent readers only ever see whole-batch completion.
  - total_chunks is set once: the UPDATE only matches while it is still 0.
  - A worker claims a session by writing worker_id + lease_expires_at in one
    conditional UPDATE. Counter bumps from a worker whose lease was taken
    over match zero rows, so a redelivered or re-queued run can never push
    processed_chunks past the chunks that are actually stored.
  - Chunk inserts use ON CONFLICT DO NOTHING on the deterministic id, so a
    retried batch never duplicates rows.

Each method runs in its own short transaction (get_worker_db by default) so
progress written by a worker is visible to the status endpoint immediately.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import AsyncContextManager, Callable

from sqlalchemy import and_, delete, literal, or_, select, update
from sqlalchemy.dialects.postgresql import JSONB, insert
from sqlalchemy.ext.asyncio import AsyncSession

from uwia.models.sessions import Chunk, ProcessingSession
from uwia.processing.chunking import ChunkResult
from uwia.schemas.sessions import SessionStatus

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class ChunkStorageService:
    """
    Stateless service; safe to share across requests and workers.
    session_factory is injectable for testing.
    """

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        ttl_seconds:     int | None = None,
        lease_seconds:   int | None = None,
    ) -> None:
        if session_factory is None:
            from uwia.db.session import get_worker_db
            session_factory = get_worker_db
        if ttl_seconds is None:
            from uwia.core.config import settings
            ttl_seconds = settings.chunk_session_ttl_seconds
        if lease_seconds is None:
            from uwia.core.config import settings
            lease_seconds = settings.worker_lease_seconds
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)
        self._lease = timedelta(seconds=lease_seconds)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def create_session(
        self,
        session_id: str,
        file_name:  str,
        file_size:  int,
        metadata:   dict | None = None,
    ) -> ProcessingSession:
        now = datetime.now(timezone.utc)
        record = ProcessingSession(
            id=session_id,
            file_name=file_name,
            file_size=file_size,
            total_chunks=0,
            processed_chunks=0,
            status=SessionStatus.PROCESSING.value,
            session_metadata=metadata or {},
            created_at=now,
            updated_at=now,
            expires_at=now + self._ttl,
        )
        async with self._session_factory() as db:
            db.add(record)
            await db.flush()

        logger.info(
            "Session created | session=%s file=%s size=%d expires_at=%s",
            session_id, file_name, file_size, record.expires_at.isoformat(),
        )
        return record

    async def get_session(self, session_id: str) -> ProcessingSession | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ProcessingSession).where(ProcessingSession.id == session_id)
            )
            return result.scalars().first()

    async def set_total_chunks(self, session_id: str, total: int) -> bool:
        """Set the chunk plan size; a no-op once it has been set."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(ProcessingSession)
                .where(
                    ProcessingSession.id == session_id,
                    ProcessingSession.total_chunks == 0,
                )
                .values(total_chunks=total)
                .returning(ProcessingSession.id)
            )
            applied = result.scalar_one_or_none() is not None

        if applied:
            logger.info("Chunk plan | session=%s total_chunks=%d", session_id, total)
        else:
            logger.warning("Chunk plan already set | session=%s requested=%d", session_id, total)
        return applied

    async def increment_processed(
        self,
        session_id: str,
        count:      int,
        worker_id:  str | None = None,
    ) -> int | None:
        """
        Atomically add count to processed_chunks; returns the new value.

        With a worker_id the bump only applies while that worker holds the
        lease, and it extends the lease. None means nothing was updated.
        """
        conditions = [
            ProcessingSession.id == session_id,
            ProcessingSession.processed_chunks + count <= ProcessingSession.total_chunks,
        ]
        values: dict = {"processed_chunks": ProcessingSession.processed_chunks + count}
        if worker_id is not None:
            conditions.append(ProcessingSession.worker_id == worker_id)
            values["lease_expires_at"] = datetime.now(timezone.utc) + self._lease

        async with self._session_factory() as db:
            result = await db.execute(
                update(ProcessingSession)
                .where(*conditions)
                .values(**values)
                .returning(ProcessingSession.processed_chunks)
            )
            return result.scalar_one_or_none()

    async def mark_ready(self, session_id: str, worker_id: str | None = None) -> None:
        await self._set_status(
            session_id, SessionStatus.READY, expected=SessionStatus.PROCESSING, worker_id=worker_id,
        )
        logger.info("Session ready | session=%s", session_id)

    async def mark_error(self, session_id: str, message: str, worker_id: str | None = None) -> None:
        await self._set_status(
            session_id,
            SessionStatus.ERROR,
            expected=SessionStatus.PROCESSING,
            error_message=message[:2000],
            worker_id=worker_id,
        )
        logger.error("Session error | session=%s error=%s", session_id, message)

    # ------------------------------------------------------------------
    # Worker lease
    # ------------------------------------------------------------------

    async def claim_session(self, session_id: str, worker_id: str) -> tuple[int, int] | None:
        """
        Take the processing lease for worker_id.

        Succeeds when the session is still processing and its lease is free,
        lapsed, or already held by worker_id. Returns the persisted
        (processed_chunks, total_chunks) so the caller can resume; None when
        another worker owns the session.
        """
        now = datetime.now(timezone.utc)
        async with self._session_factory() as db:
            result = await db.execute(
                update(ProcessingSession)
                .where(
                    ProcessingSession.id == session_id,
                    ProcessingSession.status == SessionStatus.PROCESSING.value,
                    or_(
                        ProcessingSession.lease_expires_at.is_(None),
                        ProcessingSession.lease_expires_at < now,
                        ProcessingSession.worker_id == worker_id,
                    ),
                )
                .values(worker_id=worker_id, lease_expires_at=now + self._lease)
                .returning(ProcessingSession.processed_chunks, ProcessingSession.total_chunks)
            )
            row = result.first()

        if row is None:
            logger.warning("Session claim refused | session=%s worker=%s", session_id, worker_id)
            return None
        logger.info(
            "Session claimed | session=%s worker=%s processed=%d total=%d",
            session_id, worker_id, row[0], row[1],
        )
        return row[0], row[1]

    async def renew_lease(self, session_id: str, worker_id: str) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(ProcessingSession)
                .where(
                    ProcessingSession.id == session_id,
                    ProcessingSession.worker_id == worker_id,
                    ProcessingSession.status == SessionStatus.PROCESSING.value,
                )
                .values(lease_expires_at=datetime.now(timezone.utc) + self._lease)
                .returning(ProcessingSession.id)
            )
            return result.scalar_one_or_none() is not None

    async def merge_metadata(self, session_id: str, values: dict) -> None:
        """Shallow-merge values into the session's JSONB metadata."""
        async with self._session_factory() as db:
            await db.execute(
                update(ProcessingSession)
                .where(ProcessingSession.id == session_id)
                .values(
                    session_metadata=ProcessingSession.session_metadata.op("||")(
                        literal(values, type_=JSONB)
                    )
                )
            )

    async def delete_session(self, session_id: str) -> bool:
        """Delete the session; chunks follow via ON DELETE CASCADE."""
        async with self._session_factory() as db:
            result = await db.execute(
                delete(ProcessingSession)
                .where(ProcessingSession.id == session_id)
                .returning(ProcessingSession.id)
            )
            deleted = result.scalar_one_or_none() is not None

        if deleted:
            logger.info("Session deleted | session=%s", session_id)
        return deleted

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def store_chunk(self, session_id: str, chunk: ChunkResult) -> None:
        await self.store_chunks(session_id, [chunk])

    async def store_chunks(self, session_id: str, chunks: list[ChunkResult]) -> None:
        if not chunks:
            return
        stmt = (
            insert(Chunk)
            .values([
                {
                    "id":           c.chunk_id,
                    "session_id":   session_id,
                    "chunk_index":  c.chunk_index,
                    "content":      c.content,
                    "content_hash": c.content_hash,
                    "byte_size":    c.byte_size,
                    "page_start":   c.page_start,
                    "page_end":     c.page_end,
                }
                for c in chunks
            ])
            .on_conflict_do_nothing(index_elements=[Chunk.id])
        )
        async with self._session_factory() as db:
            await db.execute(stmt)

        logger.debug(
            "Chunks stored | session=%s indexes=%s",
            session_id, [c.chunk_index for c in chunks],
        )

    async def get_chunks(self, session_id: str) -> list[Chunk]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Chunk)
                .where(Chunk.session_id == session_id)
                .order_by(Chunk.chunk_index)
            )
            return list(result.scalars().all())

    async def find_chunks_by_keywords(self, session_id: str, keywords: list[str]) -> list[Chunk]:
        """Chunks containing ALL keywords (case-insensitive), in chunk order."""
        terms = [k for k in (kw.strip() for kw in keywords) if k]
        if not terms:
            return []

        conditions = [
            Chunk.content.ilike(f"%{_escape_like(term)}%", escape="\\")
            for term in terms
        ]
        async with self._session_factory() as db:
            result = await db.execute(
                select(Chunk)
                .where(Chunk.session_id == session_id, and_(*conditions))
                .order_by(Chunk.chunk_index)
            )
            chunks = list(result.scalars().all())

        logger.info(
            "Keyword match | session=%s keywords=%s matches=%d",
            session_id, terms, len(chunks),
        )
        return chunks

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def cleanup_expired_sessions(self, now: datetime | None = None) -> list[str]:
        """
        Mark sessions past expires_at as expired, then delete them.
        Returns the deleted session ids.
        """
        now = now or datetime.now(timezone.utc)
        async with self._session_factory() as db:
            await db.execute(
                update(ProcessingSession)
                .where(
                    ProcessingSession.expires_at < now,
                    ProcessingSession.status != SessionStatus.EXPIRED.value,
                )
                .values(status=SessionStatus.EXPIRED.value)
            )
            result = await db.execute(
                delete(ProcessingSession)
                .where(ProcessingSession.status == SessionStatus.EXPIRED.value)
                .returning(ProcessingSession.id)
            )
            deleted = list(result.scalars().all())

        logger.info("Expired sessions swept | count=%d", len(deleted))
        return deleted

    async def find_stale_sessions(self, older_than_minutes: int, limit: int = 50) -> list[str]:
        """
        Sessions still processing after the grace period that no live worker
        holds: never claimed (publish lost) or the lease has lapsed.
        """
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=older_than_minutes)
        async with self._session_factory() as db:
            result = await db.execute(
                select(ProcessingSession.id)
                .where(
                    ProcessingSession.status == SessionStatus.PROCESSING.value,
                    ProcessingSession.created_at < cutoff,
                    or_(
                        ProcessingSession.lease_expires_at.is_(None),
                        ProcessingSession.lease_expires_at < now,
                    ),
                )
                .order_by(ProcessingSession.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _set_status(
        self,
        session_id:    str,
        status:        SessionStatus,
        expected:      SessionStatus,
        error_message: str | None = None,
        worker_id:     str | None = None,
    ) -> None:
        values: dict = {"status": status.value}
        if error_message is not None:
            values["error_message"] = error_message
        conditions = [
            ProcessingSession.id == session_id,
            ProcessingSession.status == expected.value,
        ]
        if worker_id is not None:
            conditions.append(ProcessingSession.worker_id == worker_id)
            values["lease_expires_at"] = None
        async with self._session_factory() as db:
            await db.execute(
                update(ProcessingSession)
                .where(*conditions)
                .values(**values)
            )
