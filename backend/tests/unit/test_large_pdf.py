"""
Unit Tests — LargePdfProcessor
══════════════════════════════
Pipeline tests run over the in-memory FakeChunkStore and a real on-disk
staging directory; the extraction cascade is always a double.

  ✅ Small upload → extracted inline, one chunk, ready immediately
  ✅ Large upload → session processing, chunk task published
  ✅ Publish failure leaves the session processing
  ✅ run_chunk_batches(): batches of max_parallelism, processed == total, ready
  ✅ run_chunk_batches(): zero page text → one fallback chunk
  ✅ run_chunk_batches(): failure → error status + ChunkBatchFailure
  ✅ Worker lease: duplicate delivery never lets processed pass the stored rows
  ✅ Worker lease: expired lease resumes at processed_chunks, lost lease abandons
  ✅ Status snapshots: processed ≤ total at every step, 35 MB queued progression
  ✅ wait_for_chunks(): ready / error / expired / SessionWaitTimeout
  ✅ delete(), cleanup_expired(), requeue_stale() skipping live leases
  ✅ Progress and remaining-time projections
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from uwia.core.exceptions import (
    ChunkBatchFailure,
    ExtractionFailed,
    SessionNotFound,
    SessionNotReady,
    SessionWaitTimeout,
)
from uwia.processing.config_selector import SizeThresholds
from uwia.processing.extractor import ExtractionCascade, ExtractionResult
from uwia.processing.strategies import PageText
from uwia.schemas.sessions import SessionStatus
from uwia.services.large_pdf import (
    LargePdfProcessor,
    compute_progress,
    estimate_remaining,
)

MB = 1024 * 1024

# Tiny breakpoints so a few KB of bytes land in the "large" class
TINY = SizeThresholds(
    no_chunking_max_mb=0.001,
    medium_max_mb=0.002,
    large_max_mb=0.003,
    large_chunk_size=100,
    large_parallelism=2,
)


def _cascade(pages: list[str] | None = None, text: str = "whole text", page_count: int = 1):
    cascade = MagicMock(spec=ExtractionCascade)
    cascade.extract_pages = AsyncMock(return_value=[
        PageText(i + 1, t, extraction_method="pymupdf") for i, t in enumerate(pages or [])
    ])
    cascade.extract_text = AsyncMock(return_value=text)
    cascade.extract = AsyncMock(return_value=ExtractionResult(
        text=text,
        pages=[],
        strategy_used="pymupdf",
        total_chars=len(text),
        elapsed_ms=1.0,
        page_count=page_count,
    ))
    return cascade


def _processor(store, staging, publisher, governor, cascade=None, thresholds=TINY):
    return LargePdfProcessor(
        store=store,
        staging=staging,
        publisher=publisher,
        cascade=cascade or _cascade(),
        governor=governor,
        thresholds=thresholds,
    )


async def _staged_session(store, staging, session_id: str, size: int = 2_500) -> bytes:
    data = b"%PDF-1.7\n" + b"0" * (size - 9)
    await staging.save(session_id, data)
    await store.create_session(session_id, "claim.pdf", len(data))
    return data


# ─────────────────────────────────────────────────────────────────────────────
# Upload entry point
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.sessions
class TestProcessLargePdf:

    async def test_small_document_ready_synchronously(self, fake_store, staging, mock_publisher, idle_governor):
        cascade = _cascade(text="Policy Number: POL-48291", page_count=3)
        processor = _processor(fake_store, staging, mock_publisher, idle_governor, cascade, SizeThresholds())

        response = await processor.process_large_pdf("POLICY.pdf", b"%PDF-1.7 small")

        assert response.status == SessionStatus.READY
        assert response.total_chunks == 1
        session = fake_store.sessions[response.session_id]
        assert (session.status, session.total_chunks, session.processed_chunks) == ("ready", 1, 1)
        assert session.session_metadata["extraction_strategy"] == "pymupdf"

        [chunk] = await fake_store.get_chunks(response.session_id)
        assert chunk.content == "Policy Number: POL-48291"
        assert (chunk.page_start, chunk.page_end) == (1, 3)
        mock_publisher.publish_chunk_task.assert_not_awaited()

    async def test_small_document_extraction_failure_marks_error(
        self, fake_store, staging, mock_publisher, idle_governor,
    ):
        cascade = _cascade()
        cascade.extract.side_effect = ExtractionFailed()
        processor = _processor(fake_store, staging, mock_publisher, idle_governor, cascade, SizeThresholds())

        with pytest.raises(ExtractionFailed):
            await processor.process_large_pdf("scan.pdf", b"%PDF-1.7 image only")

        [session] = fake_store.sessions.values()
        assert session.status == "error"

    async def test_large_document_queued(self, mock_store, mock_publisher, idle_governor):
        staging = MagicMock()
        staging.save = AsyncMock(return_value="s3://uwia-uploads/uploads/staged.pdf")
        processor = _processor(mock_store, staging, mock_publisher, idle_governor, thresholds=SizeThresholds())

        response = await processor.process_large_pdf("BIG.pdf", b"%PDF" + b"0" * (35 * MB))

        assert response.status == SessionStatus.PROCESSING
        assert response.total_chunks == 0
        assert response.estimated_time == "3-6 minutes"
        mock_publisher.publish_chunk_task.assert_awaited_once_with(response.session_id)

        metadata = mock_store.create_session.await_args.kwargs["metadata"]
        assert metadata["size_class"] == "large"
        assert metadata["chunk_size"] == 5 * MB
        assert metadata["max_parallelism"] == 2

    async def test_publish_failure_keeps_session_processing(self, fake_store, staging, mock_publisher, idle_governor):
        mock_publisher.publish_chunk_task.side_effect = ConnectionError("broker down")
        processor = _processor(fake_store, staging, mock_publisher, idle_governor)

        response = await processor.process_large_pdf("BIG.pdf", b"%PDF" + b"0" * 2_500)

        assert response.status == SessionStatus.PROCESSING
        assert fake_store.sessions[response.session_id].status == "processing"


# ─────────────────────────────────────────────────────────────────────────────
# Worker body
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.sessions
class TestRunChunkBatches:

    async def test_stores_all_chunks_and_marks_ready(self, fake_store, staging, mock_publisher, idle_governor):
        await _staged_session(fake_store, staging, "s-large")
        pages = [chr(65 + i) * 80 for i in range(5)]
        processor = _processor(fake_store, staging, mock_publisher, idle_governor, _cascade(pages))

        stored = await processor.run_chunk_batches("s-large")

        session = fake_store.sessions["s-large"]
        assert stored == 5
        assert session.status == "ready"
        assert session.processed_chunks == session.total_chunks == 5
        chunks = await fake_store.get_chunks("s-large")
        assert "".join(c.content for c in chunks) == "".join(pages)

    async def test_throttle_called_once_per_batch(self, fake_store, staging, mock_publisher):
        await _staged_session(fake_store, staging, "s-throttle")
        governor = MagicMock()
        governor.throttle = AsyncMock()
        processor = _processor(fake_store, staging, mock_publisher, governor, _cascade(["x" * 80] * 5))

        await processor.run_chunk_batches("s-throttle")

        assert governor.throttle.await_count == 3

    async def test_no_page_text_uses_fallback_chunk(self, fake_store, staging, mock_publisher, idle_governor):
        await _staged_session(fake_store, staging, "s-empty")
        cascade = _cascade(pages=[], text="metadata only text")
        processor = _processor(fake_store, staging, mock_publisher, idle_governor, cascade)

        assert await processor.run_chunk_batches("s-empty") == 1
        [chunk] = await fake_store.get_chunks("s-empty")
        assert chunk.content == "metadata only text"

    async def test_failure_marks_error_and_raises(self, fake_store, staging, mock_publisher, idle_governor):
        await _staged_session(fake_store, staging, "s-fail")
        cascade = _cascade()
        cascade.extract_pages.side_effect = RuntimeError("parser crashed")
        processor = _processor(fake_store, staging, mock_publisher, idle_governor, cascade)

        with pytest.raises(ChunkBatchFailure) as excinfo:
            await processor.run_chunk_batches("s-fail")

        assert excinfo.value.reason == "parser crashed"
        session = fake_store.sessions["s-fail"]
        assert session.status == "error"
        assert session.error_message == "parser crashed"

    async def test_missing_staged_file_is_failure(self, fake_store, staging, mock_publisher, idle_governor):
        await fake_store.create_session("s-nofile", "claim.pdf", 10)
        processor = _processor(fake_store, staging, mock_publisher, idle_governor)

        with pytest.raises(ChunkBatchFailure) as excinfo:
            await processor.run_chunk_batches("s-nofile")

        assert "no longer available" in excinfo.value.reason
        session = fake_store.sessions["s-nofile"]
        assert session.status == "error"
        assert "no longer available" in session.error_message

    async def test_non_processing_session_skipped(self, fake_store, staging, mock_publisher, idle_governor):
        fake_store.add_ready_session("s-done", ["already stored"])
        cascade = _cascade(["new"])
        processor = _processor(fake_store, staging, mock_publisher, idle_governor, cascade)

        assert await processor.run_chunk_batches("s-done") == 0
        cascade.extract_pages.assert_not_awaited()

    async def test_unknown_session(self, fake_store, staging, mock_publisher, idle_governor):
        processor = _processor(fake_store, staging, mock_publisher, idle_governor)
        with pytest.raises(SessionNotFound):
            await processor.run_chunk_batches("missing")


# ─────────────────────────────────────────────────────────────────────────────
# Worker lease: redelivery, resume, takeover
# ─────────────────────────────────────────────────────────────────────────────

def _record_increments(store, session_id: str, on_increment=None) -> list[tuple[int, int, int]]:
    """Wrap increment_processed; log (processed, stored rows, total) after each call."""
    original = store.increment_processed
    log: list[tuple[int, int, int]] = []

    async def _increment(sid, count, worker_id=None):
        result = await original(sid, count, worker_id=worker_id)
        s = store.sessions[session_id]
        rows = len(await store.get_chunks(session_id))
        log.append((s.processed_chunks, rows, s.total_chunks))
        if on_increment is not None:
            await on_increment(s, result)
        return result

    store.increment_processed = _increment
    return log


@pytest.mark.unit
@pytest.mark.sessions
class TestWorkerLease:

    async def test_duplicate_delivery_never_outruns_stored_rows(
        self, fake_store, staging, mock_publisher, idle_governor,
    ):
        await _staged_session(fake_store, staging, "s-dup")
        pages = [chr(65 + i) * 80 for i in range(5)]
        first  = _processor(fake_store, staging, mock_publisher, idle_governor, _cascade(pages))
        second = _processor(fake_store, staging, mock_publisher, idle_governor, _cascade(pages))
        log = _record_increments(fake_store, "s-dup")

        results = await asyncio.gather(
            first.run_chunk_batches("s-dup"),
            second.run_chunk_batches("s-dup"),
        )

        assert sorted(results) == [0, 5]
        assert log
        for processed, rows, total in log:
            assert processed <= rows
            assert processed <= total
        session = fake_store.sessions["s-dup"]
        assert session.status == "ready"
        assert session.processed_chunks == session.total_chunks == 5

    async def test_live_lease_skips_redelivered_task(self, fake_store, staging, mock_publisher, idle_governor):
        await _staged_session(fake_store, staging, "s-owned")
        assert await fake_store.claim_session("s-owned", "worker-a") == (0, 0)
        cascade = _cascade(["x" * 80] * 3)
        processor = _processor(fake_store, staging, mock_publisher, idle_governor, cascade)

        assert await processor.run_chunk_batches("s-owned") == 0
        cascade.extract_pages.assert_not_awaited()
        assert fake_store.sessions["s-owned"].worker_id == "worker-a"

    async def test_expired_lease_resumes_from_processed(self, fake_store, staging, mock_publisher, idle_governor):
        await _staged_session(fake_store, staging, "s-resume")
        session = fake_store.sessions["s-resume"]
        session.total_chunks, session.processed_chunks = 5, 2
        session.worker_id = "crashed-worker"
        session.lease_expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        pages = [chr(65 + i) * 80 for i in range(5)]
        processor = _processor(fake_store, staging, mock_publisher, idle_governor, _cascade(pages))

        stored = await processor.run_chunk_batches("s-resume")

        assert stored == 3
        assert [c.chunk_index for c in await fake_store.get_chunks("s-resume")] == [2, 3, 4]
        assert (session.status, session.processed_chunks) == ("ready", 5)
        assert session.worker_id != "crashed-worker"

    async def test_lost_lease_abandons_without_error(self, fake_store, staging, mock_publisher, idle_governor):
        await _staged_session(fake_store, staging, "s-taken")

        async def _take_over(session, result):
            session.worker_id = "worker-b"
            session.lease_expires_at = datetime.now(timezone.utc) + timedelta(minutes=5)

        log = _record_increments(fake_store, "s-taken", on_increment=_take_over)
        processor = _processor(fake_store, staging, mock_publisher, idle_governor, _cascade(["x" * 80] * 5))

        stored = await processor.run_chunk_batches("s-taken")

        session = fake_store.sessions["s-taken"]
        assert stored == 2
        assert [p for p, _, _ in log] == [2, 2]
        assert session.status == "processing"
        assert session.error_message is None

    async def test_changed_plan_is_failure(self, fake_store, staging, mock_publisher, idle_governor):
        await _staged_session(fake_store, staging, "s-plan")
        fake_store.sessions["s-plan"].total_chunks = 9
        processor = _processor(fake_store, staging, mock_publisher, idle_governor, _cascade(["x" * 80] * 5))

        with pytest.raises(ChunkBatchFailure) as excinfo:
            await processor.run_chunk_batches("s-plan")

        assert "chunk plan changed" in excinfo.value.reason
        assert fake_store.sessions["s-plan"].status == "error"

    async def test_requeue_skips_live_lease(self, fake_store, staging, mock_publisher, idle_governor):
        now = datetime.now(timezone.utc)
        for sid, lease in (("s-running", now + timedelta(minutes=5)), ("s-dead", now - timedelta(minutes=1))):
            await fake_store.create_session(sid, "claim.pdf", 10)
            fake_store.sessions[sid].created_at -= timedelta(minutes=30)
            fake_store.sessions[sid].total_chunks = 4
            fake_store.sessions[sid].processed_chunks = 2
            fake_store.sessions[sid].worker_id = "worker-a"
            fake_store.sessions[sid].lease_expires_at = lease
        processor = _processor(fake_store, staging, mock_publisher, idle_governor)

        assert await processor.requeue_stale(10) == ["s-dead"]
        mock_publisher.publish_chunk_task.assert_awaited_once_with("s-dead")


# ─────────────────────────────────────────────────────────────────────────────
# Status snapshots during a run
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.sessions
class TestProgressSnapshots:

    async def test_processed_never_exceeds_total(self, fake_store, staging, mock_publisher, idle_governor):
        await _staged_session(fake_store, staging, "s-snap")
        processor = _processor(fake_store, staging, mock_publisher, idle_governor, _cascade(["y" * 80] * 7))
        snapshots = []

        async def _snapshot(session, result):
            snapshots.append(await processor.get_status("s-snap"))

        _record_increments(fake_store, "s-snap", on_increment=_snapshot)
        await processor.run_chunk_batches("s-snap")

        assert [s.chunks_processed for s in snapshots] == [2, 4, 6, 7]
        for snap in snapshots:
            assert snap.chunks_processed <= snap.total_chunks == 7
        progress = [s.progress for s in snapshots]
        assert progress == sorted(progress)

        final = await processor.get_status("s-snap")
        assert (final.status, final.progress) == (SessionStatus.READY, 100)

    async def test_35mb_upload_progression(self, fake_store, staging, mock_publisher, idle_governor):
        pages = [chr(65 + i) * 3_000_000 for i in range(4)]
        processor = _processor(
            fake_store, staging, mock_publisher, idle_governor, _cascade(pages), SizeThresholds(),
        )

        response = await processor.process_large_pdf("BIG.pdf", b"%PDF" + b"0" * (35 * MB))
        queued = await processor.get_status(response.session_id)

        assert (queued.status, queued.total_chunks, queued.chunks_processed) == (SessionStatus.PROCESSING, 0, 0)
        assert queued.progress == 0
        mock_publisher.publish_chunk_task.assert_awaited_once_with(response.session_id)

        snapshots = []

        async def _snapshot(session, result):
            snapshots.append(await processor.get_status(response.session_id))

        _record_increments(fake_store, response.session_id, on_increment=_snapshot)
        assert await processor.run_chunk_batches(response.session_id) == 4

        assert [(s.chunks_processed, s.total_chunks, s.progress) for s in snapshots] == [(2, 4, 50), (4, 4, 100)]
        final = await processor.get_status(response.session_id)
        assert final.status == SessionStatus.READY

    async def test_rerun_after_ready_changes_nothing(self, fake_store, staging, mock_publisher, idle_governor):
        await _staged_session(fake_store, staging, "s-again")
        cascade = _cascade(["z" * 80] * 3)
        processor = _processor(fake_store, staging, mock_publisher, idle_governor, cascade)

        assert await processor.run_chunk_batches("s-again") == 3
        before = await processor.get_status("s-again")
        assert await processor.run_chunk_batches("s-again") == 0
        after = await processor.get_status("s-again")

        assert (after.chunks_processed, after.total_chunks, after.status) == (3, 3, SessionStatus.READY)
        assert before.chunks_processed == after.chunks_processed
        assert cascade.extract_pages.await_count == 1
        assert len(await fake_store.get_chunks("s-again")) == 3


# ─────────────────────────────────────────────────────────────────────────────
# Waiting, status, deletion, maintenance
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.sessions
class TestLifecycle:

    async def test_wait_returns_ready_session(self, fake_store, staging, mock_publisher, idle_governor):
        fake_store.add_ready_session("s-ready", ["text"])
        processor = _processor(fake_store, staging, mock_publisher, idle_governor)

        session = await processor.wait_for_chunks("s-ready", timeout=1, interval=0)
        assert session.status == "ready"

    async def test_wait_raises_on_error(self, fake_store, staging, mock_publisher, idle_governor):
        await fake_store.create_session("s-err", "claim.pdf", 10)
        await fake_store.mark_error("s-err", "boom")
        processor = _processor(fake_store, staging, mock_publisher, idle_governor)

        with pytest.raises(ChunkBatchFailure, match="boom"):
            await processor.wait_for_chunks("s-err", timeout=1, interval=0)

    async def test_wait_raises_on_expired(self, fake_store, staging, mock_publisher, idle_governor):
        await fake_store.create_session("s-exp", "claim.pdf", 10)
        fake_store.sessions["s-exp"].status = "expired"
        processor = _processor(fake_store, staging, mock_publisher, idle_governor)

        with pytest.raises(SessionNotReady):
            await processor.wait_for_chunks("s-exp", timeout=1, interval=0)

    async def test_wait_times_out(self, fake_store, staging, mock_publisher, idle_governor):
        await fake_store.create_session("s-slow", "claim.pdf", 10)
        processor = _processor(fake_store, staging, mock_publisher, idle_governor)

        with pytest.raises(SessionWaitTimeout) as excinfo:
            await processor.wait_for_chunks("s-slow", timeout=0, interval=0)
        assert excinfo.value.error_code == "WAIT_TIMEOUT"

    async def test_status_for_processing_session(self, fake_store, staging, mock_publisher, idle_governor):
        await fake_store.create_session("s-st", "claim.pdf", 10, metadata={"estimated_time": "3-6 minutes"})
        processor = _processor(fake_store, staging, mock_publisher, idle_governor)

        status = await processor.get_status("s-st")

        assert status.status == SessionStatus.PROCESSING
        assert status.progress == 0
        assert status.estimated_time_remaining == "3-6 minutes"

    async def test_delete(self, fake_store, staging, mock_publisher, idle_governor):
        await _staged_session(fake_store, staging, "s-del")
        processor = _processor(fake_store, staging, mock_publisher, idle_governor)

        await processor.delete("s-del")

        assert "s-del" not in fake_store.sessions
        assert not staging.path_for("s-del").exists()
        with pytest.raises(SessionNotFound):
            await processor.delete("s-del")

    async def test_cleanup_expired(self, fake_store, staging, mock_publisher, idle_governor):
        await _staged_session(fake_store, staging, "s-old")
        await _staged_session(fake_store, staging, "s-new")
        fake_store.sessions["s-old"].expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        processor = _processor(fake_store, staging, mock_publisher, idle_governor)

        assert await processor.cleanup_expired() == 1
        assert list(fake_store.sessions) == ["s-new"]
        assert not staging.path_for("s-old").exists()

    async def test_requeue_stale(self, fake_store, staging, mock_publisher, idle_governor):
        await fake_store.create_session("s-stale", "claim.pdf", 10)
        fake_store.sessions["s-stale"].created_at -= timedelta(minutes=30)
        await fake_store.create_session("s-fresh", "claim.pdf", 10)
        processor = _processor(fake_store, staging, mock_publisher, idle_governor)

        assert await processor.requeue_stale(10) == ["s-stale"]
        mock_publisher.publish_chunk_task.assert_awaited_once_with("s-stale")


@pytest.mark.unit
class TestProjections:

    @pytest.mark.parametrize("processed, total, expected", [
        (0, 0, 0), (0, 4, 0), (1, 4, 25), (4, 4, 100), (5, 4, 100),
    ])
    def test_compute_progress(self, processed, total, expected):
        assert compute_progress(processed, total) == expected

    def test_estimate_remaining_seconds(self):
        created = datetime(2026, 1, 1, tzinfo=timezone.utc)
        now = created + timedelta(seconds=10)
        assert estimate_remaining(2, 4, created, now) == "~10 seconds"

    def test_estimate_remaining_minutes(self):
        created = datetime(2026, 1, 1, tzinfo=timezone.utc)
        now = created + timedelta(minutes=4)
        assert estimate_remaining(1, 4, created, now) == "~12 minutes"

    def test_estimate_remaining_undefined(self):
        created = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert estimate_remaining(0, 4, created) is None
        assert estimate_remaining(4, 4, created) is None
