"""
Domain error taxonomy.

Each error carries a stable machine-readable ``error_code``; the API layer
maps codes to HTTP statuses via ``uwia.schemas.sessions.HTTP_ERROR_MAP``.

  ExtractionFailed         every text-extraction method exhausted
  SessionNotFound          unknown session id
  SessionNotReady          query against processing / error / expired session
  ChunkBatchFailure        background batch loop crashed; session → error
  SessionClaimLost         another worker took over the session mid-run
  SessionWaitTimeout       session still processing when the wait budget ran out
  StagedFileMissing        session row exists but its staged upload is gone
  ConversionTimeout        page rasterization exceeded its budget (recoverable)
  AnswerFieldCountMismatch fused vector length != expected field count
                           (logged; raised only in strict mode)
"""

from __future__ import annotations


class UwiaError(Exception):
    """Base class for all domain errors."""

    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ExtractionFailed(UwiaError):
    error_code = "EXTRACTION_FAILED"

    def __init__(self, message: str = "No extraction method produced usable text.") -> None:
        super().__init__(message)


class SessionNotFound(UwiaError):
    error_code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session '{session_id}' was not found.")
        self.session_id = session_id


class SessionNotReady(UwiaError):
    error_code = "SESSION_NOT_READY"

    def __init__(self, session_id: str, status: str) -> None:
        super().__init__(
            f"Session '{session_id}' is not ready for querying (status={status})."
        )
        self.session_id = session_id
        self.status     = status


class ChunkBatchFailure(UwiaError):
    error_code = "CHUNK_BATCH_FAILURE"

    def __init__(self, session_id: str, reason: str) -> None:
        super().__init__(f"Chunk processing failed for session '{session_id}': {reason}")
        self.session_id = session_id
        self.reason     = reason


class ConversionTimeout(UwiaError):
    error_code = "CONVERSION_TIMEOUT"

    def __init__(self, pages: list[int], timeout_seconds: float) -> None:
        super().__init__(
            f"Rasterizing pages {pages} exceeded {timeout_seconds:.0f}s."
        )
        self.pages           = pages
        self.timeout_seconds = timeout_seconds


class AnswerFieldCountMismatch(UwiaError):
    error_code = "ANSWER_FIELD_COUNT_MISMATCH"

    def __init__(self, expected: int, received: int, source: str = "fused") -> None:
        super().__init__(
            f"{source} answer has {received} values, expected {expected}."
        )
        self.expected = expected
        self.received = received
        self.source   = source


class SessionClaimLost(UwiaError):
    error_code = "SESSION_CLAIM_LOST"

    def __init__(self, session_id: str, worker_id: str) -> None:
        super().__init__(
            f"Worker '{worker_id}' no longer owns session '{session_id}'."
        )
        self.session_id = session_id
        self.worker_id  = worker_id


class SessionWaitTimeout(UwiaError):
    error_code = "WAIT_TIMEOUT"

    def __init__(self, session_id: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Session '{session_id}' was not ready after {timeout_seconds:.0f}s."
        )
        self.session_id      = session_id
        self.timeout_seconds = timeout_seconds


class StagedFileMissing(UwiaError):
    error_code = "STAGED_FILE_MISSING"

    def __init__(self, session_id: str, location: str = "") -> None:
        super().__init__(
            f"The uploaded document for session '{session_id}' is no longer available."
        )
        self.session_id = session_id
        self.location   = location
