"""
Enhanced UWIA — Pydantic Request/Response Schemas

Covers the session lifecycle exposed under /enhanced-uwia:
  - Large-PDF upload response (202 Accepted)
  - Status polling response
  - Keyword query request / response
  - Consolidated evaluation request / response
  - All structured error bodies (400, 404, 409, 410, 413, 422, 500, 504)

Design decisions:
  - session_id is always server-generated (UUID4); never client-supplied.
  - status is the async pipeline state, separate from the HTTP status.
  - All timestamps are ISO-8601 UTC strings.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Session state machine
# ---------------------------------------------------------------------------

class SessionStatus(str, Enum):
    """
    Maps to uwia.processing_sessions.status.
    Transitions: processing → ready | error; any → expired (TTL sweep)
    """
    PROCESSING = "processing"
    READY      = "ready"
    ERROR      = "error"
    EXPIRED    = "expired"


# ---------------------------------------------------------------------------
# Upload response: 202 Accepted
# ---------------------------------------------------------------------------

class ProcessLargePdfResponse(BaseModel):
    """
    Returned immediately after upload.
    Small files arrive already 'ready'; larger ones are 'processing'.
    """
    session_id:     str           = Field(..., description="Server-generated session UUID")
    status:         SessionStatus = Field(..., description="Pipeline state at response time")
    total_chunks:   int           = Field(0, description="0 until the chunk plan exists")
    file_name:      str
    file_size:      int           = Field(..., description="Upload size in bytes")
    estimated_time: str           = Field(..., description="Rough processing estimate, e.g. '2-4 minutes'")


# ---------------------------------------------------------------------------
# Status response: GET /status/{session_id}
# ---------------------------------------------------------------------------

class SessionStatusResponse(BaseModel):
    """Polled by clients to track async processing progress."""
    session_id:               str
    status:                   SessionStatus
    progress:                 int = Field(0, ge=0, le=100, description="Percent of chunks stored")
    chunks_processed:         int = 0
    total_chunks:             int = 0
    estimated_time_remaining: str | None = None
    error_message:            str | None = None
    created_at:               datetime
    expires_at:               datetime


# ---------------------------------------------------------------------------
# Query: POST /query/{session_id}
# ---------------------------------------------------------------------------

class QueryRequest(BaseModel):
    """Incoming keyword-retrieval question."""
    question: str = Field(
        ...,
        min_length=1,
        max_length=2_000,
        description="Natural-language question about the document.",
        examples=["What is the date of loss?"],
    )
    max_results: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Number of matching chunks passed to synthesis (1-10).",
    )
    wait: bool = Field(
        default=False,
        description="Block until a processing session is ready (bounded by WAIT_TIMEOUT_SECONDS).",
    )


class QueryResponse(BaseModel):
    answer:          str
    confidence:      float = Field(..., ge=0.0, le=1.0)
    source_chunks:   list[str]
    processing_time: int   = Field(..., description="Milliseconds")


# ---------------------------------------------------------------------------
# Consolidated evaluation: POST /evaluate/{session_id}
# ---------------------------------------------------------------------------

class EvaluateRequest(BaseModel):
    document_name: str = Field(..., min_length=1, max_length=255, examples=["POLICY.pdf"])
    variables: dict[str, str] = Field(
        default_factory=dict,
        description="Values substituted into %variable% placeholders, e.g. insured_name.",
    )
    claim_reference: str | None = Field(
        default=None,
        max_length=255,
        description="Claim the document belongs to; stored with each evaluation row.",
    )
    wait: bool = Field(
        default=False,
        description="Block until a processing session is ready (bounded by WAIT_TIMEOUT_SECONDS).",
    )


class FieldAnswer(BaseModel):
    pmc_field:          str
    question:           str
    answer:             str
    confidence:         float
    expected_type:      str
    field_names:        list[str]
    used_vision:        bool
    processing_time_ms: int
    error:              str | None = None


class EvaluateResponse(BaseModel):
    session_id:    str
    document_name: str
    results:       list[FieldAnswer]


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class SessionErrors:
    """Factories for every documented error case."""

    @staticmethod
    def unsupported_file_type(filename: str, detected_type: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message=f"File type '{detected_type}' is not supported.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"'{filename}' is not a PDF document.",
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit_bytes: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {limit_bytes // (1024 * 1024)} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit_bytes:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No file was provided in the request.",
            details=[
                ErrorDetail(
                    field="file",
                    message="The 'file' multipart field is required and must not be empty.",
                    code="MISSING_FILE",
                )
            ],
        )

    @staticmethod
    def from_domain_error(exc, request_id: str | None = None) -> ErrorResponse:
        """Wrap any UwiaError in the standard envelope."""
        return ErrorResponse(
            error_code=exc.error_code,
            message=exc.message,
            details=[],
            request_id=request_id,
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred. Our team has been notified.",
            details=[],
            request_id=request_id,
        )


# ---------------------------------------------------------------------------
# Error code → HTTP status
# ---------------------------------------------------------------------------

HTTP_ERROR_MAP: dict[str, int] = {
    "UNSUPPORTED_FILE_TYPE":       400,
    "MISSING_FILE":                400,
    "SESSION_NOT_FOUND":           404,
    "SESSION_NOT_READY":           409,
    "STAGED_FILE_MISSING":         410,
    "FILE_TOO_LARGE":              413,
    "EXTRACTION_FAILED":           422,
    "ANSWER_FIELD_COUNT_MISMATCH": 422,
    "VALIDATION_ERROR":            422,
    "CHUNK_BATCH_FAILURE":         500,
    "INTERNAL_ERROR":              500,
    "CONVERSION_TIMEOUT":          504,
    "WAIT_TIMEOUT":                504,
}
