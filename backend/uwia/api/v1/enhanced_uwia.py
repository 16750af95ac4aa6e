"""
Enhanced UWIA API Router
Prefix: /enhanced-uwia

  POST   /process-large-pdf        multipart upload → 202 + session
  POST   /query/{session_id}       keyword retrieval + synthesis
  GET    /status/{session_id}      progress polling
  DELETE /session/{session_id}     session + chunks + staged file
  POST   /evaluate/{session_id}    consolidated prompts → fused answers

query and evaluate accept wait=true: the request polls the session until it
is ready (SessionWaitTimeout → 504 after WAIT_TIMEOUT_SECONDS).

Request lifecycle (upload):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. File present and non-empty             (400)         │
  │ 2. %PDF signature in the first 1 KB       (400)         │
  │ 3. Size ≤ max_upload_mb                   (413)         │
  │ 4. LargePdfProcessor.process_large_pdf()                │
  │      small → ready inline; large → Celery, processing   │
  └─────────────────────────────────────────────────────────┘

Domain errors (SessionNotFound, SessionNotReady, ExtractionFailed, ...)
propagate to the UwiaError handler in uwia.main, which maps error_code to
the HTTP status.
"""

from __future__ import annotations

import logging
import uuid
from functools import lru_cache

from fastapi import APIRouter, Depends, File, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from uwia.core.config import settings
from uwia.db.session import get_db
from uwia.rag.pipeline import RagQueryService
from uwia.schemas.sessions import (
    ErrorResponse,
    EvaluateRequest,
    EvaluateResponse,
    ProcessLargePdfResponse,
    QueryRequest,
    QueryResponse,
    SessionErrors,
    SessionStatusResponse,
)
from uwia.services.chunk_storage import ChunkStorageService
from uwia.services.large_pdf import LargePdfProcessor, TaskPublisher
from uwia.services.evaluation_store import EvaluationStore
from uwia.storage.staging import UploadStaging, get_upload_staging
from uwia.underwriting.classification import VisualClassifier
from uwia.underwriting.evaluation import ConsolidatedEvaluator
from uwia.underwriting.prompts import load_consolidated_prompts

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/enhanced-uwia",
    tags=["Enhanced UWIA"],
)

_PDF_MAGIC    = b"%PDF"
_MAGIC_WINDOW = 1024   # header may follow leading bytes


# ---------------------------------------------------------------------------
# Dependency providers (overridden in tests via app.dependency_overrides)
# ---------------------------------------------------------------------------

def get_chunk_store() -> ChunkStorageService:
    return ChunkStorageService()


@lru_cache
def get_staging() -> UploadStaging:
    """Process-wide so the S3 client session is reused across requests."""
    return get_upload_staging()


def get_evaluation_store() -> EvaluationStore:
    return EvaluationStore()


def get_processor(
    store:   ChunkStorageService = Depends(get_chunk_store),
    staging: UploadStaging       = Depends(get_staging),
) -> LargePdfProcessor:
    return LargePdfProcessor(store=store, staging=staging, publisher=TaskPublisher())


def get_query_service(store: ChunkStorageService = Depends(get_chunk_store)) -> RagQueryService:
    return RagQueryService(store)


@lru_cache
def get_visual_classifier() -> VisualClassifier:
    """Process-wide classifier so its bounded cache survives across requests."""
    return VisualClassifier()


def get_consolidated_evaluator(
    store:    ChunkStorageService = Depends(get_chunk_store),
    staging:  UploadStaging       = Depends(get_staging),
    recorder: EvaluationStore     = Depends(get_evaluation_store),
    db:       AsyncSession        = Depends(get_db),
) -> ConsolidatedEvaluator:
    async def _load(document_name: str):
        return await load_consolidated_prompts(db, document_name)

    return ConsolidatedEvaluator(
        store=store,
        staging=staging,
        prompt_loader=_load,
        classifier=get_visual_classifier(),
        recorder=recorder,
    )


# ---------------------------------------------------------------------------
# POST /enhanced-uwia/process-large-pdf
# ---------------------------------------------------------------------------

@router.post(
    "/process-large-pdf",
    response_model=ProcessLargePdfResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a PDF for size-adaptive processing",
    description=(
        "Small PDFs are extracted inline and returned 'ready'. Larger PDFs are chunked "
        "in the background; poll GET /enhanced-uwia/status/{session_id}."
    ),
    responses={
        202: {"model": ProcessLargePdfResponse, "description": "Session created"},
        400: {"model": ErrorResponse, "description": "Missing, empty or non-PDF file"},
        413: {"model": ErrorResponse, "description": "File exceeds the upload limit"},
        422: {"model": ErrorResponse, "description": "No text could be extracted"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
)
async def process_large_pdf(
    request:   Request,
    file:      UploadFile        = File(..., description="PDF document"),
    processor: LargePdfProcessor = Depends(get_processor),
) -> JSONResponse:
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    filename   = file.filename or ""

    data = await file.read()
    if not data:
        return _error(status.HTTP_400_BAD_REQUEST, SessionErrors.missing_file(), request_id)

    if _PDF_MAGIC not in data[:_MAGIC_WINDOW]:
        detected = file.content_type or "application/octet-stream"
        return _error(
            status.HTTP_400_BAD_REQUEST,
            SessionErrors.unsupported_file_type(filename, detected),
            request_id,
        )

    if len(data) > settings.max_upload_bytes:
        return _error(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            SessionErrors.file_too_large(len(data), settings.max_upload_bytes),
            request_id,
        )

    result = await processor.process_large_pdf(filename or "upload.pdf", data)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=result.model_dump(mode="json"),
        headers={
            "X-Request-ID": request_id,
            "Location":     f"/enhanced-uwia/status/{result.session_id}",
        },
    )


# ---------------------------------------------------------------------------
# POST /enhanced-uwia/query/{session_id}
# ---------------------------------------------------------------------------

@router.post(
    "/query/{session_id}",
    response_model=QueryResponse,
    summary="Ask a question against a ready session",
    responses={
        404: {"model": ErrorResponse, "description": "Unknown session"},
        409: {"model": ErrorResponse, "description": "Session is not ready"},
        504: {"model": ErrorResponse, "description": "wait=true and the session did not become ready"},
    },
)
async def query_session(
    session_id: str,
    body:       QueryRequest,
    service:    RagQueryService   = Depends(get_query_service),
    processor:  LargePdfProcessor = Depends(get_processor),
) -> QueryResponse:
    if body.wait:
        await processor.wait_for_chunks(session_id)
    result = await service.query(session_id, body.question, body.max_results)
    return QueryResponse(
        answer=result.answer,
        confidence=result.confidence,
        source_chunks=result.source_chunk_ids,
        processing_time=result.processing_time_ms,
    )


# ---------------------------------------------------------------------------
# GET /enhanced-uwia/status/{session_id}
# ---------------------------------------------------------------------------

@router.get(
    "/status/{session_id}",
    response_model=SessionStatusResponse,
    summary="Poll session processing status",
    responses={404: {"model": ErrorResponse}},
)
async def get_session_status(
    session_id: str,
    processor:  LargePdfProcessor = Depends(get_processor),
) -> SessionStatusResponse:
    return await processor.get_status(session_id)


# ---------------------------------------------------------------------------
# DELETE /enhanced-uwia/session/{session_id}
# ---------------------------------------------------------------------------

@router.delete(
    "/session/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a session, its chunks and its staged upload",
    responses={204: {"description": "Session deleted"}, 404: {"model": ErrorResponse}},
)
async def delete_session(
    session_id: str,
    processor:  LargePdfProcessor = Depends(get_processor),
) -> Response:
    await processor.delete(session_id)
    logger.info("Session deleted | session=%s", session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# POST /enhanced-uwia/evaluate/{session_id}
# ---------------------------------------------------------------------------

@router.post(
    "/evaluate/{session_id}",
    response_model=EvaluateResponse,
    summary="Run the consolidated prompts of a document against a ready session",
    responses={
        404: {"model": ErrorResponse, "description": "Unknown session"},
        409: {"model": ErrorResponse, "description": "Session is not ready"},
        410: {"model": ErrorResponse, "description": "Staged upload no longer available"},
        504: {"model": ErrorResponse, "description": "wait=true and the session did not become ready"},
    },
)
async def evaluate_session(
    session_id: str,
    body:       EvaluateRequest,
    evaluator:  ConsolidatedEvaluator = Depends(get_consolidated_evaluator),
    processor:  LargePdfProcessor     = Depends(get_processor),
) -> EvaluateResponse:
    if body.wait:
        await processor.wait_for_chunks(session_id)
    results = await evaluator.evaluate(
        session_id, body.document_name, body.variables, body.claim_reference,
    )
    return EvaluateResponse(
        session_id=session_id,
        document_name=body.document_name,
        results=results,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _error(status_code: int, body: ErrorResponse, request_id: str) -> JSONResponse:
    body.request_id = request_id
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json"),
        headers={"X-Request-ID": request_id},
    )
